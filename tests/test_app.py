"""
Tests for the command line interface.
"""

import json

import pytest

from seasonlink import __version__
from seasonlink.app import main, read_jsonl


def write_jsonl(path, records):
    path.write_text("\n".join(json.dumps(r) for r in records) + "\n", encoding="utf-8")
    return path


@pytest.fixture
def db(tmp_path):
    return str(tmp_path / "cli" / "identity.db")


@pytest.fixture
def players_file(tmp_path, valid_player_dict):
    earlier = dict(valid_player_dict, season=2022)
    return write_jsonl(tmp_path / "players.jsonl", [earlier, valid_player_dict])


def run(capsys, *argv):
    main(list(argv))
    return capsys.readouterr().out


class TestBasics:
    """Test top-level options."""

    def test_version(self, capsys):
        """--version prints the package version."""
        assert run(capsys, "--version").strip() == __version__

    def test_no_command_prints_help(self, capsys):
        """Without a command the usage is shown."""
        assert "usage: seasonlink" in run(capsys)

    def test_init_db(self, capsys, db, tmp_path):
        """init-db creates the database file and its directory."""
        out = run(capsys, "--db", db, "init-db")
        assert "Database ready" in out
        assert (tmp_path / "cli" / "identity.db").exists()


class TestValidate:
    """Test input validation."""

    def test_valid_file(self, capsys, players_file):
        """A clean file reports its record count."""
        assert "Valid (2 records)" in run(capsys, "validate", "--input", str(players_file))

    def test_invalid_file(self, capsys, tmp_path, valid_player_dict, invalid_player_dict):
        """Invalid records are listed and the exit code is 2."""
        path = write_jsonl(tmp_path / "bad.jsonl", [valid_player_dict, invalid_player_dict])
        with pytest.raises(SystemExit) as excinfo:
            main(["validate", "--input", str(path)])
        assert excinfo.value.code == 2
        assert "Record 2 invalid:" in capsys.readouterr().out

    def test_missing_file(self, tmp_path):
        """A missing input file exits with a message."""
        with pytest.raises(SystemExit, match="Input file not found"):
            main(["validate", "--input", str(tmp_path / "nope.jsonl")])


class TestReadJsonl:
    """Test JSONL reading."""

    def test_skips_blank_and_comment_lines(self, tmp_path):
        """Blank lines and # comments are ignored."""
        path = tmp_path / "in.jsonl"
        path.write_text('# export\n\n{"a": 1}\n', encoding="utf-8")
        assert read_jsonl(path) == [{"a": 1}]

    def test_bad_json(self, tmp_path):
        """Malformed lines exit naming the line number."""
        path = tmp_path / "in.jsonl"
        path.write_text('{"a": 1}\n{oops\n', encoding="utf-8")
        with pytest.raises(SystemExit, match="line 2"):
            read_jsonl(path)


class TestResolveAndLookup:
    """Test resolving players and looking them up."""

    def test_resolve_players(self, capsys, db, players_file):
        """Resolution prints a summary with the auto-applied match."""
        summary = json.loads(run(capsys, "--db", db, "resolve-players", "--input", str(players_file)))
        assert summary["success"] is True
        assert summary["total_processed"] == 2
        assert summary["auto_matched"] == 1

    def test_lookup_after_resolve(self, capsys, db, players_file):
        """A resolved record can be looked up by external id and season."""
        run(capsys, "--db", db, "resolve-players", "--input", str(players_file))
        snapshot = json.loads(run(capsys, "--db", db, "lookup", "--external-id", "3139477", "--season", "2022"))

        assert snapshot["identity"]["master_key"] == "player_3139477"
        assert [m["season"] for m in snapshot["mappings"]] == [2022, 2023]

    def test_lookup_unmapped(self, capsys, db):
        """Unmapped records exit with status 1."""
        with pytest.raises(SystemExit) as excinfo:
            main(["--db", db, "lookup", "--external-id", "1", "--season", "2023"])
        assert excinfo.value.code == 1

    def test_dry_run_writes_nothing(self, capsys, db, players_file):
        """A dry run leaves nothing to look up."""
        run(capsys, "--db", db, "resolve-players", "--input", str(players_file), "--dry-run")
        with pytest.raises(SystemExit):
            main(["--db", db, "lookup", "--external-id", "3139477", "--season", "2022"])

    def test_review_queue(self, capsys, db, players_file):
        """Without auto-approve the match is listed and can be approved."""
        run(capsys, "--db", db, "resolve-players", "--input", str(players_file), "--no-auto-approve")
        listing = run(capsys, "--db", db, "pending", "list", "--status", "pending")
        match_id = listing.split()[0]

        out = run(capsys, "--db", db, "pending", "approve", match_id, "--by", "reviewer")
        assert out.startswith(f"Approved: {match_id}")

        trail = json.loads(run(capsys, "--db", db, "audit", "user", "reviewer"))
        assert [e["action"] for e in trail] == ["CREATE"]


class TestTeams:
    """Test team resolution from the command line."""

    def test_resolve_teams(self, capsys, db, tmp_path):
        """Team records resolve within the given league."""
        path = write_jsonl(
            tmp_path / "teams.jsonl",
            [
                {"external_id": 1, "season": 2022, "name": "Gridiron Gang", "owner_name": "Alice Smith"},
                {"external_id": 1, "season": 2023, "name": "Gridiron Gang", "owner_name": "Alice Smith"},
            ],
        )
        summary = json.loads(run(capsys, "--db", db, "resolve-teams", "--input", str(path), "--league", "L1"))
        assert summary == {"resolved": 2, "errors": 0, "id_changes": 0}

        snapshot = json.loads(
            run(capsys, "--db", db, "lookup", "--entity-type", "TEAM", "--external-id", "1",
                "--season", "2023", "--league", "L1")
        )
        assert snapshot["identity"]["master_key"] == "team_L1_1"


class TestErrors:
    """Test error reporting."""

    def test_identity_errors_exit(self, db):
        """Domain errors become a one-line exit message."""
        with pytest.raises(SystemExit, match="Error: Identity not found"):
            main(["--db", db, "delete", "missing"])

    def test_unknown_rollback(self, db):
        """Rolling back an unknown entry exits with an error."""
        with pytest.raises(SystemExit, match="Audit entry not found"):
            main(["--db", db, "rollback", "missing"])
