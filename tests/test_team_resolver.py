"""
Tests for fantasy team identity resolution.
"""

import pytest

from seasonlink.errors import NotFoundError
from seasonlink.schema import TEAM


@pytest.fixture
def resolver(services):
    return services.teams


@pytest.fixture
def league_history(make_team):
    """Three seasons of a two-team league; team 1 is re-issued as team 7 in 2023."""
    return [
        make_team("1", 2021, "Gridiron Gang", "Alice Smith", wins=10, losses=4, standing=1),
        make_team("1", 2022, "Gridiron Gang", "Alice Smith", wins=9, losses=5, standing=2),
        make_team("7", 2023, "Gridiron Gang", "Alice Smith", wins=11, losses=3, standing=1),
        make_team("2", 2021, "Bombers", "Bob Jones", wins=4, losses=10, standing=8),
        make_team("2", 2022, "Bombers", "Bob Jones", wins=6, losses=8, standing=6),
        make_team("2", 2023, "Bombers", "Bob Jones", wins=5, losses=9, standing=7),
    ]


class TestSameIdContinuity:
    """Test team ids that persist across seasons."""

    def test_one_identity_per_team_id(self, resolver, graph, make_team):
        """Every season of a team id maps to the same identity."""
        records = [make_team("3", season, "Monday Maulers", "Cara Diaz") for season in (2021, 2022, 2023)]
        result = resolver.resolve_team_identities(records, league_id="L1")

        assert result.resolved == 3
        assert result.errors == 0
        identity = graph.get_identity_by_key("team_L1_3")
        assert identity is not None
        assert {m.season for m in graph.get_mappings(identity.id)} == {2021, 2022, 2023}
        assert {m.method for m in graph.get_mappings(identity.id)} == {"exact"}

    def test_rerun_reuses_identity(self, resolver, graph, make_team):
        """Resolving the same league again creates nothing new."""
        records = [make_team("3", 2022, "Monday Maulers", "Cara Diaz")]
        resolver.resolve_team_identities(records, league_id="L1")
        resolver.resolve_team_identities(records + [make_team("3", 2023, "Monday Maulers", "Cara Diaz")], league_id="L1")

        identities = graph.list_identities(TEAM, "L1")
        assert len(identities) == 1
        assert len(graph.get_mappings(identities[0].id)) == 2

    def test_team_ids_scoped_to_league(self, resolver, graph, make_team):
        """The same team id in two leagues gives two identities."""
        resolver.resolve_team_identities([make_team("1", 2023, "Alpha", "Ann", league_id="L1")], league_id="L1")
        resolver.resolve_team_identities([make_team("1", 2023, "Beta", "Ben", league_id="L2")], league_id="L2")

        assert resolver.get_team_identity("L1", "1", 2023).canonical_name == "Alpha"
        assert resolver.get_team_identity("L2", "1", 2023).canonical_name == "Beta"

    def test_manual_confidence(self, resolver, graph, make_team):
        """Without auto resolution mappings carry 0.8 confidence."""
        resolver.resolve_team_identities([make_team("3", 2023, "Maulers", "Cara")], league_id="L1", auto_resolve=False)
        identity = graph.get_identity_by_key("team_L1_3")
        assert graph.get_mappings(identity.id)[0].confidence_score == 0.8


class TestOwnerHistory:
    """Test owner timeline maintenance."""

    def test_owner_change(self, resolver, graph, make_team):
        """A new owner closes the previous segment the season before."""
        records = [
            make_team("4", 2020, "Sunday Funday", "Dee"),
            make_team("4", 2021, "Sunday Funday", "Dee"),
            make_team("4", 2022, "Sunday Funday", "Eli"),
        ]
        resolver.resolve_team_identities(records, league_id="L1")

        history = graph.get_identity_by_key("team_L1_4").metadata_json["owner_history"]
        assert history == [
            {"owner": "Dee", "start_season": 2020, "end_season": 2021},
            {"owner": "Eli", "start_season": 2022, "end_season": None},
        ]

    def test_renamed_team_keeps_alternate_name(self, resolver, graph, make_team):
        """Earlier team names are kept as alternate names."""
        records = [
            make_team("5", 2021, "Old Name", "Fay"),
            make_team("5", 2022, "New Name", "Fay"),
        ]
        resolver.resolve_team_identities(records, league_id="L1")
        identity = graph.get_identity_by_key("team_L1_5")
        assert identity.canonical_name == "Old Name"
        assert identity.metadata_json["alternate_names"] == ["New Name"]


class TestReissuedTeamId:
    """Test detection of team id changes."""

    def test_reissued_id_joins_existing_identity(self, resolver, graph, league_history):
        """A new id with the same owner and name continues the old identity."""
        result = resolver.resolve_team_identities(league_history, league_id="L1")

        assert result.resolved == 6
        assert result.id_changes == 1
        original = resolver.get_team_identity("L1", "1", 2022)
        continued = resolver.get_team_identity("L1", "7", 2023)
        assert continued.id == original.id

        mapping = [m for m in graph.get_mappings(original.id) if m.external_id == "7"][0]
        assert mapping.method == "fuzzy"
        assert mapping.confidence_score == pytest.approx(1.0)
        assert len(graph.list_identities(TEAM, "L1")) == 2

    def test_rerun_keeps_continuity_provenance(self, resolver, graph, audit, make_team):
        """Resolving the league again keeps the fuzzy mapping as it was and audits nothing."""
        records = [
            make_team("1", 2021, "Gridiron Gang", "Alice Smith"),
            make_team("1", 2022, "Gridiron Gang", "Alice Smith"),
            make_team("7", 2023, "Gridiron Gangsters", "Alice Smith"),
        ]
        resolver.resolve_team_identities(records, league_id="L1")
        identity = resolver.get_team_identity("L1", "7", 2023)

        def reissued():
            return [(m.method, m.confidence_score) for m in graph.get_mappings(identity.id) if m.external_id == "7"]

        first = reissued()
        trail = len(audit.get_audit_trail(TEAM, identity.id))

        result = resolver.resolve_team_identities(records, league_id="L1")

        assert first[0][0] == "fuzzy"
        assert first[0][1] < 1.0
        assert reissued() == first
        assert result.id_changes == 0
        assert len(audit.get_audit_trail(TEAM, identity.id)) == trail

    def test_continued_team_extends_owner_history(self, resolver, graph, league_history):
        """The re-issued id's seasons extend the existing owner segment."""
        resolver.resolve_team_identities(league_history, league_id="L1")
        identity = resolver.get_team_identity("L1", "7", 2023)

        assert identity.metadata_json["owner_history"] == [
            {"owner": "Alice Smith", "start_season": 2021, "end_season": None}
        ]

    def test_new_owner_is_new_team(self, resolver, graph, make_team):
        """A new id under a different owner and name starts a new identity."""
        records = [
            make_team("1", 2022, "Gridiron Gang", "Alice Smith"),
            make_team("9", 2023, "Zebra Crossing", "Quinn Ortega"),
        ]
        result = resolver.resolve_team_identities(records, league_id="L1")

        assert result.id_changes == 0
        assert len(graph.list_identities(TEAM, "L1")) == 2

    def test_outside_season_window(self, resolver, graph, make_team):
        """Continuity is not considered across more than two seasons."""
        records = [
            make_team("1", 2018, "Gridiron Gang", "Alice Smith"),
            make_team("7", 2023, "Gridiron Gang", "Alice Smith"),
        ]
        result = resolver.resolve_team_identities(records, league_id="L1")

        assert result.id_changes == 0
        assert len(graph.list_identities(TEAM, "L1")) == 2

    def test_no_detection_without_auto_resolve(self, resolver, graph, league_history):
        """Id change detection only runs when auto resolving."""
        result = resolver.resolve_team_identities(league_history, league_id="L1", auto_resolve=False)
        assert result.id_changes == 0
        assert len(graph.list_identities(TEAM, "L1")) == 3


class TestTeamHistory:
    """Test history aggregation."""

    def test_totals(self, resolver, league_history):
        """Wins, losses, best finish and titles are summed across seasons."""
        resolver.resolve_team_identities(league_history, league_id="L1")
        history = resolver.team_history("team_L1_1")

        assert history.total_seasons == 3
        assert history.total_wins == 30
        assert history.total_losses == 12
        assert history.best_finish == 1
        assert history.championships == 2
        assert [s["season"] for s in history.seasons] == [2021, 2022, 2023]

    def test_unknown_key(self, resolver):
        """Unknown master keys raise NotFoundError."""
        with pytest.raises(NotFoundError):
            resolver.team_history("team_L1_404")


class TestTeamMerge:
    """Test merging team identities."""

    def test_merge_combines_owner_history(self, resolver, graph, make_team):
        """Merged identities interleave their owner timelines."""
        resolver.resolve_team_identities(
            [make_team("1", 2020, "Gang", "Alice"), make_team("8", 2021, "Crew", "Zed")],
            league_id="L1",
            auto_resolve=False,
        )
        primary = graph.get_identity_by_key("team_L1_1")
        secondary = graph.get_identity_by_key("team_L1_8")

        resolver.merge_team_identities(primary.id, secondary.id, reason="same franchise")

        merged = graph.get_identity(primary.id)
        owners = [seg["owner"] for seg in merged.metadata_json["owner_history"]]
        assert owners == ["Alice", "Zed"]
        assert merged.metadata_json["owner_history"][0]["end_season"] == 2020
        assert graph.get_identity(secondary.id) is None
