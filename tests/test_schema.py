"""
Tests for record validation.
"""

import pytest

from seasonlink.errors import ValidationError
from seasonlink.schema import (
    PLAYER,
    TEAM,
    RawRecord,
    RecordStats,
    record_from_attributes,
    record_from_dict,
    validate_record,
)


class TestValidateRecord:
    """Test basic validation function."""

    def test_valid_record(self, valid_player_dict):
        """A valid record has no errors."""
        assert validate_record(valid_player_dict) == []

    def test_missing_required_fields(self):
        """Each missing required field is reported."""
        errors = validate_record({})
        assert "Missing required field: external_id" in errors
        assert "Missing required field: season" in errors
        assert "Missing required field: name" in errors

    def test_blank_name(self):
        """Blank names are rejected."""
        errors = validate_record({"external_id": "1", "season": 2023, "name": "   "})
        assert any("name" in err for err in errors)

    def test_integer_external_id(self):
        """Integer external ids are accepted."""
        assert validate_record({"external_id": 3139477, "season": 2023, "name": "Patrick Mahomes"}) == []

    def test_boolean_rejected_as_number(self):
        """Booleans are not valid ids, seasons or stats."""
        errors = validate_record(
            {"external_id": True, "season": True, "name": "X", "stats": {"games": True}}
        )
        assert len(errors) == 3

    def test_numeric_season_string(self):
        """A digit string is an acceptable season."""
        assert validate_record({"external_id": "1", "season": "2023", "name": "X"}) == []

    def test_optional_fields_must_be_strings(self):
        """Optional text fields must be strings when present."""
        errors = validate_record({"external_id": "1", "season": 2023, "name": "X", "position": 12})
        assert errors == ["Field 'position' must be a string if provided"]

    def test_negative_stats(self, invalid_player_dict):
        """Negative stats are rejected."""
        errors = validate_record(invalid_player_dict)
        assert "Stat 'games' must not be negative" in errors

    def test_not_an_object(self):
        """Non-dict input is rejected outright."""
        assert validate_record(["not", "a", "record"]) == ["Record must be an object"]


class TestRecordFromDict:
    """Test record construction."""

    def test_builds_record(self, valid_player_dict):
        """Fields are normalized into a RawRecord."""
        record = record_from_dict(valid_player_dict)

        assert record.entity_type == PLAYER
        assert record.external_id == "3139477"
        assert record.season == 2023
        assert record.stats.games == 17
        assert record.stats.average_points == pytest.approx(25.0)
        assert record.key == ("3139477", 2023)

    def test_games_played_alias(self):
        """games_played is accepted for games."""
        record = record_from_dict(
            {"external_id": "1", "season": 2023, "name": "X", "stats": {"games_played": 4, "total_points": 40}}
        )
        assert record.stats.games == 4
        assert record.stats.average_points == 10.0

    def test_team_record(self):
        """Team records keep owner, league and standings."""
        record = record_from_dict(
            {
                "external_id": 7,
                "season": 2023,
                "name": "Gridiron Gang",
                "owner_name": "Alice Smith",
                "league_id": "L1",
                "stats": {"wins": 11, "losses": 3, "standing": 1},
            },
            TEAM,
        )
        assert record.entity_type == TEAM
        assert record.owner_name == "Alice Smith"
        assert record.stats.standing == 1

    def test_invalid_raises(self, invalid_player_dict):
        """Invalid input raises ValidationError with every message."""
        with pytest.raises(ValidationError) as excinfo:
            record_from_dict(invalid_player_dict)
        assert len(excinfo.value.messages) >= 2
        assert excinfo.value.record is invalid_player_dict

    def test_unknown_entity_type(self, valid_player_dict):
        """Only PLAYER and TEAM records exist."""
        with pytest.raises(ValidationError):
            record_from_dict(valid_player_dict, "COACH")


class TestAttributes:
    """Test mapping attribute snapshots."""

    def test_attributes_rebuild_record(self):
        """A record's dict form rebuilds the same record."""
        record = RawRecord(
            entity_type=TEAM,
            external_id="7",
            season=2023,
            name="Gridiron Gang",
            owner_name="Alice Smith",
            league_id="L1",
            stats=RecordStats(wins=11, losses=3, standing=1),
        )
        assert record_from_attributes(record.to_dict()) == record
