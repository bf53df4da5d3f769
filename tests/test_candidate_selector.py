"""
Tests for blocking and candidate pair selection.
"""

from pipelines.entity_resolution.candidate_selector import (
    blocking_keys,
    build_blocks,
    candidate_pairs,
)


class TestBlockingKeys:
    """Test blocking key derivation."""

    def test_surname_and_prefix(self, make_player):
        """A name yields a surname key and a four-letter prefix key."""
        keys = blocking_keys(make_player("1", 2023, "Patrick Mahomes"))
        assert keys == ["last:mahomes", "prefix:patr"]

    def test_suffix_removed(self, make_player):
        """Generational suffixes do not become the surname."""
        keys = blocking_keys(make_player("1", 2023, "Odell Beckham Jr."))
        assert "last:beckham" in keys

    def test_short_name_prefix(self, make_player):
        """Names shorter than four letters use what they have."""
        keys = blocking_keys(make_player("1", 2023, "A.J."))
        assert keys == ["last:aj", "prefix:aj"]


class TestCandidatePairs:
    """Test pair generation."""

    def test_shortened_first_name_shares_block(self, make_player):
        """Pat and Patrick Mahomes meet in the surname block."""
        records = [
            make_player("1", 2022, "Pat Mahomes"),
            make_player("1", 2023, "Patrick Mahomes"),
        ]
        pairs = candidate_pairs(build_blocks(records))
        assert len(pairs) == 1
        a, b, block = pairs[0]
        assert (a.season, b.season) == (2022, 2023)
        assert block == "last:mahomes"

    def test_same_season_pairs_skipped(self, make_player):
        """Records from the same season are never paired."""
        records = [
            make_player("1", 2023, "Mike Evans"),
            make_player("2", 2023, "Mike Evens"),
        ]
        assert candidate_pairs(build_blocks(records)) == []

    def test_pairs_deduplicated_across_blocks(self, make_player):
        """A pair sharing two blocks is emitted once."""
        records = [
            make_player("1", 2022, "Mike Evans"),
            make_player("1", 2023, "Mike Evans"),
        ]
        blocks = build_blocks(records)
        assert set(blocks) == {"last:evans", "prefix:mike"}
        assert len(candidate_pairs(blocks)) == 1

    def test_earliest_season_first(self, make_player):
        """Pairs are ordered earliest season first regardless of input order."""
        records = [
            make_player("1", 2024, "Josh Allen"),
            make_player("1", 2021, "Josh Allen"),
        ]
        a, b, _ = candidate_pairs(build_blocks(records))[0]
        assert a.season == 2021
        assert b.season == 2024

    def test_unrelated_names_not_paired(self, make_player):
        """Names sharing no block are not compared."""
        records = [
            make_player("1", 2022, "Tom Brady"),
            make_player("2", 2023, "Aaron Rodgers"),
        ]
        assert candidate_pairs(build_blocks(records)) == []
