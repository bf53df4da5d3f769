"""
Tests for the review queue stores.
"""

from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from pipelines.entity_resolution.context import APPROVED, PENDING, MatchCandidate
from pipelines.entity_resolution.scoring import MANUAL_REVIEW, ConfidenceFactors
from seasonlink.errors import NotFoundError, ValidationError
from seasonlink.schema import PLAYER
from storage.repositories.pending_matches import InMemoryPendingMatchStore, SqlPendingMatchStore

NOW = datetime(2024, 9, 1, 12, 0, 0)


@pytest.fixture(params=["memory", "sql"])
def store(request, session_factory):
    if request.param == "memory":
        return InMemoryPendingMatchStore()
    return SqlPendingMatchStore(session_factory)


@pytest.fixture
def candidate(make_player):
    def build(confidence=0.75, created_at=NOW, league_id=None):
        a = make_player("1", 2022, "Pat Mahomes")
        b = make_player("1", 2023, "Patrick Mahomes")
        if league_id:
            a = replace(a, league_id=league_id)
        return MatchCandidate(
            entity_type=PLAYER,
            record_a=a,
            record_b=b,
            confidence=confidence,
            factors=ConfidenceFactors(0.7, 1.0, 1.0, 0.9),
            action=MANUAL_REVIEW,
            reasons=["Strong NFL team continuity"],
            created_at=created_at,
        )

    return build


class TestPutAndGet:
    """Test storing and fetching candidates."""

    def test_get_returns_stored(self, store, candidate):
        """A stored candidate comes back with its fields intact."""
        match = candidate()
        store.put(match)

        fetched = store.get(match.id, now=NOW)
        assert fetched.id == match.id
        assert fetched.confidence == 0.75
        assert fetched.status == PENDING
        assert fetched.record_b.name == "Patrick Mahomes"
        assert fetched.factors.name_similarity == 0.7

    def test_get_unknown(self, store):
        """Unknown ids return None."""
        assert store.get("missing", now=NOW) is None

    def test_put_replaces(self, store, candidate):
        """Putting the same id twice keeps one entry."""
        match = candidate()
        store.put(match)
        store.put(match.with_status(APPROVED))
        assert store.count() == 1
        assert store.get(match.id, now=NOW).status == APPROVED


class TestList:
    """Test listing candidates."""

    def test_highest_confidence_first(self, store, candidate):
        """Listings are ordered by confidence, highest first."""
        low, high = candidate(confidence=0.55), candidate(confidence=0.8)
        store.put(low)
        store.put(high)
        assert [m.id for m in store.list(now=NOW)] == [high.id, low.id]

    def test_status_filter(self, store, candidate):
        """Only candidates with the requested status are listed."""
        first, second = candidate(), candidate()
        store.put(first)
        store.put(second)
        store.update_status(second.id, APPROVED)

        assert [m.id for m in store.list(status=PENDING, now=NOW)] == [first.id]
        assert [m.id for m in store.list(status=APPROVED, now=NOW)] == [second.id]
        assert len(store.list(now=NOW)) == 2

    def test_league_filter(self, store, candidate):
        """League filters match the league of either record."""
        scoped = candidate(league_id="L1")
        store.put(scoped)
        store.put(candidate())
        assert [m.id for m in store.list(league_id="L1", now=NOW)] == [scoped.id]


class TestStatus:
    """Test status transitions."""

    def test_update_status(self, store, candidate):
        """Updated status is returned and persisted."""
        match = candidate()
        store.put(match)
        updated = store.update_status(match.id, APPROVED)
        assert updated.status == APPROVED
        assert store.get(match.id, now=NOW).status == APPROVED

    def test_unknown_status(self, store, candidate):
        """Statuses outside the known set are refused."""
        match = candidate()
        store.put(match)
        with pytest.raises(ValidationError):
            store.update_status(match.id, "maybe")

    def test_unknown_match(self, store):
        """Updating a missing candidate raises NotFoundError."""
        with pytest.raises(NotFoundError):
            store.update_status("missing", APPROVED)


class TestExpiry:
    """Test soft expiry."""

    def test_expired_hidden(self, store, candidate):
        """Expired candidates are neither fetched nor listed."""
        match = candidate(created_at=NOW - timedelta(days=8))
        store.put(match)

        assert store.get(match.id, now=NOW) is None
        assert store.list(now=NOW) == []
        assert store.count() == 1

    def test_expire_removes_only_stale(self, store, candidate):
        """expire() drops stale candidates and keeps fresh ones."""
        stale = candidate(created_at=NOW - timedelta(days=8))
        fresh = candidate(created_at=NOW - timedelta(days=1))
        store.put(stale)
        store.put(fresh)

        assert store.expire(now=NOW) == 1
        assert store.count() == 1
        assert store.get(fresh.id, now=NOW) is not None

    def test_expiry_boundary(self, store, candidate):
        """A candidate is expired exactly at its expiry time."""
        match = candidate(created_at=NOW - timedelta(days=7))
        store.put(match)
        assert store.get(match.id, now=NOW) is None
