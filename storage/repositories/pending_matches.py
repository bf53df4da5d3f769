"""
Pending Matches Repository.

Responsibilities:
- Hold match candidates awaiting a human decision.
- List / get / status transitions for the review surface.
- Soft expiry of stale candidates.

Non-Responsibilities:
- No scoring.
- No application of approved matches to the identity graph.

Invariant:
Expired candidates are never returned by get or list. Expiry is not
safety-critical: the next resolution run recomputes the same candidate.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from pipelines.entity_resolution.context import MATCH_STATUSES, MatchCandidate
from seasonlink.database import PendingMatchRow
from seasonlink.errors import NotFoundError, ValidationError


def _check_status(status: str) -> None:
    if status not in MATCH_STATUSES:
        raise ValidationError(f"Unknown match status: {status}")


class PendingMatchStore(ABC):
    """Review-queue storage interface."""

    @abstractmethod
    def put(self, match: MatchCandidate) -> None:
        ...

    @abstractmethod
    def get(self, match_id: str, now: Optional[datetime] = None) -> Optional[MatchCandidate]:
        ...

    @abstractmethod
    def list(
        self,
        status: Optional[str] = None,
        league_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[MatchCandidate]:
        ...

    @abstractmethod
    def update_status(self, match_id: str, status: str) -> MatchCandidate:
        ...

    @abstractmethod
    def expire(self, now: Optional[datetime] = None) -> int:
        """Drop expired candidates; returns how many were removed."""
        ...

    @abstractmethod
    def count(self) -> int:
        ...


class InMemoryPendingMatchStore(PendingMatchStore):
    """Process-local store, safe to share between worker threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self._items: Dict[str, MatchCandidate] = {}

    def put(self, match: MatchCandidate) -> None:
        with self._lock:
            self._items[match.id] = match

    def get(self, match_id, now=None):
        with self._lock:
            match = self._items.get(match_id)
        if match is None or match.is_expired(now):
            return None
        return match

    def list(self, status=None, league_id=None, now=None):
        with self._lock:
            items = list(self._items.values())
        return sorted(
            (
                m for m in items
                if not m.is_expired(now)
                and (status is None or m.status == status)
                and (league_id is None or m.league_id == league_id)
            ),
            key=lambda m: m.confidence,
            reverse=True,
        )

    def update_status(self, match_id, status):
        _check_status(status)
        with self._lock:
            match = self._items.get(match_id)
            if match is None:
                raise NotFoundError(f"Pending match not found: {match_id}")
            updated = match.with_status(status)
            self._items[match_id] = updated
            return updated

    def expire(self, now=None):
        with self._lock:
            stale = [mid for mid, m in self._items.items() if m.is_expired(now)]
            for mid in stale:
                del self._items[mid]
        return len(stale)

    def count(self):
        with self._lock:
            return len(self._items)


class SqlPendingMatchStore(PendingMatchStore):
    """Review queue persisted in the pending_matches table."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def _run(self, func):
        session = self.session_factory()
        try:
            result = func(session)
            session.commit()
            return result
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def put(self, match):
        def put(session):
            row = session.get(PendingMatchRow, match.id)
            if row is None:
                row = PendingMatchRow(id=match.id)
                session.add(row)
            row.entity_type = match.entity_type
            row.league_id = match.league_id
            row.confidence = match.confidence
            row.status = match.status
            row.payload = match.to_dict()
            row.created_at = match.created_at
            row.expires_at = match.expires_at

        self._run(put)

    def get(self, match_id, now=None):
        def get(session):
            row = session.get(PendingMatchRow, match_id)
            if row is None or row.expires_at <= (now or datetime.now()):
                return None
            return MatchCandidate.from_dict(row.payload)

        return self._run(get)

    def list(self, status=None, league_id=None, now=None):
        def list_rows(session):
            query = session.query(PendingMatchRow).filter(
                PendingMatchRow.expires_at > (now or datetime.now())
            )
            if status:
                query = query.filter(PendingMatchRow.status == status)
            if league_id:
                query = query.filter(PendingMatchRow.league_id == league_id)
            rows = query.order_by(PendingMatchRow.confidence.desc()).all()
            return [MatchCandidate.from_dict(row.payload) for row in rows]

        return self._run(list_rows)

    def update_status(self, match_id, status):
        _check_status(status)

        def update(session):
            row = session.get(PendingMatchRow, match_id)
            if row is None:
                raise NotFoundError(f"Pending match not found: {match_id}")
            updated = MatchCandidate.from_dict(row.payload).with_status(status)
            row.status = status
            row.payload = updated.to_dict()
            return updated

        return self._run(update)

    def expire(self, now=None):
        def expire(session):
            return (
                session.query(PendingMatchRow)
                .filter(PendingMatchRow.expires_at <= (now or datetime.now()))
                .delete(synchronize_session=False)
            )

        return self._run(expire)

    def count(self):
        return self._run(lambda session: session.query(PendingMatchRow).count())
