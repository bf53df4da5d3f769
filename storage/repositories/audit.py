"""
Audit Repository.

Responsibilities:
- Append audit entries for identity graph mutations.
- Query entries by entity, performer, entity set and time window.
- Aggregate entry counts by action, performer and day.

Non-Responsibilities:
- No rollback logic.
- No event publication.
- No entity resolution.

Invariant:
Entries are append-only. This repository exposes no update or delete.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from seasonlink.database import AuditEntryRow
from seasonlink.errors import AuditWriteFailure

ACTIONS = ("CREATE", "MERGE", "SPLIT", "UPDATE", "DELETE", "ROLLBACK")


@dataclass(frozen=True)
class AuditEntry:
    id: str
    entity_type: str
    entity_id: str
    action: str
    before_state: Optional[Dict[str, Any]]
    after_state: Optional[Dict[str, Any]]
    reason: Optional[str]
    performed_by: Optional[str]
    performed_at: datetime
    extra: Optional[Dict[str, Any]] = None

    @classmethod
    def from_row(cls, row: AuditEntryRow) -> "AuditEntry":
        return cls(
            id=row.id,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            action=row.action,
            before_state=row.before_state,
            after_state=row.after_state,
            reason=row.reason,
            performed_by=row.performed_by,
            performed_at=row.performed_at,
            extra=row.extra,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "before_state": self.before_state,
            "after_state": self.after_state,
            "reason": self.reason,
            "performed_by": self.performed_by,
            "performed_at": self.performed_at.isoformat(),
            "extra": self.extra,
        }


class AuditRepository:
    """SQL-backed, append-only store of audit entries."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    @contextmanager
    def _session(self):
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def add(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        before_state: Optional[Dict[str, Any]] = None,
        after_state: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None,
        performed_by: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
        performed_at: Optional[datetime] = None,
    ) -> AuditEntry:
        if action not in ACTIONS:
            raise ValueError(f"Unknown audit action: {action}")

        try:
            with self._session() as session:
                row = AuditEntryRow(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    action=action,
                    before_state=before_state,
                    after_state=after_state,
                    reason=reason,
                    performed_by=performed_by,
                    performed_at=performed_at or datetime.now(),
                    extra=extra,
                )
                session.add(row)
                session.flush()
                entry = AuditEntry.from_row(row)
        except (SQLAlchemyError, TypeError) as e:
            raise AuditWriteFailure(f"Could not persist {action} entry for {entity_id}: {e}") from e
        return entry

    def get(self, entry_id: str) -> Optional[AuditEntry]:
        with self._session() as session:
            row = session.query(AuditEntryRow).filter_by(id=entry_id).first()
            return AuditEntry.from_row(row) if row else None

    def _filtered(
        self,
        session,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        entity_ids: Optional[Iterable[str]] = None,
        performed_by: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ):
        query = session.query(AuditEntryRow)
        if entity_type:
            query = query.filter(AuditEntryRow.entity_type == entity_type)
        if entity_id:
            query = query.filter(AuditEntryRow.entity_id == entity_id)
        if entity_ids is not None:
            query = query.filter(AuditEntryRow.entity_id.in_(list(entity_ids)))
        if performed_by:
            query = query.filter(AuditEntryRow.performed_by == performed_by)
        if start:
            query = query.filter(AuditEntryRow.performed_at >= start)
        if end:
            query = query.filter(AuditEntryRow.performed_at <= end)
        return query

    def query(self, limit: Optional[int] = None, **filters) -> List[AuditEntry]:
        """
        Entries matching every given filter, newest first.

        Filters: entity_type, entity_id, entity_ids, performed_by, start, end.
        """
        with self._session() as session:
            query = self._filtered(session, **filters).order_by(
                AuditEntryRow.performed_at.desc(), AuditEntryRow.seq.desc()
            )
            if limit:
                query = query.limit(limit)
            return [AuditEntry.from_row(row) for row in query.all()]

    def count(self, **filters) -> int:
        with self._session() as session:
            return self._filtered(session, **filters).count()

    def action_counts(self, **filters) -> Dict[str, int]:
        with self._session() as session:
            rows = (
                self._filtered(session, **filters)
                .with_entities(AuditEntryRow.action, func.count(AuditEntryRow.seq))
                .group_by(AuditEntryRow.action)
                .all()
            )
            return {action: count for action, count in rows}

    def performer_counts(self, limit: int = 10, **filters) -> List[Tuple[str, int]]:
        """Most active performers, busiest first."""
        with self._session() as session:
            count_col = func.count(AuditEntryRow.seq)
            rows = (
                self._filtered(session, **filters)
                .filter(AuditEntryRow.performed_by.isnot(None))
                .with_entities(AuditEntryRow.performed_by, count_col)
                .group_by(AuditEntryRow.performed_by)
                .order_by(count_col.desc(), AuditEntryRow.performed_by)
                .limit(limit)
                .all()
            )
            return [(user, count) for user, count in rows]

    def timestamps(self, **filters) -> List[datetime]:
        with self._session() as session:
            rows = self._filtered(session, **filters).with_entities(AuditEntryRow.performed_at).all()
            return [row[0] for row in rows]
