"""
Audit trail for identity graph mutations.

Every mutation is recorded with before/after snapshots. Entries can be
queried by entity, performer or league, summarised, and rolled back by
replaying the structural inverse of the recorded action.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from storage.repositories.audit import AuditEntry, AuditRepository

from .errors import IdentityError, NotFoundError, RollbackError
from .events import AuditEvent, EventSink, NullEventSink
from .logger import get_logger
from .schema import TEAM


@dataclass
class AuditStatistics:
    total_actions: int
    action_breakdown: Dict[str, int] = field(default_factory=dict)
    user_activity: List[Dict[str, Any]] = field(default_factory=list)
    recent_activity: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_actions": self.total_actions,
            "action_breakdown": dict(self.action_breakdown),
            "user_activity": list(self.user_activity),
            "recent_activity": dict(self.recent_activity),
        }


def _mapping_ids(state: Optional[Dict[str, Any]]) -> set:
    return {m["id"] for m in (state or {}).get("mappings", [])}


class IdentityAuditLogger:
    """
    Writes, queries and rolls back audit entries.

    Writing an entry never raises: a failed write is logged and counted so
    the mutation that triggered it stands.
    """

    def __init__(
        self,
        repository: AuditRepository,
        graph=None,
        event_sink: Optional[EventSink] = None,
        logger=None,
    ):
        self.repository = repository
        self.graph = graph
        self.event_sink = event_sink or NullEventSink()
        self.logger = logger or get_logger()

    def log_action(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        before_state: Optional[Dict[str, Any]] = None,
        after_state: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None,
        performed_by: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEntry]:
        """
        Append one audit entry and publish its event.

        Returns:
            The stored entry, or None when the write failed
        """
        try:
            entry = self.repository.add(
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                before_state=before_state,
                after_state=after_state,
                reason=reason,
                performed_by=performed_by,
                extra=extra,
            )
        except Exception as e:
            self.logger.error(
                f"Audit write failed for {action} on {entity_type} {entity_id}: {e}",
                error_type=type(e).__name__,
            )
            self.logger.record_audit_failure(type(e).__name__)
            return None

        self.logger.debug("Audit entry written", entry_id=entry.id, action=action, entity_id=entity_id)
        self._publish(entry)
        return entry

    def _publish(self, entry: AuditEntry) -> None:
        try:
            self.event_sink.publish(AuditEvent.from_entry(entry))
        except Exception as e:
            self.logger.warning(
                f"Audit event not delivered: {e}",
                entry_id=entry.id,
                error_type=type(e).__name__,
            )
            self.logger.record_event_dropped()

    # Queries

    def get_entry(self, entry_id: str) -> AuditEntry:
        entry = self.repository.get(entry_id)
        if entry is None:
            raise NotFoundError(f"Audit entry not found: {entry_id}")
        return entry

    def get_audit_trail(self, entity_type: str, entity_id: str) -> List[AuditEntry]:
        return self.repository.query(entity_type=entity_type, entity_id=entity_id)

    def get_user_audit_trail(self, user: str, limit: int = 100) -> List[AuditEntry]:
        return self.repository.query(performed_by=user, limit=limit)

    def get_league_audit_trail(self, league_id: str, limit: int = 100) -> List[AuditEntry]:
        """Entries for the team identities that belong to a league."""
        if self.graph is None:
            return []
        team_ids = [identity.id for identity in self.graph.list_identities(TEAM, league_id)]
        if not team_ids:
            return []
        return self.repository.query(entity_type=TEAM, entity_ids=team_ids, limit=limit)

    def get_audit_statistics(
        self,
        entity_type: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        user: Optional[str] = None,
        days: int = 30,
        now: Optional[datetime] = None,
    ) -> AuditStatistics:
        """
        Aggregate counts over the filtered entries.

        recent_activity holds one count per calendar day (ISO date) for the
        trailing window of `days` days, oldest first.
        """
        filters = {
            "entity_type": entity_type,
            "performed_by": user,
            "start": start,
            "end": end,
        }
        users = self.repository.performer_counts(limit=10, **filters)

        now = now or datetime.now()
        window_start = datetime.combine((now - timedelta(days=days - 1)).date(), datetime.min.time())
        recent_filters = dict(filters, start=max(start, window_start) if start else window_start)
        per_day = Counter(ts.date().isoformat() for ts in self.repository.timestamps(**recent_filters))

        return AuditStatistics(
            total_actions=self.repository.count(**filters),
            action_breakdown=self.repository.action_counts(**filters),
            user_activity=[{"user": u, "count": c} for u, c in users],
            recent_activity=dict(sorted(per_day.items())),
        )

    # Rollback

    def rollback(
        self,
        audit_entry_id: str,
        performed_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Optional[AuditEntry]:
        """
        Replay the structural inverse of an audit entry.

        Raises:
            NotFoundError: No such audit entry
            RollbackError: The entry is itself a ROLLBACK, or its inverse
                cannot be applied to the current graph
        """
        entry = self.get_entry(audit_entry_id)
        if entry.action == "ROLLBACK":
            raise RollbackError("Cannot roll back a ROLLBACK entry")
        if self.graph is None:
            raise RollbackError("Rollback requires an identity graph")

        handlers = {
            "CREATE": self._undo_create,
            "MERGE": self._undo_merge,
            "SPLIT": self._undo_split,
            "UPDATE": self._undo_update,
            "DELETE": self._undo_delete,
        }
        handler = handlers.get(entry.action)
        if handler is None:
            raise RollbackError(f"Unknown audit action: {entry.action}")

        try:
            with self.graph.transaction() as session:
                handler(entry, session)
        except IdentityError as e:
            raise RollbackError(f"Rollback of {entry.action} {entry.id} failed: {e}") from e

        self.logger.info("Rolled back audit entry", entry_id=entry.id, action=entry.action)
        return self.log_action(
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            action="ROLLBACK",
            before_state=entry.after_state,
            after_state=entry.before_state,
            reason=reason or f"Rollback of {entry.action} entry {entry.id}",
            performed_by=performed_by,
            extra={"original_action": entry.action, "original_entry_id": entry.id},
        )

    def _undo_create(self, entry: AuditEntry, session) -> None:
        self.graph.delete_identity(entry.entity_id, session=session)

    def _undo_merge(self, entry: AuditEntry, session) -> None:
        before = entry.before_state or {}
        self.graph.restore_identity(before["secondary"], session=session)
        self.graph.apply_state(
            entry.entity_id, {"identity": before["primary"]["identity"]}, session=session
        )

    def _undo_split(self, entry: AuditEntry, session) -> None:
        after = entry.after_state or {}
        self.graph.reassign_mappings(after["mappings_split"], entry.entity_id, session=session)
        self.graph.delete_identity(after["split"]["identity"]["id"], session=session)

    def _undo_update(self, entry: AuditEntry, session) -> None:
        state = entry.before_state or {}
        if "match" in state:
            raise RollbackError("Review decisions cannot be rolled back")
        if _mapping_ids(entry.before_state) == _mapping_ids(entry.after_state):
            # metadata-only change: leave later mapping changes alone
            state = {"identity": state["identity"]}
        self.graph.apply_state(entry.entity_id, state, session=session)

    def _undo_delete(self, entry: AuditEntry, session) -> None:
        self.graph.restore_identity(entry.before_state, session=session)
