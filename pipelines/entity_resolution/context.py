"""
Run-scoped state for a resolution run.

Everything a run accumulates (options, tallies, produced match candidates,
the per-key creation locks) lives on a ResolutionContext that is passed
explicitly through the resolver. Nothing is kept in module globals.
"""

import threading
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from seasonlink.schema import RawRecord, record_from_attributes

from .scoring import ConfidenceFactors

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"
MATCH_STATUSES = (PENDING, APPROVED, REJECTED)

DEFAULT_RETENTION = timedelta(days=7)


def _new_id() -> str:
    return str(uuid.uuid4())


def pair_id(entity_type: str, a: RawRecord, b: RawRecord) -> str:
    """Stable id of a record pair, the same on every run."""
    return f"{entity_type}:{a.external_id}@{a.season}|{b.external_id}@{b.season}"


@dataclass(frozen=True)
class MatchCandidate:
    """A scored pair of records, either applied or awaiting review."""

    entity_type: str
    record_a: RawRecord
    record_b: RawRecord
    confidence: float
    factors: ConfidenceFactors
    action: str
    reasons: List[str] = field(default_factory=list)
    status: str = PENDING
    method: str = "fuzzy"
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=datetime.now)
    expires_at: Optional[datetime] = None

    def __post_init__(self):
        if self.expires_at is None:
            object.__setattr__(self, "expires_at", self.created_at + DEFAULT_RETENTION)

    @property
    def league_id(self) -> Optional[str]:
        return self.record_a.league_id or self.record_b.league_id

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now()) >= self.expires_at

    def with_status(self, status: str) -> "MatchCandidate":
        return replace(self, status=status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "record_a": self.record_a.to_dict(),
            "record_b": self.record_b.to_dict(),
            "confidence": self.confidence,
            "factors": self.factors.to_dict(),
            "action": self.action,
            "reasons": list(self.reasons),
            "status": self.status,
            "method": self.method,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MatchCandidate":
        return cls(
            id=data["id"],
            entity_type=data["entity_type"],
            record_a=record_from_attributes(data["record_a"]),
            record_b=record_from_attributes(data["record_b"]),
            confidence=float(data["confidence"]),
            factors=ConfidenceFactors(**data["factors"]),
            action=data["action"],
            reasons=list(data.get("reasons") or []),
            status=data.get("status", PENDING),
            method=data.get("method", "fuzzy"),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )


class KeyedLock:
    """One lock per key, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks[key]
        with lock:
            yield


@dataclass
class ResolutionContext:
    """Options and running tallies of one resolution run."""

    seasons: Optional[List[int]] = None
    min_confidence: float = 0.5
    auto_approve: bool = True
    skip_existing: bool = False
    dry_run: bool = False
    performed_by: str = "system"
    run_id: str = field(default_factory=_new_id)
    started_at: datetime = field(default_factory=datetime.now)

    total_processed: int = 0
    auto_matched: int = 0
    manual_review_required: int = 0
    skipped: int = 0
    validation_errors: int = 0
    comparison_errors: int = 0
    matches: List[MatchCandidate] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    locks: KeyedLock = field(default_factory=KeyedLock, repr=False)

    def elapsed(self) -> float:
        return (datetime.now() - self.started_at).total_seconds()


@dataclass
class ResolutionResult:
    run_id: str
    success: bool
    total_processed: int
    auto_matched: int
    manual_review_required: int
    skipped: int
    validation_errors: int
    comparison_errors: int
    matches: List[MatchCandidate]
    errors: List[str]
    execution_time: float

    @classmethod
    def from_context(cls, context: ResolutionContext, success: bool = True) -> "ResolutionResult":
        return cls(
            run_id=context.run_id,
            success=success,
            total_processed=context.total_processed,
            auto_matched=context.auto_matched,
            manual_review_required=context.manual_review_required,
            skipped=context.skipped,
            validation_errors=context.validation_errors,
            comparison_errors=context.comparison_errors,
            matches=list(context.matches),
            errors=list(context.errors),
            execution_time=context.elapsed(),
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "success": self.success,
            "total_processed": self.total_processed,
            "auto_matched": self.auto_matched,
            "manual_review_required": self.manual_review_required,
            "skipped": self.skipped,
            "validation_errors": self.validation_errors,
            "comparison_errors": self.comparison_errors,
            "execution_time": round(self.execution_time, 3),
        }
