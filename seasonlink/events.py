"""
Outward event stream for audit entries.

Every audit entry is published as one immutable AuditEvent to an injected
EventSink. Identity graph correctness never depends on a sink being
attached or reachable.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from .logger import get_logger
from .retry import CircuitBreaker, exponential_backoff, should_retry_http_status


class DeliveryError(Exception):
    """Raised when a subscriber answers with a retryable HTTP status."""
    pass


@dataclass(frozen=True)
class AuditEvent:
    entry_id: str
    entity_type: str
    entity_id: str
    action: str
    performed_by: Optional[str]
    performed_at: datetime
    reason: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None

    @classmethod
    def from_entry(cls, entry) -> "AuditEvent":
        return cls(
            entry_id=entry.id,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            action=entry.action,
            performed_by=entry.performed_by,
            performed_at=entry.performed_at,
            reason=entry.reason,
            extra=dict(entry.extra) if entry.extra else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "identity.audit",
            "entry_id": self.entry_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "performed_by": self.performed_by,
            "performed_at": self.performed_at.isoformat(),
            "reason": self.reason,
            "extra": self.extra,
        }


class EventSink(ABC):
    """Output port receiving one event per audit entry."""

    @abstractmethod
    def publish(self, event: AuditEvent) -> None:
        ...


class NullEventSink(EventSink):
    def publish(self, event: AuditEvent) -> None:
        return None


class InMemoryEventSink(EventSink):
    """Collects events in order; used by tests and local dashboards."""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: List[AuditEvent] = []

    def publish(self, event: AuditEvent) -> None:
        with self._lock:
            self.events.append(event)


class WebhookEventSink(EventSink):
    """
    POST each event as JSON to a subscriber URL.

    Transient failures (connection errors, timeouts, 408/429/5xx) are retried
    with exponential backoff; a subscriber that keeps failing trips the
    circuit breaker and further events fail fast until it recovers.
    """

    def __init__(
        self,
        url: str,
        session=None,
        timeout: float = 5.0,
        max_retries: int = 2,
        base_delay: float = 0.5,
        breaker: Optional[CircuitBreaker] = None,
        logger=None,
    ):
        self.url = url
        self.session = session or requests.Session()
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        self.logger = logger or get_logger()

        self._deliver = exponential_backoff(
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=10.0,
            exceptions=(requests.ConnectionError, requests.Timeout, DeliveryError),
            on_retry=self._on_retry,
        )(self._post)

    def _on_retry(self, attempt, error, delay):
        self.logger.warning(
            f"Event delivery failed, retrying (attempt {attempt})",
            url=self.url,
            error=str(error),
            delay=delay,
        )

    def _post(self, event: AuditEvent) -> None:
        response = self.session.post(self.url, json=event.to_dict(), timeout=self.timeout)
        if should_retry_http_status(response.status_code):
            raise DeliveryError(f"Subscriber returned HTTP {response.status_code}")
        response.raise_for_status()

    def publish(self, event: AuditEvent) -> None:
        self.breaker.call(self._deliver, event)
        self.logger.debug("Published audit event", entry_id=event.entry_id, action=event.action)
