"""
Error taxonomy for identity resolution.

Every error raised by the resolution pipeline, the identity graph store or
the audit logger derives from IdentityError so callers can catch the family
in one place.
"""

from typing import List, Optional


class IdentityError(Exception):
    """Base class for all identity resolution errors."""
    pass


class ValidationError(IdentityError):
    """Raised when a record, metadata blob or setting is malformed."""

    def __init__(self, messages, record: Optional[dict] = None):
        if isinstance(messages, str):
            messages = [messages]
        self.messages: List[str] = list(messages)
        self.record = record
        super().__init__("; ".join(self.messages))


class NotFoundError(IdentityError):
    """Raised when an identity, mapping, pending match or audit entry is missing."""
    pass


class ConcurrencyConflict(IdentityError):
    """Raised when a concurrent mutation touched the same identity rows."""
    pass


class AuditWriteFailure(IdentityError):
    """Raised internally when an audit entry cannot be persisted.

    Never propagated past the audit logger.
    """
    pass


class RollbackError(IdentityError):
    """Raised when an audit entry cannot be rolled back."""
    pass
