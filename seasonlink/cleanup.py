"""
Cleanup module for expiring stale review-queue items.

Pending matches older than their retention window (default: 7 days) are
dropped. Expiry is soft: the next resolution run recomputes any pair that
still qualifies.
"""

from datetime import datetime
from typing import Optional, Tuple

from .logger import get_logger


def cleanup_expired_matches(store, now: Optional[datetime] = None) -> Tuple[int, int]:
    """
    Remove pending matches whose expiry has passed.

    Args:
        store: PendingMatchStore to clean
        now: Reference time (default: current time)

    Returns:
        Tuple of (matches_before, matches_after)
        Difference = matches_removed
    """
    logger = get_logger()
    now = now or datetime.now()

    try:
        matches_before = store.count()
        removed = store.expire(now=now)
        matches_after = store.count()

        logger.info(
            f"Cleanup complete: {removed} removed, {matches_after} remaining",
            matches_before=matches_before,
            matches_removed=removed,
            matches_after=matches_after,
            cutoff=now.isoformat(),
        )
        return (matches_before, matches_after)

    except Exception as e:
        logger.error(f"Cleanup failed: {e}", error=str(e))
        return (0, 0)
