"""
Retry and circuit breaking for identity graph writes and event delivery.

Graph writes that lose an optimistic version check, or hit a locked SQLite
file, are retried with exponential backoff. Event subscribers that keep
failing are cut off by a circuit breaker until they recover.
"""

import functools
import threading
import time
from typing import Callable, Iterator, Optional, Tuple, Type

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

TRANSIENT_STORAGE_MESSAGES = (
    "database is locked",
    "database table is locked",
    "deadlock",
    "could not serialize",
    "lock timeout",
    "timeout",
    "connection reset",
    "server closed the connection",
)


class RetryError(Exception):
    """Raised when every attempt failed with a retryable exception."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class CircuitOpenError(Exception):
    """Raised instead of calling a subscriber while its circuit is open."""
    pass


def backoff_delays(
    base_delay: float, max_delay: float, exponential_base: float, retries: int
) -> Iterator[float]:
    """Sleep durations between attempts, each capped at max_delay."""
    delay = base_delay
    for _ in range(retries):
        yield min(delay, max_delay)
        delay *= exponential_base


def exponential_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable] = None,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Decorator retrying a function while it raises one of `exceptions`.

    Args:
        max_retries: Retries after the first attempt (0 = single attempt)
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay
        exponential_base: Delay multiplier between retries
        exceptions: Exception types that trigger a retry; anything else
            propagates immediately
        on_retry: Optional callback(attempt, exception, delay)
        sleep: Sleep function, replaceable in tests

    Raises:
        RetryError: Every attempt failed; chained to the last exception

    Example:
        @exponential_backoff(max_retries=3, base_delay=0.05,
                             exceptions=(ConcurrencyConflict,))
        def merge_once(primary_id, secondary_id):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            delays = backoff_delays(base_delay, max_delay, exponential_base, max_retries)
            attempt = 0
            while True:
                attempt += 1
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    delay = next(delays, None)
                    if delay is None:
                        raise RetryError(
                            f"Failed after {attempt} attempts: {e}", attempts=attempt
                        ) from e
                    if on_retry:
                        on_retry(attempt, e, delay)
                    sleep(delay)

        return wrapper
    return decorator


class CircuitBreaker:
    """
    Stops calling a subscriber after `failure_threshold` consecutive failures.

    States:
    - CLOSED: calls pass through
    - OPEN: calls fail fast with CircuitOpenError
    - HALF_OPEN: after `recovery_timeout` seconds one trial call is let
      through; success closes the circuit, failure opens it again

    Safe to share between worker threads.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        expected_exception: Type[Exception] = Exception,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self._clock = clock
        self._lock = threading.Lock()

        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self.state = self.CLOSED

    def call(self, func: Callable, *args, **kwargs):
        """
        Run func unless the circuit is open.

        Raises:
            CircuitOpenError: The circuit is open and not yet due for a trial
            Original exception: func failed (counted towards opening)
        """
        self._admit()
        try:
            result = func(*args, **kwargs)
        except self.expected_exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    def _admit(self) -> None:
        with self._lock:
            if self.state != self.OPEN:
                return
            remaining = self.recovery_timeout - (self._clock() - self.opened_at)
            if remaining > 0:
                raise CircuitOpenError(
                    f"Circuit breaker is OPEN. Subscriber unavailable. "
                    f"Retry after {remaining:.0f}s"
                )
            self.state = self.HALF_OPEN

    def _record_success(self) -> None:
        with self._lock:
            self.failure_count = 0
            self.opened_at = None
            self.state = self.CLOSED

    def _record_failure(self) -> None:
        with self._lock:
            self.failure_count += 1
            if self.state == self.HALF_OPEN or self.failure_count >= self.failure_threshold:
                self.state = self.OPEN
                self.opened_at = self._clock()

    def reset(self) -> None:
        self._record_success()


def is_transient_error(exception: Exception) -> bool:
    """True when a storage error looks like lock contention or a dropped connection."""
    # SQLAlchemy wraps the driver error in .orig
    message = str(getattr(exception, "orig", None) or exception).lower()
    return any(marker in message for marker in TRANSIENT_STORAGE_MESSAGES)


def should_retry_http_status(status_code: int) -> bool:
    """True for subscriber responses worth retrying (timeouts, rate limits, 5xx gateways)."""
    return status_code in RETRYABLE_STATUS_CODES
