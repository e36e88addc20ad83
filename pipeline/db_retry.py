"""
Retries for entity store queries that hit transient database conditions.

A status write that loses a lock race or lands on a recycled connection
should not cost the job a whole queue attempt (and a re-encode). Such errors
are retried here with capped, jittered exponential backoff; anything else
propagates on the first failure.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Iterator, Optional, TypeVar

from config import DB_RETRY_ATTEMPTS, DB_RETRY_BASE_DELAY, DB_RETRY_MAX_DELAY

logger = logging.getLogger(__name__)

T = TypeVar("T")

# deadlock, serialization failure, lock not available, admin shutdown,
# connection failure / does not exist
TRANSIENT_SQLSTATES = frozenset({"40P01", "40001", "55P03", "57P01", "08006", "08003"})

TRANSIENT_MESSAGES = (
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "deadlock detected",
    "could not serialize access",
    "could not obtain lock",
    "lock timeout",
    "connection refused",
    "connection reset",
    "connection is closed",
    "server closed the connection unexpectedly",
)


class DatabaseRetryExhaustedError(Exception):
    """A transient database error persisted through every attempt."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Database still unavailable after {attempts} attempts: {last_error}")


def _error_chain(exc: BaseException) -> Iterator[BaseException]:
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def is_transient_database_error(exc: BaseException) -> bool:
    """
    True if exc (or anything it wraps) is lock contention or a lost connection.

    The databases driver layer re-raises asyncpg/aiosqlite errors, so the
    whole cause chain is inspected. asyncpg exposes the SQLSTATE as
    ``sqlstate``, psycopg as ``pgcode``.
    """
    for error in _error_chain(exc):
        if isinstance(error, (ConnectionError, asyncio.TimeoutError)):
            return True
        code = getattr(error, "sqlstate", None) or getattr(error, "pgcode", None)
        if code in TRANSIENT_SQLSTATES:
            return True
        message = str(error).lower()
        if any(pattern in message for pattern in TRANSIENT_MESSAGES):
            return True
    return False


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (1-based): doubled per attempt, capped, +/-25% jitter."""
    delay = min(base_delay * 2 ** (attempt - 1), max_delay)
    return delay * random.uniform(0.75, 1.25)


async def execute_with_retry(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    attempts: int = DB_RETRY_ATTEMPTS,
    base_delay: float = DB_RETRY_BASE_DELAY,
    max_delay: float = DB_RETRY_MAX_DELAY,
    **kwargs: Any,
) -> T:
    """
    Await ``func(*args, **kwargs)``, retrying transient database errors.

    Args:
        func: Coroutine function issuing the query (or a whole transaction)
        attempts: Total tries including the first
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay, in seconds

    Raises:
        DatabaseRetryExhaustedError: The last of ``attempts`` tries still failed
            with a transient error
        Exception: Any non-transient error, unchanged
    """
    for attempt in range(1, attempts + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_transient_database_error(e):
                raise
            if attempt == attempts:
                logger.error(f"Database error persisted after {attempts} attempts: {e}")
                raise DatabaseRetryExhaustedError(attempts, e) from e
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(f"Transient database error (attempt {attempt}/{attempts}), retrying in {delay:.2f}s: {e}")
            await asyncio.sleep(delay)
    raise ValueError("attempts must be at least 1")
