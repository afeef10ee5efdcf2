"""
modqueue Retry — bounded, jittered re-execution of store transactions.

Each leasing/aggregation operation is a whole transaction function; when the
store reports a conflict the function is simply run again from the top.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from sqlalchemy.exc import OperationalError

from modqueue.engine.errors import StoreUnavailableError, TransactionConflictError

logger = logging.getLogger("modqueue.engine.retry")

T = TypeVar("T")

# OperationalError covers "database is locked", deadlocks and serialization failures,
# but also refused connections; is_contention() tells the two apart.
RETRYABLE_ERRORS: Tuple[Type[BaseException], ...] = (TransactionConflictError, OperationalError)

# serialization_failure, deadlock_detected, lock_not_available
CONTENTION_SQLSTATES = frozenset({"40001", "40P01", "55P03"})
CONTENTION_MARKERS = ("locked", "deadlock", "could not serialize", "could not obtain lock", "busy")


def is_contention(exc: BaseException) -> bool:
    """True when ``exc`` comes from concurrent writers rather than a broken store."""
    if isinstance(exc, TransactionConflictError):
        return True
    if not isinstance(exc, OperationalError):
        return False
    orig = exc.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in CONTENTION_SQLSTATES:
        return True
    message = str(orig if orig is not None else exc).lower()
    return any(marker in message for marker in CONTENTION_MARKERS)


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Full-jitter exponential backoff for the given 1-based attempt."""
    ceiling = min(max_delay, base_delay * (2 ** (attempt - 1)))
    return random.uniform(0, ceiling)


def run_with_retry(
    operation: Callable[[], T],
    *,
    attempts: int = 5,
    base_delay: float = 0.05,
    max_delay: float = 1.0,
    retry_on: Tuple[Type[BaseException], ...] = RETRYABLE_ERRORS,
    sleep: Callable[[float], None] = time.sleep,
    name: Optional[str] = None,
) -> T:
    """
    Run ``operation`` until it succeeds or the attempt budget is spent.

    Args:
        operation: Zero-arg callable that opens, runs and commits one transaction.
        attempts: Maximum number of executions (>= 1).
        base_delay: Backoff ceiling for the first retry, in seconds.
        max_delay: Upper bound on any single backoff, in seconds.
        retry_on: Exception types treated as transient conflicts.
        sleep: Injected for tests.
        name: Operation label used in log lines.

    Raises:
        TransactionConflictError: Every attempt hit write contention.
        StoreUnavailableError: The last failure was not contention (e.g. the
            database could not be reached).
        Any non-retryable exception raised by ``operation``, unchanged.
    """
    label = name or getattr(operation, "__name__", "operation")
    attempts = max(1, attempts)

    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except retry_on as exc:
            if attempt >= attempts:
                logger.warning(f"{label}: giving up after {attempt} attempts: {exc}")
                if not is_contention(exc):
                    raise StoreUnavailableError(
                        f"{label} failed after {attempt} attempts: store unavailable",
                        attempts=attempt,
                        operation=label,
                    ) from exc
                raise TransactionConflictError(
                    f"{label} failed after {attempt} attempts due to concurrent writes",
                    attempts=attempt,
                    operation=label,
                ) from exc
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.debug(f"{label}: conflict on attempt {attempt}, retrying in {delay:.3f}s")
            sleep(delay)

    raise AssertionError("unreachable")
