"""
Reliability Utilities.

Includes the transactional retry runner used by the settlement engine
and the Circuit Breaker used around external notification sinks.
"""

import time
import asyncio
import logging
from typing import Awaitable, Callable, Any, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.config import settings
from backend.app.core.exceptions import (
    SettlementError,
    ConcurrentModificationError,
    StorageUnavailableError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# PostgreSQL serialization_failure / deadlock_detected
RETRYABLE_SQLSTATES = {"40001", "40P01"}


def classify_storage_error(exc: BaseException) -> SettlementError:
    """
    Translate a storage-layer exception into a transient settlement error.

    Unique violations mean another transaction got there first (same
    idempotency key, same wallet row, same delivery item); re-running the
    whole unit observes the winner's row, so they are treated as
    concurrent modifications.
    """
    if isinstance(exc, IntegrityError):
        return ConcurrentModificationError("Conflicting write detected, please retry")

    if isinstance(exc, DBAPIError):
        orig = getattr(exc, "orig", None)
        sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        if sqlstate in RETRYABLE_SQLSTATES:
            return ConcurrentModificationError("Transaction serialization conflict, please retry")
        if exc.connection_invalidated or isinstance(exc, OperationalError):
            return StorageUnavailableError()

    return StorageUnavailableError()


async def run_atomic(
    session_factory: async_sessionmaker,
    work: Callable[[AsyncSession], Awaitable[T]],
    attempts: Optional[int] = None,
    backoff_seconds: Optional[float] = None,
    label: str = "atomic",
) -> T:
    """
    Run `work` inside a single database transaction, retrying transient failures.

    Each attempt gets a fresh session and transaction; any exception rolls the
    attempt back completely. Business errors (non-transient SettlementError)
    propagate immediately. Transient errors are retried up to `attempts` times
    with exponential backoff, then raised as a SettlementError. Storage
    exceptions never escape untranslated.
    """
    attempts = attempts or settings.storage_retry_attempts
    delay = settings.storage_retry_backoff_seconds if backoff_seconds is None else backoff_seconds

    for attempt in range(1, attempts + 1):
        try:
            async with session_factory() as db:
                async with db.begin():
                    return await work(db)
        except SettlementError as exc:
            if not exc.transient:
                raise
            error = exc
        except DBAPIError as exc:
            error = classify_storage_error(exc)
        except (OSError, asyncio.TimeoutError) as exc:
            error = StorageUnavailableError(f"Storage connection failed: {type(exc).__name__}")

        if attempt == attempts:
            logger.error("%s failed after %d attempts: %s", label, attempts, error.message)
            raise error

        logger.warning(
            "%s attempt %d/%d hit transient error %s, retrying",
            label, attempt, attempts, error.kind.value,
        )
        await asyncio.sleep(delay * (2 ** (attempt - 1)))

    raise StorageUnavailableError()  # pragma: no cover


class CircuitOpenError(Exception):
    pass


class CircuitBreaker:
    """
    Simple Circuit Breaker implementation.
    If 'failure_threshold' failures occur within 'reset_timeout',
    the circuit opens and rejects calls for 'reset_timeout' seconds.
    """
    def __init__(self, failure_threshold: int = 5, reset_timeout: int = 60):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.failures = 0
        self.last_failure_time = 0
        self.state = "CLOSED" # CLOSED, OPEN, HALF_OPEN

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        if self.state == "OPEN":
            if time.time() - self.last_failure_time > self.reset_timeout:
                self.state = "HALF_OPEN"
            else:
                raise CircuitOpenError("Circuit is OPEN")

        try:
            result = await func(*args, **kwargs)
            if self.state == "HALF_OPEN":
                self.reset_state()
            return result
        except Exception:
            self.record_failure()
            raise

    def record_failure(self):
        self.failures += 1
        self.last_failure_time = time.time()
        if self.failures >= self.failure_threshold:
            self.state = "OPEN"

    def reset_state(self):
        self.failures = 0
        self.state = "CLOSED"


# Global instance for the outbound notification sink
notification_circuit_breaker = CircuitBreaker(failure_threshold=5, reset_timeout=30)
