"""
Retrying transactional executor.

Runs a unit of work inside a database transaction and re-runs it from scratch
when the attempt fails with a transient conflict. Each attempt gets a fresh
Transaction carrying its own resources and after-commit hooks, so state bound
by a failed attempt is discarded together with its rollback.

Usage:
    async def work(txn: Transaction) -> int:
        return await fetch_val("SELECT count(*) FROM people")

    count = await executor.run_in_transaction(work, read_only=True)
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from contextvars import ContextVar
from typing import Any, TypeVar

import psycopg
from psycopg import errors as pg_errors

from deauth.config import settings
from deauth.db.pool import db_pool
from deauth.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_RETRYABLE_PG_ERRORS = (
    pg_errors.SerializationFailure,
    pg_errors.DeadlockDetected,
    pg_errors.LockNotAvailable,
    psycopg.OperationalError,
)


class TransientCollaboratorFailure(Exception):
    """A conflicting concurrent update; the transaction attempt may be retried."""

    def __init__(self, message: str, username: str | None = None):
        super().__init__(message)
        self.username = username


class Transaction:
    """A single physical transaction attempt."""

    def __init__(self, connection: Any, read_only: bool, attempt: int):
        self.connection = connection
        self.read_only = read_only
        self.attempt = attempt
        self._resources: dict[Any, Any] = {}
        self._after_commit: list[Callable[[], None]] = []

    def get_resource(self, key: Any, default: Any = None) -> Any:
        return self._resources.get(key, default)

    def bind_resource(self, key: Any, value: Any) -> None:
        self._resources[key] = value

    def after_commit(self, callback: Callable[[], None]) -> None:
        """Register a callback that runs only once this attempt has committed."""
        self._after_commit.append(callback)

    def _fire_after_commit(self) -> None:
        for callback in self._after_commit:
            callback()
        self._after_commit.clear()


_current_transaction: ContextVar[Transaction | None] = ContextVar(
    "deauth_current_transaction", default=None
)


def current_transaction(required: bool = True) -> Transaction | None:
    """Return the transaction bound to the running task."""
    txn = _current_transaction.get()
    if txn is None and required:
        raise RuntimeError("No active transaction - wrap the call in run_in_transaction()")
    return txn


def is_retryable(error: BaseException) -> bool:
    """Check the error and its cause chain for a transient failure."""
    seen = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        if isinstance(current, (TransientCollaboratorFailure, *_RETRYABLE_PG_ERRORS)):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


class RetryingTransactionExecutor:
    """
    Executes work in transactions, retrying transient failures.

    Wait between attempts grows by retry_wait_increment_ms from
    min_retry_wait_ms up to max_retry_wait_ms, with random jitter below it.
    """

    def __init__(
        self,
        pool: Any,
        max_retries: int = 20,
        min_retry_wait_ms: int = 100,
        max_retry_wait_ms: int = 2000,
        retry_wait_increment_ms: int = 100,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        self._pool = pool
        self.max_retries = max_retries
        self.min_retry_wait_ms = min_retry_wait_ms
        self.max_retry_wait_ms = max_retry_wait_ms
        self.retry_wait_increment_ms = retry_wait_increment_ms

    async def run_in_transaction(
        self,
        work: Callable[[Transaction], Awaitable[T]],
        read_only: bool = False,
        requires_new: bool = True,
    ) -> T:
        """
        Run work inside a transaction.

        Args:
            work: Coroutine function receiving the Transaction of the attempt
            read_only: Open the transaction READ ONLY
            requires_new: When False and a transaction is already active,
                join it instead of starting a new one (no retries)

        Returns:
            Whatever work returns from the committed attempt
        """
        existing = _current_transaction.get()
        if existing is not None and not requires_new:
            return await work(existing)

        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._run_attempt(work, read_only, attempt)
            except Exception as e:
                if not is_retryable(e) or attempt > self.max_retries:
                    raise

                wait_ms = self._retry_wait_ms(attempt)
                logger.debug(
                    "Transaction attempt failed, retrying",
                    attempt=attempt,
                    max_retries=self.max_retries,
                    wait_ms=wait_ms,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if wait_ms > 0:
                    await asyncio.sleep(wait_ms / 1000)

    async def _run_attempt(
        self, work: Callable[[Transaction], Awaitable[T]], read_only: bool, attempt: int
    ) -> T:
        async with self._pool.connection() as conn:
            txn = Transaction(conn, read_only=read_only, attempt=attempt)
            token = _current_transaction.set(txn)
            try:
                async with conn.transaction():
                    if read_only:
                        await conn.execute("SET TRANSACTION READ ONLY")
                    result = await work(txn)
            finally:
                _current_transaction.reset(token)

        txn._fire_after_commit()
        return result

    def _retry_wait_ms(self, attempt: int) -> int:
        interval = self.min_retry_wait_ms + self.retry_wait_increment_ms * (attempt - 1)
        interval = min(interval, self.max_retry_wait_ms)
        if interval <= 0:
            return 0
        return random.randint(self.min_retry_wait_ms, max(self.min_retry_wait_ms, interval))


def create_transaction_executor(pool: Any = None) -> RetryingTransactionExecutor:
    """Build an executor over the global pool with the configured retry policy."""
    return RetryingTransactionExecutor(pool or db_pool, **settings.get_transaction_retry_config())
