"""
Distributed job lock on Redis.

    async with job_lock.hold("deauth:DeauthorizeInactiveUsersJob"):
        ...

Acquisition never waits: a held lock raises LockAcquisitionError right away.
While held, the TTL is refreshed in the background. If ownership is lost
(the key expired or was taken over) the protected block is cancelled and
LockLostError raised, so no work continues without the lock.
"""

import asyncio
import contextlib
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from typing import Protocol

from redis.asyncio.lock import Lock
from redis.exceptions import LockError, LockNotOwnedError

from deauth.config import settings
from deauth.infrastructure.observability.logging import get_logger
from deauth.services.infrastructure.redis_client import fast_redis

logger = get_logger(__name__)

LOCK_KEY_PREFIX = "job-lock:"


class LockAcquisitionError(Exception):
    """The lock is held by another run."""

    def __init__(self, lock_id: str):
        super().__init__(f"Lock {lock_id} is held by another run")
        self.lock_id = lock_id


class LockLostError(Exception):
    """The lock expired or was taken over while the protected block was running."""

    def __init__(self, lock_id: str):
        super().__init__(f"Lock {lock_id} was lost while running")
        self.lock_id = lock_id


class LockStore(Protocol):
    async def lock(self, name: str, timeout: float) -> Lock: ...


class RedisJobLock:
    def __init__(self, store: LockStore | None = None, ttl_seconds: int | None = None):
        self._store = store or fast_redis
        self.ttl_seconds = ttl_seconds or settings.DEAUTH_LOCK_TTL_SECONDS
        self.refresh_interval_s = self.ttl_seconds / 2

    @asynccontextmanager
    async def hold(self, lock_id: str) -> AsyncGenerator[None, None]:
        lock = await self._store.lock(f"{LOCK_KEY_PREFIX}{lock_id}", timeout=self.ttl_seconds)

        if not await lock.acquire(blocking=False):
            raise LockAcquisitionError(lock_id)

        logger.debug("Job lock acquired", lock_id=lock_id, ttl_seconds=self.ttl_seconds)
        owner = asyncio.current_task()
        lost = asyncio.Event()
        in_block = True

        def cancel_block() -> None:
            if in_block:
                lost.set()
                owner.cancel()

        keep_alive = asyncio.create_task(self._keep_alive(lock, lock_id, cancel_block))
        try:
            yield
        except asyncio.CancelledError:
            if not lost.is_set():
                raise
            owner.uncancel()
            raise LockLostError(lock_id) from None
        finally:
            in_block = False
            keep_alive.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await keep_alive
            await self._release(lock, lock_id)

        if lost.is_set():
            # The block swallowed the cancellation
            if owner.cancelling():
                owner.uncancel()
            raise LockLostError(lock_id)

    async def _release(self, lock: Lock, lock_id: str) -> None:
        # A failed release leaves the key to expire with its TTL
        try:
            await lock.release()
        except LockNotOwnedError:
            logger.warning("Job lock was no longer owned at release", lock_id=lock_id)
        except Exception as e:
            logger.warning(
                "Failed to release job lock", lock_id=lock_id, error=str(e), error_type=type(e).__name__
            )
        else:
            logger.debug("Job lock released", lock_id=lock_id)

    async def _keep_alive(self, lock: Lock, lock_id: str, on_lost: Callable[[], None]) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval_s)
            try:
                await lock.reacquire()
            except LockError:
                logger.error("Job lock lost while running, cancelling run", lock_id=lock_id)
                on_lost()
                return
            except Exception as e:
                logger.warning("Failed to refresh job lock", lock_id=lock_id, error=str(e))


job_lock = RedisJobLock()


def get_job_lock() -> RedisJobLock:
    return job_lock
