import asyncio

import pytest

from deauth.services.infrastructure.job_lock import (
    LOCK_KEY_PREFIX,
    LockAcquisitionError,
    LockLostError,
    RedisJobLock,
)


@pytest.mark.asyncio
async def test_hold_acquires_and_releases(fake_lock_store):
    lock = RedisJobLock(store=fake_lock_store, ttl_seconds=30)

    async with lock.hold("job-a"):
        assert f"{LOCK_KEY_PREFIX}job-a" in fake_lock_store.store

    assert fake_lock_store.store == {}


@pytest.mark.asyncio
async def test_second_holder_fails_fast(fake_lock_store):
    lock = RedisJobLock(store=fake_lock_store, ttl_seconds=30)

    async with lock.hold("job-a"):
        with pytest.raises(LockAcquisitionError) as exc:
            async with lock.hold("job-a"):
                pass
        assert exc.value.lock_id == "job-a"

        async with lock.hold("job-b"):
            pass


@pytest.mark.asyncio
async def test_released_when_block_raises(fake_lock_store):
    lock = RedisJobLock(store=fake_lock_store, ttl_seconds=30)

    with pytest.raises(RuntimeError):
        async with lock.hold("job-a"):
            raise RuntimeError("run failed")

    assert fake_lock_store.store == {}


@pytest.mark.asyncio
async def test_release_failure_does_not_replace_result(fake_lock_store):
    fake_lock_store.release_error = ConnectionError("redis gone")
    lock = RedisJobLock(store=fake_lock_store, ttl_seconds=30)
    completed = False

    async with lock.hold("job-a"):
        completed = True

    assert completed is True
    # Left for the TTL to expire
    assert f"{LOCK_KEY_PREFIX}job-a" in fake_lock_store.store


@pytest.mark.asyncio
async def test_release_failure_keeps_block_error(fake_lock_store):
    fake_lock_store.release_error = ConnectionError("redis gone")
    lock = RedisJobLock(store=fake_lock_store, ttl_seconds=30)

    with pytest.raises(RuntimeError, match="run failed"):
        async with lock.hold("job-a"):
            raise RuntimeError("run failed")


@pytest.mark.asyncio
async def test_release_does_not_remove_foreign_token(fake_lock_store):
    lock = RedisJobLock(store=fake_lock_store, ttl_seconds=30)

    async with lock.hold("job-a"):
        fake_lock_store.store[f"{LOCK_KEY_PREFIX}job-a"] = "someone-else"

    assert fake_lock_store.store == {f"{LOCK_KEY_PREFIX}job-a": "someone-else"}


@pytest.mark.asyncio
async def test_keep_alive_refreshes_while_held(fake_lock_store):
    lock = RedisJobLock(store=fake_lock_store, ttl_seconds=30)
    lock.refresh_interval_s = 0.01

    async with lock.hold("job-a"):
        await asyncio.sleep(0.05)

    assert fake_lock_store.reacquired > 0
    assert fake_lock_store.store == {}


@pytest.mark.asyncio
async def test_lost_lock_cancels_running_block(fake_lock_store):
    lock = RedisJobLock(store=fake_lock_store, ttl_seconds=30)
    lock.refresh_interval_s = 0.01
    steps = []

    with pytest.raises(LockLostError) as exc:
        async with lock.hold("job-a"):
            # Key expired and another run took it over
            fake_lock_store.store[f"{LOCK_KEY_PREFIX}job-a"] = "other-run"
            steps.append("started")
            await asyncio.sleep(5)
            steps.append("finished")

    assert exc.value.lock_id == "job-a"
    assert steps == ["started"]
    assert fake_lock_store.store == {f"{LOCK_KEY_PREFIX}job-a": "other-run"}
    assert asyncio.current_task().cancelling() == 0


@pytest.mark.asyncio
async def test_outside_cancellation_is_not_reported_as_lost(fake_lock_store):
    lock = RedisJobLock(store=fake_lock_store, ttl_seconds=30)

    async def run():
        async with lock.hold("job-a"):
            await asyncio.sleep(5)

    task = asyncio.create_task(run())
    await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert fake_lock_store.store == {}
