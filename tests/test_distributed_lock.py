"""
Tests for DistributedLockManager - per-queue locking with Redis and in-process fallback.
"""
import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from queueflow.core.distributed_lock import DistributedLockManager, queue_resource


def connected_cache(acquire_results):
    cache = MagicMock()
    cache.connected = True
    cache.acquire_lock = AsyncMock(side_effect=acquire_results)
    cache.release_lock = AsyncMock(return_value=True)
    return cache


def test_queue_resource():
    queue_id = uuid.uuid4()
    assert queue_resource(queue_id) == f"queue:{queue_id}"


class TestFallbackLocks:
    async def test_serializes_same_resource(self, lock_manager):
        order = []

        async def worker(name):
            async with lock_manager.lock("queue:a"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("one"), worker("two"))

        assert order in (
            ["one-in", "one-out", "two-in", "two-out"],
            ["two-in", "two-out", "one-in", "one-out"],
        )

    async def test_different_resources_do_not_block(self, lock_manager):
        async with lock_manager.lock("queue:a"):
            async with lock_manager.lock("queue:b", timeout=0.1):
                assert lock_manager.get_active_locks_count() == 2
        assert lock_manager.get_active_locks_count() == 0

    async def test_timeout(self, lock_manager):
        async with lock_manager.lock("queue:a"):
            with pytest.raises(asyncio.TimeoutError):
                async with lock_manager.lock("queue:a", timeout=0.05):
                    pass

    async def test_released_after_exception(self, lock_manager):
        with pytest.raises(ValueError):
            async with lock_manager.lock("queue:a"):
                raise ValueError("boom")

        async with lock_manager.lock("queue:a", timeout=0.1):
            pass


class TestRedisLocks:
    async def test_acquire_and_release(self):
        cache = connected_cache([True])
        manager = DistributedLockManager(cache=cache, ttl=7)

        async with manager.lock("queue:x") as lock_id:
            cache.acquire_lock.assert_awaited_once_with("queue:x", lock_id, 7)

        cache.release_lock.assert_awaited_once_with("queue:x", lock_id)

    async def test_retries_until_free(self):
        cache = connected_cache([False, False, True])
        manager = DistributedLockManager(cache=cache)
        manager.RETRY_INTERVAL = 0

        acquired, _ = await manager.acquire("queue:x", timeout=1)

        assert acquired is True
        assert cache.acquire_lock.await_count == 3

    async def test_gives_up_after_timeout(self):
        cache = MagicMock()
        cache.connected = True
        cache.acquire_lock = AsyncMock(return_value=False)
        manager = DistributedLockManager(cache=cache)
        manager.RETRY_INTERVAL = 0.01

        with pytest.raises(asyncio.TimeoutError):
            async with manager.lock("queue:x", timeout=0.05):
                pass

    async def test_redis_error_propagates(self):
        cache = connected_cache(RedisConnectionError("gone"))
        manager = DistributedLockManager(cache=cache)

        with pytest.raises(RedisConnectionError):
            await manager.acquire("queue:x")


class TestCleanup:
    async def test_drops_fallback_lock(self, lock_manager):
        async with lock_manager.lock("queue:a"):
            pass
        assert lock_manager.get_fallback_locks_count() == 1

        await lock_manager.cleanup("queue:a")

        assert lock_manager.get_fallback_locks_count() == 0

    async def test_releases_lock_still_held(self, lock_manager):
        acquired, _ = await lock_manager.acquire("queue:a")
        assert acquired

        await lock_manager.cleanup("queue:a")

        assert lock_manager.get_active_locks_count() == 0
        assert lock_manager.get_fallback_locks_count() == 0
        async with lock_manager.lock("queue:a", timeout=0.1):
            pass

    async def test_unknown_resource(self, lock_manager):
        await lock_manager.cleanup("queue:missing")
        assert lock_manager.get_fallback_locks_count() == 0
