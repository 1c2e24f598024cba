"""
Per-queue locking for multi-worker deployments.

Every mutation of a queue's active token list runs inside `lock_manager.lock(...)`
keyed by queue id. With Redis available the lock is shared by all workers;
without it an in-process asyncio.Lock per queue is used instead.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from queueflow.core.cache import CacheService

logger = logging.getLogger(__name__)


def queue_resource(queue_id) -> str:
    return f"queue:{queue_id}"


class DistributedLockManager:
    """
    Manages distributed locks using Redis.
    Provides context manager interface for easy lock acquisition and release.
    Falls back to in-memory locks if Redis is unavailable.
    """

    DEFAULT_LOCK_TTL = 30

    DEFAULT_ACQUIRE_TIMEOUT = 10

    # Retry interval when waiting for a Redis lock (in seconds)
    RETRY_INTERVAL = 0.05

    def __init__(
        self,
        cache: Optional[CacheService] = None,
        ttl: int = DEFAULT_LOCK_TTL,
        timeout: float = DEFAULT_ACQUIRE_TIMEOUT,
    ):
        self._cache = cache
        self.ttl = ttl
        self.timeout = timeout
        self._fallback_locks: dict[str, asyncio.Lock] = {}
        self._fallback_locks_lock = asyncio.Lock()
        self._active_locks: dict[str, str] = {}  # resource -> lock_id mapping

    async def _get_cache(self) -> CacheService:
        if self._cache is None:
            from queueflow.core.cache import get_cache
            self._cache = await get_cache()
        return self._cache

    async def _get_fallback_lock(self, resource: str) -> asyncio.Lock:
        async with self._fallback_locks_lock:
            if resource not in self._fallback_locks:
                self._fallback_locks[resource] = asyncio.Lock()
            return self._fallback_locks[resource]

    async def _cleanup_fallback_lock(self, resource: str):
        """Remove a fallback lock when no longer needed. A lock someone holds is left in place."""
        async with self._fallback_locks_lock:
            lock = self._fallback_locks.get(resource)
            if lock is not None and not lock.locked():
                del self._fallback_locks[resource]

    async def acquire(
        self,
        resource: str,
        ttl: Optional[int] = None,
        timeout: Optional[float] = None,
        lock_id: Optional[str] = None
    ) -> tuple[bool, str]:
        """
        Acquire a lock for a resource.

        Args:
            resource: The resource identifier to lock (e.g., "queue:<uuid>")
            ttl: Lock time-to-live in seconds (Redis only)
            timeout: Maximum time to wait for lock acquisition
            lock_id: Optional custom lock ID (auto-generated if not provided)

        Returns:
            Tuple of (success: bool, lock_id: str)
        """
        ttl = ttl if ttl is not None else self.ttl
        timeout = timeout if timeout is not None else self.timeout
        if lock_id is None:
            lock_id = str(uuid.uuid4())

        cache = await self._get_cache()

        if cache.connected:
            loop = asyncio.get_running_loop()
            start_time = loop.time()

            while True:
                acquired = await cache.acquire_lock(resource, lock_id, ttl)

                if acquired:
                    self._active_locks[resource] = lock_id
                    logger.debug(f"Acquired distributed lock for {resource} with lock_id {lock_id[:8]}")
                    return True, lock_id

                elapsed = loop.time() - start_time
                if elapsed >= timeout:
                    logger.warning(f"Timeout waiting for distributed lock on {resource} after {elapsed:.2f}s")
                    return False, lock_id

                await asyncio.sleep(self.RETRY_INTERVAL)
        else:
            fallback_lock = await self._get_fallback_lock(resource)

            try:
                await asyncio.wait_for(fallback_lock.acquire(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Timeout waiting for fallback lock on {resource}")
                return False, lock_id

            self._active_locks[resource] = lock_id
            return True, lock_id

    async def release(self, resource: str, lock_id: str) -> bool:
        cache = await self._get_cache()

        if self._active_locks.get(resource) == lock_id:
            del self._active_locks[resource]

        if cache.connected:
            released = await cache.release_lock(resource, lock_id)
            if released:
                logger.debug(f"Released distributed lock for {resource}")
            else:
                logger.warning(f"Failed to release distributed lock for {resource} (may have expired)")
            return released

        async with self._fallback_locks_lock:
            lock = self._fallback_locks.get(resource)
            if lock is not None and lock.locked():
                lock.release()
                return True
        return False

    @asynccontextmanager
    async def lock(
        self,
        resource: str,
        ttl: Optional[int] = None,
        timeout: Optional[float] = None
    ):
        """
        Context manager for acquiring and releasing a lock.

        Usage:
            async with lock_manager.lock(queue_resource(queue_id)):
                # read-modify-write the queue

        Raises:
            asyncio.TimeoutError: If lock cannot be acquired within timeout
        """
        acquired, lock_id = await self.acquire(resource, ttl, timeout)

        if not acquired:
            raise asyncio.TimeoutError(f"Could not acquire lock for {resource}")

        try:
            yield lock_id
        finally:
            await self.release(resource, lock_id)

    async def cleanup(self, resource: str):
        """
        Drop lock bookkeeping for a resource that is gone.
        Call this after a queue is deleted so per-queue fallback locks do not pile up.
        """
        if resource in self._active_locks:
            await self.release(resource, self._active_locks[resource])

        await self._cleanup_fallback_lock(resource)
        logger.debug(f"Cleaned up lock resources for {resource}")

    def get_fallback_locks_count(self) -> int:
        return len(self._fallback_locks)

    def get_active_locks_count(self) -> int:
        return len(self._active_locks)
