"""
Redis connection service.
Provides:
- Per-queue distributed locks (SET NX EX)
- Pub/sub publishing for queue events
- Simple get/set used by the health check
"""
import json
import logging
from typing import Any, Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class CacheService:
    """
    Redis-backed service for locks and event fan-out.
    Falls back gracefully if Redis is unavailable; callers check `connected`.
    """

    PREFIX_DISTRIBUTED_LOCK = "lock"
    PREFIX_QUEUE_EVENTS = "queue_events"

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url
        self._redis: Optional[redis.Redis] = None
        self._connected = False
        self._connection_attempted = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> bool:
        """
        Initialize Redis connection.
        Returns True if connected, False otherwise.
        """
        if self._connection_attempted:
            return self._connected

        self._connection_attempted = True
        if self.redis_url is None:
            from queueflow.core.config import settings
            self.redis_url = settings.REDIS_URL

        try:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5
            )
            await self._redis.ping()
            self._connected = True
            logger.info(f"Connected to Redis at {self.redis_url}")
            return True
        except Exception as e:
            logger.warning(f"Redis connection failed: {e}. Falling back to in-process locks and events.")
            self._connected = False
            self._redis = None
            return False

    async def close(self):
        if self._redis:
            await self._redis.aclose()
            self._connected = False

    def _make_key(self, prefix: str, *parts: str) -> str:
        return f"{prefix}:{':'.join(str(p) for p in parts)}"

    async def get(self, key: str) -> Optional[Any]:
        if not self._connected:
            return None

        try:
            value = await self._redis.get(key)
            if value:
                return json.loads(value)
            return None
        except Exception as e:
            logger.warning(f"Cache get failed for {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: int = 300) -> bool:
        if not self._connected:
            return False

        try:
            await self._redis.setex(key, ttl, json.dumps(value))
            return True
        except Exception as e:
            logger.warning(f"Cache set failed for {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        if not self._connected:
            return False

        try:
            await self._redis.delete(key)
            return True
        except Exception as e:
            logger.warning(f"Cache delete failed for {key}: {e}")
            return False

    # ==================== Distributed Locking ====================

    async def acquire_lock(
        self,
        resource: str,
        lock_id: str,
        ttl_seconds: int = 30
    ) -> bool:
        """
        Acquire a distributed lock for a resource.

        Args:
            resource: The resource to lock (e.g., "queue:<uuid>")
            lock_id: Unique identifier for this lock attempt
            ttl_seconds: Lock timeout to prevent deadlocks

        Returns:
            True if lock acquired, False otherwise

        Raises:
            redis.RedisError: when Redis is connected but the command fails.
            Unlike a cache miss, a lock that silently "succeeds" would let two
            writers into the same queue.
        """
        key = self._make_key(self.PREFIX_DISTRIBUTED_LOCK, resource)
        result = await self._redis.set(key, lock_id, nx=True, ex=ttl_seconds)
        return result is not None

    async def release_lock(self, resource: str, lock_id: str) -> bool:
        """
        Release a distributed lock, only if `lock_id` still owns it.
        """
        if not self._connected:
            return True

        try:
            key = self._make_key(self.PREFIX_DISTRIBUTED_LOCK, resource)
            lua_script = """
            if redis.call("get", KEYS[1]) == ARGV[1] then
                return redis.call("del", KEYS[1])
            else
                return 0
            end
            """
            result = await self._redis.eval(lua_script, 1, key, lock_id)
            return result == 1
        except Exception as e:
            logger.warning(f"Lock release failed for {resource}: {e}")
            return False

    # ==================== Pub/Sub ====================

    def queue_channel(self, queue_id) -> str:
        return self._make_key(self.PREFIX_QUEUE_EVENTS, str(queue_id))

    async def publish(self, channel: str, message: str) -> int:
        """
        Publish a message; returns the number of subscribers that received it.
        Errors propagate so the event dispatcher can log them.
        """
        return await self._redis.publish(channel, message)


# Global cache instance
_cache_instance: Optional[CacheService] = None


async def get_cache() -> CacheService:
    """Get the global cache instance, initializing if needed."""
    global _cache_instance
    if _cache_instance is None:
        _cache_instance = CacheService()
        await _cache_instance.connect()
    return _cache_instance


async def close_cache():
    global _cache_instance
    if _cache_instance:
        await _cache_instance.close()
        _cache_instance = None
