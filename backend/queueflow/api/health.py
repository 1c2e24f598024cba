import logging
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text

from queueflow.db.database import get_db_session
from queueflow.core.cache import get_cache

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/")
async def root_health_check():
    return {"status": "ok"}


@router.get("/db")
async def db_health_check(session: AsyncSession = Depends(get_db_session)):
    try:
        await session.execute(text("SELECT 1"))
        return {"status": "ok", "database": "connected"}
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Database connection failed: {e}",
        )


@router.get("/redis")
async def redis_health_check():
    """Redis backs queue locks and event fan-out; both degrade to in-process when it is down."""
    try:
        cache = await get_cache()
        if cache.connected:
            test_key = "health_check_test"
            await cache.set(test_key, {"test": True}, ttl=10)
            result = await cache.get(test_key)
            await cache.delete(test_key)

            if result:
                return {"status": "ok", "redis": "connected"}
            return {"status": "degraded", "redis": "connected but read failed"}
        return {"status": "unavailable", "redis": "not connected"}
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Redis connection failed: {e}",
        )


@router.get("/services")
async def services_health_check(request: Request):
    """Queue locking and event dispatch status for this worker."""
    dispatcher = getattr(request.app.state, "event_dispatcher", None)
    lock_manager = getattr(request.app.state, "lock_manager", None)
    return {
        "status": "ok" if dispatcher is not None and dispatcher.running else "degraded",
        "event_dispatcher": {
            "running": bool(dispatcher and dispatcher.running),
            "publisher": type(dispatcher.publisher).__name__ if dispatcher else None,
        },
        "queue_locks": {
            "held": lock_manager.get_active_locks_count() if lock_manager else 0,
        },
    }
