from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
import os
import logging
import sys

from queueflow.api import health, queues, tokens, users
from queueflow.rate_limiter import limiter
from queueflow.db.database import AsyncSessionLocal, engine
from queueflow.core.cache import get_cache, close_cache
from queueflow.core.correlation import CorrelationIdMiddleware
from queueflow.core.distributed_lock import DistributedLockManager
from queueflow.core.logging_config import setup_logging
from queueflow.core.config import settings
from queueflow.exceptions import APIError
from queueflow.models.base import Base
from queueflow.services.email_notifier import EmailNotificationService
from queueflow.services.event_notifier import EventDispatcher, InMemoryEventPublisher, RedisEventPublisher
from queueflow.services.queue_registry import QueueRegistryService
from queueflow.services.token_engine import TokenOrderingEngine

logger = logging.getLogger(__name__)

if settings.ENVIRONMENT == "production":
    if "http://localhost:3000" in settings.CORS_ORIGINS and len(settings.CORS_ORIGINS) == 1:
        logger.error("Production environment detected but CORS_ORIGINS only allows localhost.")
        sys.exit(1)

app = FastAPI(title="queueflow")
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)

if os.getenv("TESTING") != "true":
    app.add_middleware(SlowAPIMiddleware)


@app.on_event("startup")
async def startup_event():
    setup_logging()

    logger.info(f"Starting up in {settings.ENVIRONMENT} mode")
    logger.info(f"CORS Allowed Origins: {settings.CORS_ORIGINS}")

    # Local SQLite runs have no migration step; PostgreSQL is built with `alembic upgrade head`
    if settings.DATABASE_URL.startswith("sqlite"):
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    cache = await get_cache()
    app.state.lock_manager = DistributedLockManager(
        cache=cache,
        ttl=settings.QUEUE_LOCK_TTL_SECONDS,
        timeout=settings.QUEUE_LOCK_TIMEOUT_SECONDS,
    )

    publisher = RedisEventPublisher(cache) if cache.connected else InMemoryEventPublisher()
    app.state.event_dispatcher = EventDispatcher(publisher)
    await app.state.event_dispatcher.start()

    app.state.email_service = EmailNotificationService(
        api_url=settings.EMAIL_API_URL,
        api_key=settings.EMAIL_API_KEY,
        sender=settings.EMAIL_FROM,
    )
    if app.state.email_service.simulation_mode:
        logger.warning("EMAIL_API_URL not set; customer emails will only be logged")

    app.state.queue_registry = QueueRegistryService(
        session_factory=AsyncSessionLocal,
        lock_manager=app.state.lock_manager,
    )
    app.state.token_engine = TokenOrderingEngine(
        session_factory=AsyncSessionLocal,
        lock_manager=app.state.lock_manager,
        dispatcher=app.state.event_dispatcher,
        email_service=app.state.email_service,
        minutes_per_token=settings.ESTIMATED_MINUTES_PER_TOKEN,
    )


@app.on_event("shutdown")
async def shutdown_event():
    if hasattr(app.state, "event_dispatcher"):
        await app.state.event_dispatcher.stop()
    if hasattr(app.state, "email_service"):
        await app.state.email_service.wait_for_pending()
    await close_cache()


app.include_router(health.router, prefix="/api/v1/health", tags=["Health Check"])
app.include_router(users.router, prefix="/api/v1/users", tags=["Users"])
app.include_router(queues.router, prefix="/api/v1/queues", tags=["Queues"])
app.include_router(tokens.router, prefix="/api/v1/tokens", tags=["Tokens"])
