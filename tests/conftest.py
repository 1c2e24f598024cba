import os

# Must be set before queueflow.core.config is imported
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("TESTING", "true")

import uuid
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from queueflow.core.cache import CacheService
from queueflow.core.distributed_lock import DistributedLockManager
from queueflow.core.security import create_access_token, get_password_hash
from queueflow.db.database import get_db_session
from queueflow.main import app
from queueflow.models.base import Base
from queueflow.models.user import User
from queueflow.schemas.queue import QueueCreate
from queueflow.schemas.token import CustomerInfo
from queueflow.services.email_notifier import EmailNotificationService
from queueflow.services.event_notifier import EventDispatcher, InMemoryEventPublisher
from queueflow.services.queue_registry import QueueRegistryService
from queueflow.services.token_engine import AuthorizationContext, TokenOrderingEngine

TEST_PASSWORD = "testpassword"


class FakeClock:
    """Deterministic replacement for datetime.utcnow."""

    def __init__(self, start: datetime = datetime(2024, 3, 4, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0):
        self.now += timedelta(minutes=minutes, seconds=seconds)


@pytest.fixture(scope="function")
async def test_db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_db_engine):
    return sessionmaker(
        test_db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def offline_cache():
    # Never connected, so locks fall back to in-process asyncio locks
    return CacheService(redis_url="redis://localhost:1/0")


@pytest.fixture
def lock_manager(offline_cache):
    return DistributedLockManager(cache=offline_cache, ttl=5, timeout=2)


@pytest.fixture
def event_publisher():
    return InMemoryEventPublisher()


@pytest.fixture
async def dispatcher(event_publisher):
    dispatcher = EventDispatcher(event_publisher)
    await dispatcher.start()
    yield dispatcher
    await dispatcher.stop()


@pytest.fixture
def email_service():
    service = MagicMock(spec=EmailNotificationService)
    service.send_welcome_email = AsyncMock(return_value=True)
    service.send_queue_message = AsyncMock(return_value=True)
    # Close the coroutine instead of scheduling it so no task outlives the test
    service.fire_and_forget = MagicMock(side_effect=lambda send, description: send.close())
    return service


@pytest.fixture
def registry(session_factory, lock_manager, clock):
    return QueueRegistryService(session_factory=session_factory, lock_manager=lock_manager, clock=clock)


@pytest.fixture
def token_engine(session_factory, lock_manager, dispatcher, email_service, clock):
    return TokenOrderingEngine(
        session_factory=session_factory,
        lock_manager=lock_manager,
        dispatcher=dispatcher,
        email_service=email_service,
        clock=clock,
        minutes_per_token=5,
    )


async def _create_user(session_factory, username: str, email: str) -> User:
    async with session_factory() as session:
        user = User(
            id=uuid.uuid4(),
            username=username,
            email=email,
            full_name=username.title(),
            hashed_password=get_password_hash(TEST_PASSWORD),
            is_active=True,
        )
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user


@pytest.fixture
async def test_user(session_factory):
    return await _create_user(session_factory, "manager", "manager@example.com")


@pytest.fixture
async def other_user(session_factory):
    return await _create_user(session_factory, "othermanager", "other@example.com")


@pytest.fixture
def queue_factory(registry, test_user):
    async def _factory(name: str = "Bank", max_capacity=None, owner: User = None, description=None):
        owner = owner or test_user
        return await registry.create_queue(
            owner.id, QueueCreate(name=name, description=description, max_capacity=max_capacity)
        )
    return _factory


def make_customer(i: int, email: bool = True) -> CustomerInfo:
    return CustomerInfo(
        name=f"Customer {i}",
        email=f"customer{i}@example.com" if email else None,
    )


@pytest.fixture
def enqueue_many(token_engine, test_user):
    async def _enqueue(queue, count: int, owner: User = None):
        ctx = AuthorizationContext.owner((owner or test_user).id)
        return [await token_engine.enqueue(ctx, queue.id, make_customer(i + 1)) for i in range(count)]
    return _enqueue


@pytest.fixture(scope="function")
async def client(session_factory, registry, token_engine, lock_manager, dispatcher):
    async def _get_test_db_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db_session] = _get_test_db_session
    app.state.queue_registry = registry
    app.state.token_engine = token_engine
    app.state.lock_manager = lock_manager
    app.state.event_dispatcher = dispatcher

    # Disable rate limiter for tests
    app.state.limiter.enabled = False

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.state.limiter.enabled = True
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def authorized_client(client, test_user):
    access_token, _, _ = create_access_token(data={"sub": test_user.username})
    client.headers["Authorization"] = f"Bearer {access_token}"
    return client
