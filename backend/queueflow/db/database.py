from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from queueflow.core.config import settings


def _engine_options(database_url: str) -> dict:
    # SQLite (tests, local runs) uses a static/singleton pool that rejects sizing arguments
    if database_url.startswith("sqlite"):
        return {"echo": False}
    return {
        "pool_size": 20,
        "max_overflow": 10,
        "pool_timeout": 30,       # Wait up to 30s for a connection
        "pool_recycle": 1800,     # Recycle connections every 30 minutes
        "pool_pre_ping": True,    # Test connections before using them
        "echo": False,
    }


# DATABASE_URL is already validated in settings
engine = create_async_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

AsyncSessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
