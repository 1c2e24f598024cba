import os
from typing import List, Optional
from pydantic import BaseModel, Field

class Settings(BaseModel):
    DATABASE_URL: str
    SECRET_KEY: str
    CORS_ORIGINS: List[str]
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    LOG_FILE_PATH: str = "logs/app.log"
    REDIS_URL: str = "redis://redis:6379/0"

    # Flat wait estimate per token ahead in the queue
    ESTIMATED_MINUTES_PER_TOKEN: int = Field(default=5, ge=0)

    QUEUE_LOCK_TIMEOUT_SECONDS: float = 10.0
    QUEUE_LOCK_TTL_SECONDS: int = 30

    EMAIL_API_URL: Optional[str] = None
    EMAIL_API_KEY: Optional[str] = None
    EMAIL_FROM: str = "no-reply@queueflow.local"

    @classmethod
    def load_from_env(cls):
        database_url = os.getenv("DATABASE_URL")
        secret_key = os.getenv("SECRET_KEY")
        environment = os.getenv("ENVIRONMENT", "development")
        log_level = os.getenv("LOG_LEVEL", "INFO")
        log_file_path = os.getenv("LOG_FILE_PATH", "logs/app.log")
        redis_url = os.getenv("REDIS_URL", "redis://redis:6379/0")

        cors_origins_str = os.getenv("CORS_ORIGINS", "http://localhost:3000")
        cors_origins = [origin.strip() for origin in cors_origins_str.split(",")]

        # Validate required fields
        missing = []
        if not database_url:
            missing.append("DATABASE_URL")
        if not secret_key:
            missing.append("SECRET_KEY")

        if missing:
            raise ValueError(f"Missing required environment variables: {', '.join(missing)}")

        return cls(
            DATABASE_URL=database_url,
            SECRET_KEY=secret_key,
            CORS_ORIGINS=cors_origins,
            ENVIRONMENT=environment,
            LOG_LEVEL=log_level,
            LOG_FILE_PATH=log_file_path,
            REDIS_URL=redis_url,
            ESTIMATED_MINUTES_PER_TOKEN=int(os.getenv("ESTIMATED_MINUTES_PER_TOKEN", "5")),
            QUEUE_LOCK_TIMEOUT_SECONDS=float(os.getenv("QUEUE_LOCK_TIMEOUT_SECONDS", "10")),
            QUEUE_LOCK_TTL_SECONDS=int(os.getenv("QUEUE_LOCK_TTL_SECONDS", "30")),
            EMAIL_API_URL=os.getenv("EMAIL_API_URL") or None,
            EMAIL_API_KEY=os.getenv("EMAIL_API_KEY") or None,
            EMAIL_FROM=os.getenv("EMAIL_FROM", "no-reply@queueflow.local"),
        )

# Load settings immediately. This ensures fail-fast behavior at startup/import time.
# Tests must run with TEST_MODE=true (or under pytest) to get the in-memory fallback.
_is_test_mode = os.getenv("TEST_MODE", "").lower() == "true" or os.getenv("PYTEST_CURRENT_TEST") is not None

try:
    settings = Settings.load_from_env()
except ValueError as e:
    if _is_test_mode:
        import secrets
        _test_secret = os.getenv("TEST_SECRET_KEY") or secrets.token_urlsafe(32)

        settings = Settings(
            DATABASE_URL=os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:"),
            SECRET_KEY=_test_secret,
            CORS_ORIGINS=["http://localhost:3000"],
            ENVIRONMENT="test",
            REDIS_URL=os.getenv("TEST_REDIS_URL", "redis://localhost:6379/15"),
        )
    else:
        # Production/Development: fail fast with clear error
        print(f"CRITICAL: Configuration Error: {e}")
        print("Please set the required environment variables: DATABASE_URL, SECRET_KEY")
        raise e
