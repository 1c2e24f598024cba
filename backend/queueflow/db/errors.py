import asyncio
import logging
from contextlib import asynccontextmanager

from redis.exceptions import RedisError
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError

from queueflow.exceptions import ConflictError, DependencyUnavailableError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def storage_errors(operation: str):
    """
    Translates storage and lock failures raised inside a queue operation into
    API errors. The transaction has already been rolled back by the session
    context manager when these surface.
    """
    try:
        yield
    except asyncio.TimeoutError as e:
        logger.warning(f"{operation}: timed out waiting for queue lock")
        raise DependencyUnavailableError("Queue is busy, please retry.") from e
    except IntegrityError as e:
        logger.warning(f"{operation}: integrity violation: {e.orig}")
        raise ConflictError("Concurrent modification detected, please retry.") from e
    except (OperationalError, InterfaceError, RedisError) as e:
        logger.error(f"{operation}: storage unavailable: {e}")
        raise DependencyUnavailableError() from e
