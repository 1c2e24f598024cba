"""
Correlation ID support for request tracing.

A correlation ID is taken from the incoming request (or generated), stored in a
context variable for the lifetime of the request, attached to every log record
and echoed back in the response headers.
"""
import uuid
import logging
from contextvars import ContextVar
from typing import Optional
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

CORRELATION_ID_HEADER = "X-Correlation-ID"
REQUEST_ID_HEADER = "X-Request-ID"


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(correlation_id: str) -> None:
    _correlation_id.set(correlation_id)


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Extracts X-Correlation-ID (or X-Request-ID) from the request, generating one
    when absent, and adds it to the response headers.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = (
            request.headers.get(CORRELATION_ID_HEADER) or
            request.headers.get(REQUEST_ID_HEADER)
        )

        if not correlation_id:
            correlation_id = generate_correlation_id()

        set_correlation_id(correlation_id)

        logger.debug(
            f"Request started: {request.method} {request.url.path} "
            f"[correlation_id={correlation_id}]"
        )

        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = correlation_id
            return response
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {request.url.path} "
                f"[correlation_id={correlation_id}] error={str(e)}"
            )
            raise
        finally:
            _correlation_id.set(None)


class CorrelationIdFilter(logging.Filter):
    """
    Adds the current correlation ID to log records as %(correlation_id)s.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        correlation_id = get_correlation_id()
        record.correlation_id = correlation_id or "-"
        return True
