# -*- coding: utf-8 -*-
"""
Request correlation and access logging middleware.
"""
import logging
import time
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from .config import settings

logger = logging.getLogger(__name__)

# Health probes and static content requests are logged at DEBUG only
QUIET_PATH_PREFIXES = ("/health", "/content/")

# Context variable for request ID (accessible across async calls)
request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)


def get_request_id() -> str | None:
    """Get current request ID from context."""
    return request_id_ctx.get()


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request ID to each request and log its outcome."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(settings.REQUEST_ID_HEADER) or uuid.uuid4().hex
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers[settings.REQUEST_ID_HEADER] = request_id

            level = (
                logging.DEBUG
                if request.url.path.startswith(QUIET_PATH_PREFIXES)
                else logging.INFO
            )
            logger.log(
                level,
                "Request completed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": int((time.perf_counter() - started) * 1000),
                },
            )
            return response
        finally:
            request_id_ctx.reset(token)
