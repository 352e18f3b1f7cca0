"""
Request Logging Middleware
One log line per request with status and timing

Webhook paths are logged with their app_key; bodies and headers never are
(they carry signatures and provider payloads).
"""
import logging
import uuid
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.services.sync.canonical import Timer

logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs method, path, status and duration; tags responses with X-Request-ID."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:16]
        timer = Timer()

        response = await call_next(request)

        duration_ms = timer.elapsed_ms()
        level = logging.WARNING if response.status_code >= 400 else logging.INFO
        logger.log(
            level,
            f"{request.method} {request.url.path} - {response.status_code} ({duration_ms}ms) [{request_id}]",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            }
        )

        response.headers["X-Request-ID"] = request_id
        return response
