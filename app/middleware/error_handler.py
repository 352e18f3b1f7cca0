"""
Global Error Handler Middleware
Turns unhandled exceptions into a generic JSON 500

SECURITY: Exception type and message stay in the server log; callers only
ever see "Internal server error".
"""
import logging
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Last-resort handler for exceptions that escape route handlers."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            logger.error(
                f"❌ Unhandled {type(exc).__name__} on {request.method} {request.url.path}: {exc}",
                exc_info=True,
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "client_host": request.client.host if request.client else None
                }
            )
            return JSONResponse(status_code=500, content={"error": "Internal server error"})
