"""
Security Headers Middleware
Hardening headers for a JSON-only API

HSTS is only sent in production (local development runs over plain HTTP).
"""
import logging
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.config import settings

logger = logging.getLogger(__name__)

API_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    # No documents are served, so nothing may load
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Cache-Control": "no-store",
}

HSTS_HEADER = "max-age=31536000; includeSubDomains"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds API_SECURITY_HEADERS (plus HSTS in production) to every response."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        for name, value in API_SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)

        if settings.environment == "production":
            response.headers["Strict-Transport-Security"] = HSTS_HEADER

        if "server" in response.headers:
            del response.headers["server"]

        return response
