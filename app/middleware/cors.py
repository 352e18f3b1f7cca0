"""
CORS Configuration
Cross-origin settings for the admin endpoints and webhook preflights

SECURITY:
- Origins come from CORS_ALLOWED_ORIGINS (comma-separated)
- Development may use "*", but then credentials are never allowed
- NO "null" origin (prevents file:// attacks)
"""
import logging
from typing import List
from fastapi.middleware.cors import CORSMiddleware as FastAPICORSMiddleware
from app.core.config import settings

logger = logging.getLogger(__name__)

CORS_ALLOWED_HEADERS = [
    "Authorization",
    "Content-Type",
    "X-Request-ID",
    # Provider signature headers (webhook preflights)
    "Stripe-Signature",
    "X-Hub-Signature",
    "X-Notion-Signature",
]


def parse_allowed_origins(raw: str) -> List[str]:
    origins = [origin.strip() for origin in (raw or "").split(",") if origin.strip()]
    return [origin for origin in origins if origin != "null"]


def get_cors_middleware():
    """
    Returns (middleware class, kwargs) for app.add_middleware().
    """
    allowed_origins = parse_allowed_origins(settings.cors_allowed_origins)
    allow_all = "*" in allowed_origins

    if allow_all and settings.environment == "production":
        logger.warning("⚠️  CORS allows ALL origins (*) in production")

    logger.info(f"🌐 CORS allowed origins: {allowed_origins}")

    return FastAPICORSMiddleware, {
        "allow_origins": ["*"] if allow_all else allowed_origins,
        "allow_credentials": not allow_all,
        "allow_methods": ["GET", "POST", "OPTIONS"],
        "allow_headers": CORS_ALLOWED_HEADERS,
        "expose_headers": ["X-Request-ID", "Retry-After"],
        "max_age": 600,
    }
