"""
Request validation utilities for the webhook and admin endpoints
"""
import re
from typing import Optional

from fastapi import HTTPException, Request

from app.core.config import settings

APP_KEY_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
MAX_APP_KEY_LENGTH = 64


def is_valid_app_key(app_key: Optional[str]) -> bool:
    """
    Check the app_key taken from a webhook URL.

    Only alphanumerics, underscores and hyphens, 1-64 characters.

    Example:
        >>> is_valid_app_key("stripe_live")
        True
        >>> is_valid_app_key("../etc")
        False
    """
    return bool(app_key) and len(app_key) <= MAX_APP_KEY_LENGTH and bool(APP_KEY_PATTERN.match(app_key))


def check_request_size(request: Request, max_bytes: Optional[int] = None):
    """
    Reject oversized bodies from their Content-Length before reading them.

    Raises:
        HTTPException 413 if Content-Length exceeds the limit
    """
    limit = max_bytes or settings.max_request_size_bytes
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > limit:
        raise HTTPException(status_code=413, detail="Request body too large")


def check_body_size(body: bytes, max_bytes: Optional[int] = None):
    """Same limit applied to the body actually received (chunked uploads have no Content-Length)."""
    limit = max_bytes or settings.max_request_size_bytes
    if len(body) > limit:
        raise HTTPException(status_code=413, detail="Request body too large")
