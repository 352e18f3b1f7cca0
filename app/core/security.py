"""
Security and Authentication
Admin bearer-token auth plus the HMAC primitives used by webhook verification

SECURITY FEATURES:
- Admin token compared with hmac.compare_digest (timing-safe)
- Webhook signatures compared with hmac.compare_digest
- Signature/credential headers redacted before webhook logging
"""
import hashlib
import hmac
import logging
from typing import Dict, Mapping, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import settings

logger = logging.getLogger(__name__)

# Security schemes (auto_error=False so we control the 401 body)
bearer_scheme = HTTPBearer(auto_error=False)

SENSITIVE_HEADERS = {
    "authorization",
    "cookie",
    "set-cookie",
    "stripe-signature",
    "x-hub-signature",
    "x-hub-signature-256",
    "x-notion-signature",
    "x-webhook-signature",
}


# ============================================================================
# ADMIN AUTHENTICATION
# ============================================================================

async def verify_admin_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> str:
    """
    Verify the admin bearer token for /sync and /worker.

    Uses timing-safe comparison to prevent timing attacks.

    Returns:
        The presented token (used as rate-limit identity)

    Raises:
        HTTPException 401 if missing/invalid, 500 if ADMIN_API_KEY is unset
    """
    if not settings.admin_api_key:
        logger.error("Admin authentication attempted but ADMIN_API_KEY not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Admin authentication not configured"
        )

    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required"
        )

    token = credentials.credentials
    if not hmac.compare_digest(token.encode(), settings.admin_api_key.encode()):
        logger.warning(f"Invalid admin token attempt: {token[:8]}...")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token"
        )

    return token


# ============================================================================
# WEBHOOK SIGNATURES
# ============================================================================

def compute_hmac_hex(secret: str, body: bytes, algorithm: str = "sha256") -> str:
    """Hex HMAC of a raw request body."""
    digestmod = getattr(hashlib, algorithm)
    return hmac.new(secret.encode(), body, digestmod).hexdigest()


def signatures_match(received: str, expected: str) -> bool:
    """Constant-time signature comparison."""
    return hmac.compare_digest(received.encode(), expected.encode())


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def sanitize_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """
    Copy headers for logging with credentials and signatures redacted.

    Example:
        {"Stripe-Signature": "t=1,v1=abc"} -> {"stripe-signature": "[REDACTED]"}
    """
    return {
        key.lower(): "[REDACTED]" if key.lower() in SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }
