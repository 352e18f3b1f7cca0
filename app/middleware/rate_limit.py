"""
Rate Limiting
Fixed-window counters guarding the webhook and admin endpoints (limits, via slowapi)

RATE LIMITS:
- Webhooks: 100 requests/minute per client IP
- Sync/worker (admin): 10 requests/minute per admin token

Counters live in limits' memory storage (single instance, best effort); the
storage expires finished windows itself. For multi-instance deployment point
RATE_LIMIT_STORAGE_URI at Redis.

SECURITY: Admin callers are keyed on the first 8 characters of their token,
never the full secret.
"""
import logging
import math
import time
from dataclasses import dataclass

from fastapi import HTTPException, Request
from limits import RateLimitItemPerSecond
from limits.storage import storage_from_string
from limits.strategies import FixedWindowRateLimiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0


class RateLimiter:
    """
    Fixed-window rate limiter.

    Usage:
        limiter = RateLimiter(max_requests=100, window_seconds=60)
        decision = limiter.check("webhook:1.2.3.4")
    """

    def __init__(self, max_requests: int, window_seconds: int = 60, storage_uri: str = "memory://"):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.item = RateLimitItemPerSecond(max_requests, int(window_seconds))
        self.storage = storage_from_string(storage_uri)
        self.strategy = FixedWindowRateLimiter(self.storage)

    def check(self, key: str) -> RateLimitDecision:
        if self.strategy.hit(self.item, key):
            return RateLimitDecision(allowed=True)

        reset_time, _ = self.strategy.get_window_stats(self.item, key)
        retry_after = max(1, math.ceil(reset_time - time.time()))
        return RateLimitDecision(allowed=False, retry_after=retry_after)

    def reset(self):
        self.storage.reset()


# ============================================================================
# CALLER IDENTITY
# ============================================================================

def client_ip(request: Request) -> str:
    """First X-Forwarded-For hop (proxy deployments), else the socket address."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop
    return get_remote_address(request) or "unknown"


def webhook_rate_limit_key(request: Request) -> str:
    return f"webhook:{client_ip(request)}"


def admin_rate_limit_key(token: str) -> str:
    # SECURITY: Don't key (or log) the full admin token
    return f"sync:{token[:8]}"


def enforce_rate_limit(limiter: RateLimiter, key: str):
    """
    Raises:
        HTTPException 429 with a Retry-After header when the window is full
    """
    decision = limiter.check(key)
    if not decision.allowed:
        logger.warning(f"⚠️  Rate limit exceeded for {key} (retry after {decision.retry_after}s)")
        raise HTTPException(
            status_code=429,
            detail="Too many requests",
            headers={"Retry-After": str(decision.retry_after)},
        )
