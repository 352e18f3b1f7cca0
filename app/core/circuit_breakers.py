"""
Circuit Breakers and Retry Logic
Prevents one flaky provider response from failing a whole sync page
"""
import logging
from functools import wraps

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
    before_sleep_log,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def is_retryable_provider_error(exc: BaseException) -> bool:
    """Transport failures, rate limits (429) and 5xx responses are retried."""
    if isinstance(exc, (httpx.TransportError, httpx.TimeoutException)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return False


# ============================================================================
# PROVIDER API CIRCUIT BREAKER
# ============================================================================

def with_provider_retry(func):
    """
    Decorator for provider API calls with exponential backoff retry.

    Retries on:
    - Connection / timeout errors
    - HTTP 429 and 5xx

    Strategy:
    - Max 3 attempts
    - Exponential backoff: 1s, 2s, 4s (capped at 10s)
    - Logs before each retry, re-raises the last error
    """
    @retry(
        retry=retry_if_exception(is_retryable_provider_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )
    @wraps(func)
    async def async_wrapper(*args, **kwargs):
        return await func(*args, **kwargs)

    return async_wrapper
