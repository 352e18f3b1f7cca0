"""
Sentry Error Tracking
Shared initialization for the API process and the Dramatiq worker process

Both processes report ERROR logs as events; the API adds the FastAPI
integration, the worker adds the Dramatiq integration (failed actors).
"""
import logging
from typing import List

from app.core.config import settings

logger = logging.getLogger(__name__)

TRACES_SAMPLE_RATE = 0.1


def init_sentry(component: str) -> bool:
    """
    Initialize Sentry if SENTRY_DSN is set.

    Args:
        component: "api" or "worker" (selects integrations, tagged on events)

    Returns:
        True when Sentry was initialized
    """
    if not settings.sentry_dsn:
        logger.info(f"ℹ️  Sentry not configured for {component} (SENTRY_DSN not set)")
        return False

    try:
        import sentry_sdk
        from sentry_sdk.integrations.logging import LoggingIntegration

        integrations: List = [LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)]
        if component == "api":
            from sentry_sdk.integrations.fastapi import FastApiIntegration
            integrations.append(FastApiIntegration())
        else:
            from sentry_sdk.integrations.dramatiq import DramatiqIntegration
            integrations.append(DramatiqIntegration())

        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            traces_sample_rate=TRACES_SAMPLE_RATE,
            integrations=integrations,
        )
        sentry_sdk.set_tag("component", component)
        logger.info(f"✅ Sentry error tracking initialized ({component})")
        return True
    except Exception as e:
        logger.warning(f"⚠️  Failed to initialize Sentry ({component}): {e}")
        return False
