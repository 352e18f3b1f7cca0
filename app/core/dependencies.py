"""
Dependency Injection
Provides reusable dependencies for FastAPI routes

DEPENDENCIES:
- Supabase client + SyncStore (entities, jobs, tasks, webhook logs)
- ConnectorRegistry (built-in connectors + tenant app configs)
- WebhookPipeline
- Redis client (job queue health)
- Rate limiters (webhook + admin)
"""
import logging
from typing import Optional

import redis
from fastapi import Depends
from supabase import create_client, Client

from app.core.config import settings, load_app_configs
from app.core.security import verify_admin_token
from app.middleware.rate_limit import RateLimiter, admin_rate_limit_key, enforce_rate_limit
from app.services.ingestion.webhook import WebhookPipeline
from app.services.sync.database import SyncStore
from app.services.sync.registry import ConnectorRegistry, build_connector_registry

logger = logging.getLogger(__name__)

# ============================================================================
# GLOBAL CLIENTS (initialized once, reused across requests)
# ============================================================================

_supabase_client: Optional[Client] = None
_redis_client: Optional[redis.Redis] = None
_store: Optional[SyncStore] = None
_registry: Optional[ConnectorRegistry] = None
_webhook_limiter: Optional[RateLimiter] = None
_sync_limiter: Optional[RateLimiter] = None


# ============================================================================
# INITIALIZATION (called on app startup)
# ============================================================================

async def initialize_clients():
    """
    Initialize all global clients on app startup.

    Called from main.py lifespan event.
    """
    global _supabase_client, _redis_client, _store, _registry, _webhook_limiter, _sync_limiter

    logger.info("Initializing global clients...")

    # Supabase
    try:
        _supabase_client = create_client(
            settings.supabase_url,
            settings.supabase_service_key  # Backend uses service role
        )
        _store = SyncStore(_supabase_client)
        logger.info("✅ Supabase client initialized")
    except Exception as e:
        logger.error(f"❌ Failed to initialize Supabase: {e}")
        raise

    # Tenants + connectors (invalid app config aborts startup)
    apps = load_app_configs()
    _registry = build_connector_registry(apps)
    logger.info(f"✅ Loaded {len(apps)} app config(s)")

    # Redis (optional for local dev)
    if settings.redis_url:
        try:
            _redis_client = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_connect_timeout=5
            )
            _redis_client.ping()
            logger.info("✅ Redis client initialized")
        except Exception as e:
            logger.warning(f"⚠️  Redis not available: {e}")
            logger.warning("⚠️  Background sync workers will not be enqueued (OK for local dev)")
            _redis_client = None

    _webhook_limiter = RateLimiter(settings.webhook_rate_limit, settings.rate_limit_window_seconds, settings.rate_limit_storage_uri)
    _sync_limiter = RateLimiter(settings.sync_rate_limit, settings.rate_limit_window_seconds, settings.rate_limit_storage_uri)

    logger.info("✅ All clients initialized successfully")


async def shutdown_clients():
    """
    Shutdown all global clients on app shutdown.

    Called from main.py lifespan event.
    """
    global _supabase_client, _redis_client, _store, _registry

    logger.info("Shutting down global clients...")

    if _registry:
        await _registry.aclose()
        logger.info("✅ Connector HTTP clients closed")

    if _redis_client:
        try:
            _redis_client.close()
            logger.info("✅ Redis client closed")
        except Exception as e:
            logger.error(f"Error closing Redis: {e}")

    # Supabase doesn't need explicit cleanup
    _supabase_client = None
    _store = None
    _registry = None
    _redis_client = None

    logger.info("✅ All clients shutdown complete")


# ============================================================================
# DEPENDENCY FUNCTIONS (injected into routes)
# ============================================================================

def get_supabase() -> Client:
    """
    Get Supabase client for dependency injection.

    Returns:
        Supabase client (service role)
    """
    if _supabase_client is None:
        logger.error("Supabase client not initialized")
        raise RuntimeError("Supabase client not initialized. Call initialize_clients() first.")

    return _supabase_client


def get_store() -> SyncStore:
    """
    Get the SyncStore for dependency injection.

    Usage:
        @router.get("/sync/jobs/{job_id}")
        async def job_status(job_id: str, store: SyncStore = Depends(get_store)):
            return await store.get_job_status(job_id)
    """
    if _store is None:
        raise RuntimeError("SyncStore not initialized. Call initialize_clients() first.")

    return _store


def get_registry() -> ConnectorRegistry:
    """Get the connector registry (built once at startup)."""
    if _registry is None:
        raise RuntimeError("Connector registry not initialized. Call initialize_clients() first.")

    return _registry


def get_redis() -> Optional[redis.Redis]:
    """Redis client, or None when Redis isn't configured/reachable."""
    return _redis_client


def get_webhook_pipeline(
    store: SyncStore = Depends(get_store),
    registry: ConnectorRegistry = Depends(get_registry)
) -> WebhookPipeline:
    return WebhookPipeline(store, registry)


def get_webhook_limiter() -> RateLimiter:
    global _webhook_limiter
    if _webhook_limiter is None:
        _webhook_limiter = RateLimiter(settings.webhook_rate_limit, settings.rate_limit_window_seconds, settings.rate_limit_storage_uri)
    return _webhook_limiter


def get_sync_limiter() -> RateLimiter:
    global _sync_limiter
    if _sync_limiter is None:
        _sync_limiter = RateLimiter(settings.sync_rate_limit, settings.rate_limit_window_seconds, settings.rate_limit_storage_uri)
    return _sync_limiter


async def require_admin(
    token: str = Depends(verify_admin_token),
    limiter: RateLimiter = Depends(get_sync_limiter)
) -> str:
    """Admin auth followed by the per-token rate limit (/sync, /worker)."""
    enforce_rate_limit(limiter, admin_rate_limit_key(token))
    return token
