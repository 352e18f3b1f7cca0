"""
Health Check Routes
System status and diagnostics
"""
import logging

from fastapi import APIRouter, Depends

from app.core.dependencies import get_redis, get_registry, get_supabase
from app.models.schemas import HealthResponse
from app.services.sync.registry import ConnectorRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

VERSION = "1.0.0"


@router.get("/health", response_model=HealthResponse)
async def health_check(registry: ConnectorRegistry = Depends(get_registry)):
    """Health check endpoint (database, queue, loaded connectors/apps)."""
    database = "connected"
    try:
        get_supabase().table("sync_jobs").select("id").limit(1).execute()
    except Exception as e:
        logger.warning(f"⚠️  Health check: database unavailable: {e}")
        database = "unavailable"

    redis_client = get_redis()
    queue = "not_configured"
    if redis_client is not None:
        try:
            redis_client.ping()
            queue = "connected"
        except Exception as e:
            logger.warning(f"⚠️  Health check: Redis unavailable: {e}")
            queue = "unavailable"

    return HealthResponse(
        status="healthy" if database == "connected" else "degraded",
        version=VERSION,
        database=database,
        queue=queue,
        connectors=registry.list_connectors(),
        apps={app.app_key: app.connector for app in registry.list_apps()},
    )


@router.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "SaaS Sync & Webhook Ingestion API",
        "version": VERSION,
        "description": "Webhook ingestion and polling sync for Stripe, Intercom and Notion",
        "endpoints": {
            "health": "/health",
            "webhook": "/webhook/{app_key}",
            "sync": "/sync",
            "job_status": "/sync/jobs/{job_id}",
            "cancel_job": "/sync/jobs/{job_id}/cancel",
            "worker": "/worker"
        }
    }
