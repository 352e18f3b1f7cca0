"""
SaaS Sync & Webhook Ingestion Service
=====================================
Version: 1.0.0

FastAPI application entry point.

Architecture:
- app/core/: Configuration, dependencies, security, validation, Sentry
- app/middleware/: Error handling, logging, CORS, security headers, rate limiting
- app/models/: Pydantic schemas
- app/services/sync/: Connector contract, registry, providers, store, sync protocol
- app/services/jobs/: Job scheduler, worker loop, Dramatiq actors
- app/services/ingestion/: Webhook pipeline
- app/api/v1/routes/: API endpoints

Endpoints:
- POST /webhook/{app_key}         provider webhooks (signature verified)
- POST /sync                      admin: run or schedule a sync
- GET  /sync/jobs/{job_id}        admin: job progress
- POST /sync/jobs/{job_id}/cancel admin: cancel a job
- POST /worker                    admin: run the worker loop in-process
- GET  /health
"""
import sys
import logging
import traceback
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

# Startup error handling: a bad import or invalid settings should fail loudly
try:
    from app.core.config import settings
    from app.core.dependencies import get_registry, initialize_clients, shutdown_clients
    from app.core.sentry import init_sentry

    from app.middleware.error_handler import ErrorHandlerMiddleware
    from app.middleware.logging import RequestLoggingMiddleware
    from app.middleware.cors import get_cors_middleware
    from app.middleware.security_headers import SecurityHeadersMiddleware

    from app.api.v1.routes.health import VERSION, router as health_router
    from app.api.v1.routes.webhook import router as webhook_router
    from app.api.v1.routes.sync import router as sync_router
    from app.api.v1.routes.worker import router as worker_router

except Exception as e:
    print(f"🚨 FATAL STARTUP ERROR: {e}", file=sys.stderr)
    print(f"Traceback:\n{traceback.format_exc()}", file=sys.stderr)
    sys.exit(1)

logging.basicConfig(
    level=logging.INFO if settings.environment == "production" else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

init_sentry("api")

# ============================================================================
# LIFECYCLE MANAGEMENT
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect Supabase/Redis and load tenants on startup; close clients on shutdown."""
    logger.info("=" * 80)
    logger.info(f"🚀 Starting Sync & Webhook Ingestion Service v{VERSION} ({settings.environment}, port {settings.port})")
    logger.info("=" * 80)

    await initialize_clients()

    registry = get_registry()
    for app_config in registry.list_apps():
        logger.info(f"   {app_config.app_key} → {app_config.connector}")
    logger.info(f"✅ Service started with {len(registry.list_apps())} app(s)")

    yield

    logger.info("Shutting down...")
    await shutdown_clients()
    logger.info("✅ Shutdown complete")


# ============================================================================
# APP INITIALIZATION
# ============================================================================

app = FastAPI(
    title="Sync & Webhook Ingestion API",
    description="Webhook ingestion and polling sync for SaaS providers",
    version=VERSION,
    docs_url="/docs" if settings.debug else None,  # Disable docs in production
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan
)

# ============================================================================
# REQUEST VALIDATION
# ============================================================================

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed JSON or schema mismatch → 400 (not FastAPI's default 422)."""
    errors = [
        {"path": ".".join(str(part) for part in error.get("loc", ()) if part != "body"), "message": error.get("msg")}
        for error in exc.errors()
    ]
    logger.warning(f"⚠️  Invalid request body on {request.method} {request.url.path}: {errors}")
    return JSONResponse(status_code=400, content={"error": "Invalid request body", "details": errors})

# ============================================================================
# MIDDLEWARE (order matters!)
# ============================================================================

# Security headers (must be first to apply to all responses)
app.add_middleware(SecurityHeadersMiddleware)

# CORS (after security headers)
cors_middleware, cors_config = get_cors_middleware()
app.add_middleware(cors_middleware, **cors_config)

app.add_middleware(RequestLoggingMiddleware)

# Global error handler (must be last)
app.add_middleware(ErrorHandlerMiddleware)

# ============================================================================
# ROUTES
# ============================================================================

app.include_router(health_router)
app.include_router(webhook_router)
app.include_router(sync_router)
app.include_router(worker_router)

# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
        log_level="info"
    )
