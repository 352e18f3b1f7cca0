"""
Webhook Routes
Signature-verified provider webhooks: POST /webhook/{app_key}

Per request:
1. Size check (413) and per-IP rate limit (429)
2. WebhookPipeline verifies, parses and applies the event
3. webhook_logs row written in the background (WEBHOOK_LOGGING_ENABLED)

Providers treat any non-2xx as "retry later", so the status code is the only
retry signal this endpoint gives.
"""
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.dependencies import get_store, get_webhook_limiter, get_webhook_pipeline
from app.core.validation import check_body_size, check_request_size
from app.middleware.cors import CORS_ALLOWED_HEADERS
from app.middleware.rate_limit import RateLimiter, enforce_rate_limit, webhook_rate_limit_key
from app.models.schemas import WebhookErrorResponse, WebhookResponse
from app.services.ingestion.webhook import WebhookPipeline
from app.services.sync.database import SyncStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhook"])

PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": ", ".join(CORS_ALLOWED_HEADERS),
    "Access-Control-Max-Age": "600",
}


@router.options("/{app_key}")
async def webhook_preflight(app_key: str):
    """CORS preflight (answered without touching the app config)."""
    return Response(status_code=204, headers=PREFLIGHT_HEADERS)


ERROR_RESPONSES = {
    status: {"model": WebhookErrorResponse}
    for status in (400, 401, 404, 500)
}


@router.post("/{app_key}", response_model=WebhookResponse, responses=ERROR_RESPONSES)
async def receive_webhook(
    app_key: str,
    request: Request,
    background_tasks: BackgroundTasks,
    pipeline: WebhookPipeline = Depends(get_webhook_pipeline),
    store: SyncStore = Depends(get_store),
    limiter: RateLimiter = Depends(get_webhook_limiter)
):
    """
    Receive one provider webhook for a configured app.

    Responses:
    - 200: applied (or ignored: verified event for an untracked resource)
    - 400: malformed app_key
    - 401: signature verification failed
    - 404: unknown app_key
    - 413: body too large
    - 429: rate limited
    - 500: processing failed (generic body)
    """
    check_request_size(request)
    enforce_rate_limit(limiter, webhook_rate_limit_key(request))

    # Raw bytes: signatures are computed over the exact body received
    raw_body = await request.body()
    check_body_size(raw_body)

    outcome = await pipeline.process(app_key, raw_body, request.headers)

    if settings.webhook_logging_enabled:
        # Fire-and-forget: logging never delays or fails the response
        background_tasks.add_task(
            store.insert_webhook_log,
            outcome.to_log(request.method, request.url.path, request.headers),
        )

    return JSONResponse(status_code=outcome.status_code, content=outcome.body)
