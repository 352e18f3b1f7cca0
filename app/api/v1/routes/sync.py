"""
Sync Routes
Admin endpoints: trigger syncs, inspect and cancel sync jobs

AUTH: Bearer ADMIN_API_KEY (timing-safe compare), rate limited per token.

POST /sync with immediate=true runs the sync inline (small resources, debugging);
otherwise a job with one task per resource type is created and a background
worker is enqueued. Callers poll GET /sync/jobs/{job_id}.
"""
import logging
from typing import Union

from fastapi import APIRouter, Depends, HTTPException, Query

from app.core.dependencies import get_registry, get_store, require_admin
from app.models.schemas import (
    JobCancelResponse,
    JobCreatedResponse,
    JobStatusResponse,
    SyncRequest,
    SyncResponse,
)
from app.services.jobs.scheduler import JobCreationError, create_sync_job, resolve_resource_types
from app.services.sync.connectors import ConnectorNotFoundError
from app.services.sync.database import SyncStore
from app.services.sync.orchestration.resource_sync import SYNC_MODES, sync_app
from app.services.sync.registry import ConnectorRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("", response_model=Union[SyncResponse, JobCreatedResponse])
async def trigger_sync(
    body: SyncRequest,
    _: str = Depends(require_admin),
    store: SyncStore = Depends(get_store),
    registry: ConnectorRegistry = Depends(get_registry)
):
    """
    Trigger a sync for one app.

    Returns:
        SyncResponse (immediate=true) or JobCreatedResponse
    """
    app_config = registry.get_app_config(body.app_key)
    if app_config is None:
        raise HTTPException(status_code=404, detail=f"Unknown app_key: {body.app_key}")

    logger.info(f"Sync requested: {body.app_key} mode={body.mode} immediate={body.immediate} resources={body.resource_types or 'default'}")

    try:
        if body.immediate:
            if body.mode not in SYNC_MODES:
                raise JobCreationError(f"Invalid mode: {body.mode} (expected one of {', '.join(SYNC_MODES)})")

            types = resolve_resource_types(registry, app_config, body.resource_types)
            result = await sync_app(store, registry, app_config, body.mode, types)
            return SyncResponse(app_key=body.app_key, mode=body.mode, resource_types=types, **result.to_dict())

        job = await create_sync_job(store, registry, app_config, body.mode, body.resource_types)

    except JobCreationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ConnectorNotFoundError as e:
        logger.error(f"❌ No connector for {body.app_key}: {e}")
        raise HTTPException(status_code=500, detail="Connector not available")

    await _enqueue_worker(store, job["job_id"])

    return JobCreatedResponse(**job)


async def _enqueue_worker(store: SyncStore, job_id: str):
    """
    Enqueue a background worker for a new job.

    Failures are logged only: the job stays flagged needs_worker and the
    dispatcher cron spawns its worker.
    """
    try:
        from app.services.jobs.tasks import spawn_worker

        await spawn_worker(store, job_id)
        logger.info(f"🔗 Enqueued sync worker for job {job_id}")
    except Exception as e:
        logger.warning(f"⚠️  Could not enqueue worker for job {job_id}: {e} (dispatcher will pick it up)")


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    include_tasks: bool = Query(default=True),
    _: str = Depends(require_admin),
    store: SyncStore = Depends(get_store)
):
    """Job row, progress and (optionally) the per-resource task breakdown."""
    status = await store.get_job_status(job_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Job not found")

    return JobStatusResponse(
        job=status["job"],
        tasks=status["tasks"] if include_tasks else None,
        progress_percentage=status["progress_percentage"],
    )


@router.post("/jobs/{job_id}/cancel", response_model=JobCancelResponse)
async def cancel_job(
    job_id: str,
    _: str = Depends(require_admin),
    store: SyncStore = Depends(get_store)
):
    """
    Cancel an active job. Its pending tasks are failed; a task already being
    processed finishes, but its job stays cancelled.
    """
    job = await store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")

    cancelled = await store.cancel_job(job_id)
    if cancelled:
        logger.info(f"🗑️  Job {job_id} cancelled")
        return JobCancelResponse(job_id=job_id, status="cancelled", cancelled=True)

    # Already terminal: report the status it ended with
    current = await store.get_job(job_id) or job
    return JobCancelResponse(job_id=job_id, status=current["status"], cancelled=False)
