"""
Worker Routes
POST /worker runs the sync worker loop inside the API process

Used by schedulers/cron hitting HTTP instead of the Dramatiq queue. The loop
stops at the runtime budget (WORKER_MAX_RUNTIME_MS) and leaves the job flagged
needs_worker for the next invocation.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends

from app.core.dependencies import get_registry, get_store, require_admin
from app.models.schemas import WorkerRequest, WorkerResponse
from app.services.jobs.worker import run_worker
from app.services.sync.database import SyncStore
from app.services.sync.registry import ConnectorRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["worker"])


@router.post("/worker", response_model=WorkerResponse)
async def run_sync_worker(
    body: Optional[WorkerRequest] = None,
    _: str = Depends(require_admin),
    store: SyncStore = Depends(get_store),
    registry: ConnectorRegistry = Depends(get_registry)
):
    """Claim and process pending sync tasks until done or out of budget."""
    body = body or WorkerRequest()
    logger.info(f"Worker invoked via HTTP (job={body.job_id or 'any'}, max_tasks={body.max_tasks})")

    result = await run_worker(store, registry, job_id=body.job_id, max_tasks=body.max_tasks)
    return WorkerResponse(**result.to_dict())
