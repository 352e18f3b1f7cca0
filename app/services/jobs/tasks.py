"""
Dramatiq Background Tasks
Sync workers, worker chaining and job retention

Worker chaining: a sync worker stops at its runtime budget (or on Dramatiq
shutdown) and flags the job needs_worker. run_sync_worker_task re-enqueues
itself while the job is still flagged; dispatch_pending_workers_task (cron)
reclaims crashed workers' tasks and catches anything left behind.
"""
import asyncio
import logging
from typing import List, Optional

import dramatiq
from supabase import create_client

from app.services.jobs.broker import broker, shutdown_signal  # noqa: F401  (registers the broker before actors)

logger = logging.getLogger(__name__)


def get_worker_store():
    """
    Create a fresh SyncStore for background tasks.
    Dramatiq workers run in separate processes, so we can't share the API's clients.
    """
    from app.core.config import settings
    from app.services.sync.database import SyncStore

    return SyncStore(create_client(settings.supabase_url, settings.supabase_service_key))


def get_worker_dependencies():
    """Fresh store plus a connector registry loaded with the tenant configs."""
    from app.core.config import load_app_configs
    from app.services.sync.registry import build_connector_registry

    return get_worker_store(), build_connector_registry(load_app_configs())


async def spawn_worker(store, job_id: str, max_tasks: Optional[int] = None):
    """
    Enqueue a sync worker for a job.

    The job is stamped before the message is sent, so a needs_worker flag
    raised by the new worker is never overwritten. A failed send re-flags the
    job for the dispatcher.
    """
    await store.mark_worker_spawned(job_id)
    args = (job_id,) if max_tasks is None else (job_id, max_tasks)
    try:
        run_sync_worker_task.send(*args)
    except Exception:
        await store.set_needs_worker(job_id, True)
        raise


async def _run_worker_with_cleanup(store, registry, job_id: Optional[str], max_tasks: Optional[int]):
    """
    Runs the worker loop, then chains a continuation while the job is still
    flagged. Connector HTTP clients are closed in the same event loop.
    """
    from app.services.jobs.worker import run_worker

    try:
        result = await run_worker(
            store, registry,
            job_id=job_id,
            max_tasks=max_tasks,
            shutdown=shutdown_signal.event,
        )
    finally:
        await registry.aclose()

    job = await store.get_job(job_id) if job_id else None

    # Shutting down: leave the flag for the dispatcher instead of re-enqueueing
    if job and job.get("needs_worker") and job.get("status") in ("pending", "processing") \
            and not shutdown_signal.event.is_set():
        logger.info(f"🔗 Job {job_id} needs another worker, re-enqueueing")
        await spawn_worker(store, job_id, max_tasks)

    return result


@dramatiq.actor(max_retries=0)
def run_sync_worker_task(job_id: Optional[str] = None, max_tasks: Optional[int] = None):
    """
    Background sync worker.

    Args:
        job_id: Only process this job's tasks (None = any pending task)
        max_tasks: Stop after this many tasks
    """
    logger.info(f"🚀 Starting sync worker for job {job_id or 'any'}")

    store, registry = get_worker_dependencies()
    result = asyncio.run(_run_worker_with_cleanup(store, registry, job_id, max_tasks))

    logger.info(f"✅ Sync worker done: {result.to_dict()}")
    return result.to_dict()


async def _dispatch(store) -> int:
    """
    Recover stuck jobs, then spawn a worker for every flagged job.

    Recovery flags jobs whose tasks were abandoned by a crashed worker (stale
    heartbeat) and jobs with pending tasks that nobody is running.
    """
    from app.core.config import settings
    from app.services.jobs.worker import reclaim_stale_tasks

    recovered: List[str] = await reclaim_stale_tasks(store)
    orphaned = await store.find_orphaned_jobs(settings.stale_task_timeout_seconds)
    recovered += await store.flag_jobs(orphaned)
    if recovered:
        logger.warning(f"⚠️  Recovered {len(recovered)} stuck job(s): {recovered}")

    jobs = await store.get_jobs_needing_worker()
    for job in jobs:
        await spawn_worker(store, job["id"])
        logger.info(f"🔗 Spawned worker for job {job['id']} ({job['app_key']})")
    return len(jobs)


@dramatiq.actor(max_retries=1)
def dispatch_pending_workers_task():
    """Enqueue a worker for every active job flagged needs_worker."""
    store = get_worker_store()
    spawned = asyncio.run(_dispatch(store))
    logger.info(f"✅ Worker dispatch complete: {spawned} worker(s) spawned")
    return spawned


@dramatiq.actor(max_retries=1)
def cleanup_old_jobs_task(retention_days: Optional[int] = None):
    """Delete finished jobs older than the retention window (tasks cascade)."""
    from app.core.config import settings

    store = get_worker_store()
    removed = asyncio.run(store.cleanup_old_jobs(retention_days or settings.job_retention_days))
    return removed
