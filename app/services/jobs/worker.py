"""
Sync Worker Loop
Claims pending sync tasks and runs them until the runtime budget runs out

ARCHITECTURE:
- Workers are separate processes; the only mutual exclusion is the
  conditional pending → processing update in SyncStore.try_claim_task
- Exit conditions checked every iteration: shutdown signal, runtime budget,
  max task count, no pending tasks
- Budget/shutdown are also checked after every page of the running task. An
  interrupted task is handed back as pending with its cursor (never failed)
  and the job is flagged needs_worker for a continuation worker
- Any early stop (shutdown, budget, max_tasks) flags the work left behind;
  an unscoped worker flags every active job with pending tasks
- HeartbeatTimer writes last_heartbeat/cursor/entity_count while a task runs
"""
import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from app.core.config import settings
from app.services.jobs.scheduler import check_job_completion
from app.services.sync.canonical import SyncResult, Timer
from app.services.sync.database import TERMINAL_JOB_STATUSES, SyncStore
from app.services.sync.orchestration.resource_sync import process_task_sync
from app.services.sync.registry import ConnectorRegistry

logger = logging.getLogger(__name__)

# Shutdown reasons
SHUTDOWN_REQUESTED = "shutdown_requested"
TIMEOUT = "timeout"
MAX_TASKS_REACHED = "max_tasks_reached"
NO_TASKS = "no_tasks"
SHUTDOWN_DURING_TASK = "shutdown_during_task"
TIMEOUT_DURING_TASK = "timeout_during_task"

# Reasons that leave work behind for a continuation worker
CONTINUATION_REASONS = (SHUTDOWN_REQUESTED, TIMEOUT, MAX_TASKS_REACHED, SHUTDOWN_DURING_TASK, TIMEOUT_DURING_TASK)


@dataclass
class WorkerResult:
    tasks_processed: int = 0
    jobs_completed: List[str] = field(default_factory=list)
    duration_ms: int = 0
    shutdown_reason: Optional[str] = None
    success: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "tasks_processed": self.tasks_processed,
            "jobs_completed": self.jobs_completed,
            "duration_ms": self.duration_ms,
            "shutdown_reason": self.shutdown_reason,
        }


class HeartbeatTimer:
    """
    Background heartbeat for the task in flight.

    Usage:
        heartbeat = HeartbeatTimer(store, task_id, interval=5.0)
        heartbeat.start()
        heartbeat.update(cursor="abc", entity_count=200)
        await heartbeat.stop()
    """

    def __init__(self, store: SyncStore, task_id: str, interval: float, entity_count: int = 0):
        self.store = store
        self.task_id = task_id
        self.interval = interval
        self.cursor: Optional[str] = None
        self.entity_count = entity_count
        self.beats = 0
        self._task: Optional[asyncio.Task] = None

    def start(self):
        self._task = asyncio.create_task(self._run())

    def update(self, cursor: Optional[str] = None, entity_count: Optional[int] = None):
        if cursor is not None:
            self.cursor = cursor
        if entity_count is not None:
            self.entity_count = entity_count

    async def beat(self):
        try:
            await self.store.update_task_heartbeat(self.task_id, cursor=self.cursor, entity_count=self.entity_count)
            self.beats += 1
        except Exception as e:
            # Advisory signal: a missed beat must not fail the task
            logger.warning(f"⚠️  Heartbeat failed for task {self.task_id}: {e}")

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            await self.beat()

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


async def reclaim_stale_tasks(store: SyncStore) -> List[str]:
    """
    Requeue tasks abandoned by crashed workers and flag their jobs.

    Returns:
        Ids of the jobs flagged needs_worker
    """
    stale = await store.requeue_stale_tasks(settings.stale_task_timeout_seconds)
    return await store.flag_jobs(task["job_id"] for task in stale)


async def request_continuation(store: SyncStore, job_id: Optional[str]) -> List[str]:
    """
    Flag the work this worker leaves behind for a continuation worker.

    A job-scoped worker flags its job; an unscoped one flags every active job
    that still has pending tasks.
    """
    if job_id:
        await store.set_needs_worker(job_id, True)
        return [job_id]
    return await store.flag_jobs(await store.get_job_ids_with_tasks("pending"))


async def run_worker(
    store: SyncStore,
    registry: ConnectorRegistry,
    job_id: Optional[str] = None,
    max_tasks: Optional[int] = None,
    shutdown: Optional[Union[asyncio.Event, threading.Event]] = None,
    max_runtime_ms: Optional[int] = None,
    heartbeat_interval: Optional[float] = None
) -> WorkerResult:
    """
    Drain pending sync tasks (optionally for one job).

    Args:
        store: SyncStore shared by all workers
        registry: Connector registry (holds the tenant configs)
        job_id: Only claim tasks of this job
        max_tasks: Stop after this many tasks
        shutdown: Set by the host to stop at the next check point (a
            threading.Event when set from another thread, e.g. Dramatiq shutdown)
        max_runtime_ms: Wall-clock budget (defaults to settings.worker_max_runtime_ms)
        heartbeat_interval: Seconds between heartbeats

    Returns:
        WorkerResult with tasks processed, jobs settled and why the loop ended
    """
    shutdown = shutdown or asyncio.Event()
    max_runtime_ms = max_runtime_ms if max_runtime_ms is not None else settings.worker_max_runtime_ms
    heartbeat_interval = heartbeat_interval or settings.worker_heartbeat_interval_seconds

    timer = Timer()
    result = WorkerResult()
    settled_jobs = set()

    def budget_exhausted() -> bool:
        return timer.elapsed_ms() >= max_runtime_ms

    def should_stop() -> bool:
        return shutdown.is_set() or budget_exhausted()

    async def settle(settle_job_id: str):
        if settle_job_id in settled_jobs:
            return
        if await check_job_completion(store, settle_job_id):
            settled_jobs.add(settle_job_id)
            result.jobs_completed.append(settle_job_id)

    logger.info(f"🚀 Worker started (job={job_id or 'any'}, max_tasks={max_tasks}, budget={max_runtime_ms}ms)")

    # Tasks abandoned by crashed workers go back to the queue first
    await reclaim_stale_tasks(store)

    while True:
        if shutdown.is_set():
            result.shutdown_reason = SHUTDOWN_REQUESTED
            break

        if budget_exhausted():
            logger.info("Worker approaching time limit, requesting continuation")
            result.shutdown_reason = TIMEOUT
            break

        if max_tasks is not None and result.tasks_processed >= max_tasks:
            logger.info(f"Processed max tasks ({max_tasks}), exiting")
            result.shutdown_reason = MAX_TASKS_REACHED
            break

        try:
            candidate = await store.next_pending_task(job_id)
            task = await store.try_claim_task(candidate["id"]) if candidate else None
        except Exception as e:
            logger.error(f"❌ Error claiming task: {e}")
            await asyncio.sleep(settings.worker_claim_retry_delay_seconds)
            continue

        if candidate is None:
            logger.info("No pending tasks available")
            if job_id:
                await settle(job_id)
            result.shutdown_reason = NO_TASKS
            break

        if task is None:
            # Another worker won the race for this task
            continue

        outcome = await _process_task(store, registry, task, heartbeat_interval, should_stop)

        if outcome == "interrupted":
            result.shutdown_reason = SHUTDOWN_DURING_TASK if shutdown.is_set() else TIMEOUT_DURING_TASK
            break

        result.tasks_processed += 1
        await settle(task["job_id"])
        await asyncio.sleep(settings.worker_idle_delay_seconds)

    if result.shutdown_reason in CONTINUATION_REASONS:
        flagged = await request_continuation(store, job_id)
        logger.info(f"🔗 Continuation requested for {len(flagged)} job(s)")

    result.duration_ms = timer.elapsed_ms()
    logger.info(
        f"✅ Worker finished: tasks_processed={result.tasks_processed}, "
        f"jobs_completed={len(result.jobs_completed)}, duration={result.duration_ms}ms, "
        f"reason={result.shutdown_reason}"
    )
    return result


async def _process_task(
    store: SyncStore,
    registry: ConnectorRegistry,
    task: Dict[str, Any],
    heartbeat_interval: float,
    should_stop
) -> str:
    """
    Run one claimed task to a terminal state (or hand it back).

    Returns:
        "completed", "failed" or "interrupted"
    """
    task_id = task["id"]
    job_id = task["job_id"]
    tag = f"[job {job_id}:{task['resource_type']}]"

    job = await store.get_job(job_id)
    if job is None:
        await store.fail_task(task_id, f"Job {job_id} not found")
        return "failed"

    if job.get("status") in TERMINAL_JOB_STATUSES:
        await store.fail_task(task_id, f"Job is {job['status']}")
        return "failed"

    await store.mark_job_processing(job_id)
    logger.info(f"{tag} Processing task {task_id}")

    heartbeat = HeartbeatTimer(store, task_id, heartbeat_interval, entity_count=task.get("entity_count") or 0)

    async def on_progress(processed: int, cursor: Optional[str]):
        heartbeat.update(cursor=cursor, entity_count=processed)

    heartbeat.start()
    try:
        sync_result = await process_task_sync(
            store, registry, job, task,
            on_progress=on_progress,
            should_stop=should_stop,
        )
    except Exception as e:
        # Unexpected failure: record it on the task and keep the worker alive
        logger.error(f"❌ {tag} Task failed: {e}", exc_info=True)
        sync_result = SyncResult.failed(str(e))
    finally:
        await heartbeat.stop()

    entity_count = sync_result.entity_count

    if sync_result.interrupted:
        # Best-effort state save, then leave the rest to a continuation worker
        await store.release_task(task_id, cursor=sync_result.next_cursor, entity_count=entity_count)
        await store.set_needs_worker(job_id, True)
        logger.warning(f"⚠️  {tag} Interrupted, released at cursor {sync_result.next_cursor}")
        return "interrupted"

    if sync_result.success:
        await store.update_task_status(task_id, "completed", entity_count=entity_count)
        await store.increment_job_counters(job_id, completed=1, entities=entity_count)
        logger.info(f"✅ {tag} Completed ({entity_count} entities)")
        return "completed"

    error_message = "; ".join(sync_result.error_messages) or "Sync failed"
    await store.update_task_status(task_id, "failed", entity_count=entity_count, error_message=error_message)
    await store.increment_job_counters(job_id, failed=1, entities=entity_count)
    logger.error(f"❌ {tag} Failed: {error_message}")
    return "failed"
