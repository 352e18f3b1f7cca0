"""
Sync Store
Supabase-backed persistence for entities, sync state, jobs, tasks and webhook logs

All coordination between workers happens here through conditional updates
(compare-and-swap expressed as PostgREST filters). There is no in-process
locking: workers are separate processes sharing only the database.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from supabase import Client

from app.services.sync.canonical import NormalizedEntity, parse_iso

logger = logging.getLogger(__name__)

ENTITY_CONFLICT_KEY = "app_key,collection_key,external_id"
SYNC_STATE_CONFLICT_KEY = "app_key,collection_key"

# PostgREST caps responses at 1000 rows by default
ID_PAGE_SIZE = 1000

ACTIVE_JOB_STATUSES = ["pending", "processing"]
TERMINAL_JOB_STATUSES = ["completed", "failed", "cancelled"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


class SyncStore:
    """
    Store adapter over the Supabase client.

    Usage:
        store = SyncStore(get_supabase())
        await store.upsert_entities(entities)
        task = await store.claim_task(job_id)
    """

    def __init__(self, supabase: Client):
        self.supabase = supabase

    # ============================================================================
    # ENTITIES
    # ============================================================================

    async def upsert_entities(self, entities: Iterable[NormalizedEntity]) -> int:
        """
        Idempotent batch upsert on (app_key, collection_key, external_id).

        Duplicate keys inside one batch collapse to the last occurrence
        (Postgres rejects ON CONFLICT touching the same row twice).

        Returns:
            Number of rows written
        """
        rows_by_key: Dict[tuple, Dict[str, Any]] = {}
        for entity in entities:
            row = entity.to_row()
            rows_by_key[(row["app_key"], row["collection_key"], row["external_id"])] = row

        if not rows_by_key:
            return 0

        # Rows with a natural-key id and rows relying on the default id go in
        # separate statements so PostgREST never nulls the id column
        with_id = [row for row in rows_by_key.values() if "id" in row]
        without_id = [row for row in rows_by_key.values() if "id" not in row]

        for rows in (with_id, without_id):
            if rows:
                self.supabase.table("entities").upsert(rows, on_conflict=ENTITY_CONFLICT_KEY).execute()

        return len(rows_by_key)

    async def get_entity(self, app_key: str, collection_key: str, external_id: str) -> Optional[Dict[str, Any]]:
        result = self.supabase.table("entities")\
            .select("*")\
            .eq("app_key", app_key)\
            .eq("collection_key", collection_key)\
            .eq("external_id", external_id)\
            .limit(1)\
            .execute()

        return result.data[0] if result.data else None

    async def delete_entity(self, app_key: str, collection_key: str, external_id: str) -> int:
        """Hard-delete one entity. Returns the number of rows removed (0 or 1)."""
        result = self.supabase.table("entities")\
            .delete()\
            .eq("app_key", app_key)\
            .eq("collection_key", collection_key)\
            .eq("external_id", external_id)\
            .execute()

        return len(result.data or [])

    async def get_external_ids(
        self,
        app_key: str,
        collection_key: str,
        created_after: Optional[Any] = None,
        created_field: str = "created"
    ) -> Set[str]:
        """
        All stored external ids of a collection.

        Args:
            created_after: Only ids whose raw_payload[created_field] >= this
                (unix seconds or ISO string, matching the provider's format)
        """
        ids: Set[str] = set()
        offset = 0

        while True:
            query = self.supabase.table("entities")\
                .select("external_id")\
                .eq("app_key", app_key)\
                .eq("collection_key", collection_key)

            if created_after is not None:
                query = query.gte(f"raw_payload->>{created_field}", created_after)

            result = query.order("external_id").range(offset, offset + ID_PAGE_SIZE - 1).execute()
            rows = result.data or []
            ids.update(row["external_id"] for row in rows)

            if len(rows) < ID_PAGE_SIZE:
                break
            offset += ID_PAGE_SIZE

        return ids

    # ============================================================================
    # SYNC STATE
    # ============================================================================

    async def get_sync_state(self, app_key: str, collection_key: str) -> Optional[Dict[str, Any]]:
        result = self.supabase.table("sync_state")\
            .select("*")\
            .eq("app_key", app_key)\
            .eq("collection_key", collection_key)\
            .limit(1)\
            .execute()

        return result.data[0] if result.data else None

    async def update_sync_state(
        self,
        app_key: str,
        collection_key: str,
        last_synced_at: datetime,
        metadata: Optional[Dict[str, Any]] = None
    ):
        self.supabase.table("sync_state").upsert({
            "app_key": app_key,
            "collection_key": collection_key,
            "last_synced_at": last_synced_at.isoformat(),
            "last_sync_metadata": metadata or {},
            "updated_at": utc_now_iso(),
        }, on_conflict=SYNC_STATE_CONFLICT_KEY).execute()

    # ============================================================================
    # JOBS
    # ============================================================================

    async def create_job(self, app_key: str, mode: str, resource_types: List[str]) -> Dict[str, Any]:
        result = self.supabase.table("sync_jobs").insert({
            "app_key": app_key,
            "mode": mode,
            "resource_types": resource_types,
            "status": "pending",
            "total_tasks": 0,
            "completed_tasks": 0,
            "failed_tasks": 0,
            "processed_entities": 0,
            # Picked up by the dispatcher until a worker is spawned
            "needs_worker": True,
        }).execute()

        return result.data[0]

    async def create_tasks(self, job_id: str, resource_types: List[str]) -> List[Dict[str, Any]]:
        """
        Insert one pending task per resource type and record total_tasks.

        created_at is stamped one microsecond apart so "oldest pending" follows
        the requested order (a single insert would share one now()).
        """
        created = utc_now()
        rows = [
            {
                "job_id": job_id,
                "resource_type": resource_type,
                "status": "pending",
                "created_at": (created + timedelta(microseconds=position)).isoformat(),
            }
            for position, resource_type in enumerate(resource_types)
        ]
        result = self.supabase.table("sync_job_tasks").insert(rows).execute()

        self.supabase.table("sync_jobs")\
            .update({"total_tasks": len(rows)})\
            .eq("id", job_id)\
            .execute()

        return result.data or []

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        result = self.supabase.table("sync_jobs").select("*").eq("id", job_id).limit(1).execute()
        return result.data[0] if result.data else None

    async def get_job_tasks(self, job_id: str) -> List[Dict[str, Any]]:
        result = self.supabase.table("sync_job_tasks")\
            .select("*")\
            .eq("job_id", job_id)\
            .order("created_at")\
            .execute()

        return result.data or []

    async def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Job row, its tasks (creation order) and progress percentage."""
        job = await self.get_job(job_id)
        if not job:
            return None

        tasks = await self.get_job_tasks(job_id)
        total = job.get("total_tasks") or 0
        done = (job.get("completed_tasks") or 0) + (job.get("failed_tasks") or 0)
        progress = round(done / total * 100) if total else 0

        return {"job": job, "tasks": tasks, "progress_percentage": progress}

    async def mark_job_processing(self, job_id: str) -> bool:
        """pending → processing (no-op for any other status)."""
        result = self.supabase.table("sync_jobs")\
            .update({
                "status": "processing",
                "started_at": utc_now_iso(),
                "needs_worker": False,
            })\
            .eq("id", job_id)\
            .eq("status", "pending")\
            .execute()

        return bool(result.data)

    async def finish_job(self, job_id: str, status: str, error_message: Optional[str] = None) -> bool:
        """
        Move an active job to a terminal status.

        Terminal jobs are excluded by the filter, so a finished job never
        changes again.
        """
        update = {
            "status": status,
            "completed_at": utc_now_iso(),
            "needs_worker": False,
        }
        if error_message:
            update["error_message"] = error_message

        result = self.supabase.table("sync_jobs")\
            .update(update)\
            .eq("id", job_id)\
            .in_("status", ACTIVE_JOB_STATUSES)\
            .execute()

        return bool(result.data)

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel an active job; its pending tasks are failed so no worker picks them up."""
        cancelled = await self.finish_job(job_id, "cancelled", error_message="Cancelled")
        if cancelled:
            self.supabase.table("sync_job_tasks")\
                .update({
                    "status": "failed",
                    "error_message": "Job cancelled",
                    "completed_at": utc_now_iso(),
                })\
                .eq("job_id", job_id)\
                .eq("status", "pending")\
                .execute()
        return cancelled

    async def set_needs_worker(self, job_id: str, needs_worker: bool = True):
        self.supabase.table("sync_jobs")\
            .update({"needs_worker": needs_worker})\
            .eq("id", job_id)\
            .in_("status", ACTIVE_JOB_STATUSES)\
            .execute()

    async def mark_worker_spawned(self, job_id: str):
        """Stamp worker_spawned_at and clear needs_worker (call BEFORE enqueueing)."""
        self.supabase.table("sync_jobs")\
            .update({"worker_spawned_at": utc_now_iso(), "needs_worker": False})\
            .eq("id", job_id)\
            .in_("status", ACTIVE_JOB_STATUSES)\
            .execute()

    async def flag_jobs(self, job_ids: Iterable[str]) -> List[str]:
        """Set needs_worker on the active jobs among job_ids. Returns the flagged ids."""
        job_ids = sorted(set(job_ids))
        if not job_ids:
            return []

        result = self.supabase.table("sync_jobs")\
            .update({"needs_worker": True})\
            .in_("id", job_ids)\
            .in_("status", ACTIVE_JOB_STATUSES)\
            .execute()

        return [row["id"] for row in result.data or []]

    async def find_orphaned_jobs(self, grace_seconds: int) -> List[str]:
        """
        Active, unflagged jobs with pending tasks that nobody is running.

        A job counts as orphaned when none of its tasks is processing and no
        worker was spawned for it within grace_seconds (queued workers that
        haven't started yet are left alone).
        """
        pending = await self.get_job_ids_with_tasks("pending")
        candidates = pending - await self.get_job_ids_with_tasks("processing")
        if not candidates:
            return []

        cutoff = utc_now() - timedelta(seconds=grace_seconds)
        result = self.supabase.table("sync_jobs")\
            .select("id, worker_spawned_at")\
            .in_("id", sorted(candidates))\
            .in_("status", ACTIVE_JOB_STATUSES)\
            .eq("needs_worker", False)\
            .execute()

        orphaned = []
        for job in result.data or []:
            spawned_at = parse_iso(job.get("worker_spawned_at"))
            if spawned_at is None or spawned_at < cutoff:
                orphaned.append(job["id"])
        return orphaned

    async def get_jobs_needing_worker(self, limit: int = 10) -> List[Dict[str, Any]]:
        result = self.supabase.table("sync_jobs")\
            .select("*")\
            .eq("needs_worker", True)\
            .in_("status", ACTIVE_JOB_STATUSES)\
            .order("created_at")\
            .limit(limit)\
            .execute()

        return result.data or []

    async def increment_job_counters(
        self,
        job_id: str,
        completed: int = 0,
        failed: int = 0,
        entities: int = 0
    ):
        """Atomic counter increment (SQL function, safe across workers)."""
        self.supabase.rpc("increment_sync_job_counters", {
            "p_job_id": job_id,
            "p_completed": completed,
            "p_failed": failed,
            "p_entities": entities,
        }).execute()

    async def cleanup_old_jobs(self, retention_days: int = 7) -> int:
        """Delete finished jobs (tasks cascade) older than the retention window."""
        cutoff = (utc_now() - timedelta(days=retention_days)).isoformat()
        result = self.supabase.table("sync_jobs")\
            .delete()\
            .in_("status", TERMINAL_JOB_STATUSES)\
            .lt("completed_at", cutoff)\
            .execute()

        count = len(result.data or [])
        logger.info(f"🧹 Removed {count} sync job(s) older than {retention_days} days")
        return count

    # ============================================================================
    # TASKS
    # ============================================================================

    async def next_pending_task(self, job_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Oldest pending task (optionally within one job), without claiming it."""
        query = self.supabase.table("sync_job_tasks")\
            .select("*")\
            .eq("status", "pending")

        if job_id:
            query = query.eq("job_id", job_id)

        result = query.order("created_at").limit(1).execute()
        return result.data[0] if result.data else None

    async def claim_task(self, job_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Claim the oldest pending task (optionally within one job).

        Returns:
            The claimed task row, or None when nothing is pending or another
            worker won the race for the selected task
        """
        candidate = await self.next_pending_task(job_id)
        if candidate is None:
            return None

        return await self.try_claim_task(candidate["id"])

    async def try_claim_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        """
        Conditional pending → processing transition.

        The status filter is the compare-and-swap: zero updated rows means
        another worker claimed the task first.
        """
        now = utc_now_iso()
        result = self.supabase.table("sync_job_tasks")\
            .update({
                "status": "processing",
                "started_at": now,
                "last_heartbeat": now,
            })\
            .eq("id", task_id)\
            .eq("status", "pending")\
            .execute()

        if not result.data:
            logger.debug(f"Task {task_id} already claimed by another worker")
            return None

        return result.data[0]

    async def update_task_status(
        self,
        task_id: str,
        status: str,
        entity_count: Optional[int] = None,
        error_message: Optional[str] = None,
        cursor: Optional[str] = None
    ) -> bool:
        """processing → completed/failed (terminal tasks are never rewritten)."""
        now = utc_now_iso()
        update: Dict[str, Any] = {
            "status": status,
            "completed_at": now,
            "last_heartbeat": now,
        }
        if entity_count is not None:
            update["entity_count"] = entity_count
        if error_message is not None:
            update["error_message"] = error_message
        if cursor is not None:
            update["cursor"] = cursor

        result = self.supabase.table("sync_job_tasks")\
            .update(update)\
            .eq("id", task_id)\
            .eq("status", "processing")\
            .execute()

        return bool(result.data)

    async def fail_task(self, task_id: str, error_message: str) -> bool:
        return await self.update_task_status(task_id, "failed", error_message=error_message)

    async def update_task_heartbeat(
        self,
        task_id: str,
        cursor: Optional[str] = None,
        entity_count: Optional[int] = None
    ):
        update: Dict[str, Any] = {"last_heartbeat": utc_now_iso()}
        if cursor is not None:
            update["cursor"] = cursor
        if entity_count is not None:
            update["entity_count"] = entity_count

        self.supabase.table("sync_job_tasks")\
            .update(update)\
            .eq("id", task_id)\
            .eq("status", "processing")\
            .execute()

    async def release_task(self, task_id: str, cursor: Optional[str] = None, entity_count: Optional[int] = None) -> bool:
        """
        Hand an interrupted task back to the queue (processing → pending).

        The cursor is kept so the next claimant resumes the listing.
        """
        update: Dict[str, Any] = {"status": "pending", "last_heartbeat": utc_now_iso()}
        if cursor is not None:
            update["cursor"] = cursor
        if entity_count is not None:
            update["entity_count"] = entity_count

        result = self.supabase.table("sync_job_tasks")\
            .update(update)\
            .eq("id", task_id)\
            .eq("status", "processing")\
            .execute()

        return bool(result.data)

    async def requeue_stale_tasks(self, stale_after_seconds: int) -> List[Dict[str, Any]]:
        """
        Requeue processing tasks whose worker stopped heartbeating.

        Conditional on both status and heartbeat age, so a live worker's
        fresh heartbeat wins over a concurrent requeue.
        """
        cutoff = (utc_now() - timedelta(seconds=stale_after_seconds)).isoformat()
        result = self.supabase.table("sync_job_tasks")\
            .update({"status": "pending"})\
            .eq("status", "processing")\
            .lt("last_heartbeat", cutoff)\
            .execute()

        requeued = result.data or []
        if requeued:
            logger.warning(f"⚠️  Requeued {len(requeued)} stale task(s): {[t['id'] for t in requeued]}")
        return requeued

    async def get_job_ids_with_tasks(self, status: str) -> Set[str]:
        """Ids of the jobs owning at least one task in this status."""
        result = self.supabase.table("sync_job_tasks").select("job_id").eq("status", status).execute()
        return {row["job_id"] for row in result.data or []}

    async def count_open_tasks(self, job_id: str) -> Dict[str, int]:
        """Task counts per status for one job."""
        result = self.supabase.table("sync_job_tasks").select("status").eq("job_id", job_id).execute()

        counts = {"pending": 0, "processing": 0, "completed": 0, "failed": 0}
        for row in result.data or []:
            counts[row["status"]] = counts.get(row["status"], 0) + 1
        return counts

    # ============================================================================
    # WEBHOOK LOGS
    # ============================================================================

    async def insert_webhook_log(self, log: Dict[str, Any]):
        """Best-effort audit insert. Failures are logged, never raised."""
        try:
            self.supabase.table("webhook_logs").insert(log).execute()
        except Exception as e:
            logger.error(f"❌ Failed to write webhook log: {e}")
