"""
Sync Job Scheduler
Creates sync jobs (one task per resource type) and settles finished jobs

Job:  pending → processing → completed | failed   (cancelled via cancel_job)
Task: pending → processing → completed | failed
"""
import logging
from typing import Any, Dict, List, Optional

from app.core.config import AppConfig
from app.services.sync.database import SyncStore
from app.services.sync.orchestration.resource_sync import SYNC_MODES
from app.services.sync.registry import ConnectorRegistry

logger = logging.getLogger(__name__)


class JobCreationError(ValueError):
    """Job request can't be scheduled (bad mode, unknown or no resources)."""


def resolve_resource_types(
    registry: ConnectorRegistry,
    app_config: AppConfig,
    resource_types: Optional[List[str]] = None
) -> List[str]:
    """
    Independently syncable resource types for a job.

    Child resources (synced with their parent) are dropped; they are written
    by the parent's task.

    Raises:
        JobCreationError: Unknown resource types, or nothing left to sync
    """
    connector = registry.get_connector_for_app(app_config)
    metadata = connector.metadata

    requested = resource_types or connector.default_resource_types(app_config)

    unknown = [t for t in requested if metadata.get_resource(t) is None]
    if unknown:
        raise JobCreationError(f"Unknown resource types for {metadata.name}: {', '.join(unknown)}")

    selected = []
    for resource_type in requested:
        resource = metadata.get_resource(resource_type)
        if resource.synced_with_parent:
            logger.info(f"Skipping {resource_type} (synced with {resource.synced_with_parent})")
            continue
        if resource_type not in selected:
            selected.append(resource_type)

    if not selected:
        raise JobCreationError("No resources to sync")

    return selected


async def create_sync_job(
    store: SyncStore,
    registry: ConnectorRegistry,
    app_config: AppConfig,
    mode: str = "full",
    resource_types: Optional[List[str]] = None
) -> Dict[str, Any]:
    """
    Create a pending job with one pending task per resource type.

    The job starts flagged needs_worker so the dispatcher picks it up even if
    the immediate worker enqueue fails.

    Returns:
        {"job_id", "status", "total_tasks", "resource_types"}
    """
    if mode not in SYNC_MODES:
        raise JobCreationError(f"Invalid mode: {mode} (expected one of {', '.join(SYNC_MODES)})")

    types = resolve_resource_types(registry, app_config, resource_types)

    job = await store.create_job(app_config.app_key, mode, types)
    tasks = await store.create_tasks(job["id"], types)

    logger.info(f"📋 Created {mode} sync job {job['id']} for {app_config.app_key}: {', '.join(types)}")

    return {
        "job_id": job["id"],
        "status": job.get("status", "pending"),
        "total_tasks": len(tasks) or len(types),
        "resource_types": types,
    }


async def check_job_completion(store: SyncStore, job_id: str) -> Optional[str]:
    """
    Settle a job once none of its tasks are pending or processing.

    Returns:
        The terminal status this call set, or None (job still running, or
        already terminal so nothing changed)
    """
    counts = await store.count_open_tasks(job_id)
    if counts["pending"] or counts["processing"]:
        return None

    status = "failed" if counts["failed"] else "completed"
    if not await store.finish_job(job_id, status):
        return None

    logger.info(f"{'✅' if status == 'completed' else '❌'} Job {job_id} {status} ({counts['completed']} completed, {counts['failed']} failed)")
    return status
