"""
Resource Sync Engine
Runs one connector resource through the sync protocol and records SyncState

Flow per resource:
1. Capture the start timestamp BEFORE any provider call
2. Incremental mode: since = SyncState.last_synced_at when the resource supports
   it and a state row exists, otherwise fall back to a full sync
3. connector.incremental_sync / full_sync paginates, upserts and (full syncs
   only) deletes by diff
4. Successful, uninterrupted runs advance SyncState to the captured start time

Using the pre-fetch timestamp re-reads a small overlap window next run instead
of missing records changed mid-run. Upserts are idempotent so the overlap is free.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from app.core.config import AppConfig
from app.services.sync.canonical import SyncResult, Timer, parse_iso
from app.services.sync.connectors import Capability, Connector, SyncOptions
from app.services.sync.database import SyncStore, utc_now
from app.services.sync.registry import ConnectorRegistry

logger = logging.getLogger(__name__)

SYNC_MODES = ("full", "incremental")


async def sync_collection(
    store: SyncStore,
    connector: Connector,
    app_config: AppConfig,
    resource_type: str,
    mode: str = "full",
    cursor: Optional[str] = None,
    on_progress: Optional[Callable[[int, Optional[str]], Awaitable[None]]] = None,
    should_stop: Optional[Callable[[], bool]] = None,
    limit: Optional[int] = None,
    dry_run: bool = False
) -> SyncResult:
    """
    Sync one resource type for one app.

    Args:
        store: SyncStore (upserts, deletes, sync state)
        connector: Connector for app_config.connector
        app_config: Tenant configuration
        resource_type: Connector resource type (e.g. "customer")
        mode: "full" or "incremental"
        cursor: Resume a previously interrupted listing (disables the deletion diff)
        on_progress: Called after every page with (records processed, cursor)
        should_stop: Checked after every page; True interrupts the listing

    Returns:
        SyncResult (partial success is reported, never raised)
    """
    tag = f"[{app_config.app_key}:{resource_type}]"
    resource = connector.metadata.get_resource(resource_type)
    if resource is None:
        return SyncResult.failed(f"Unknown resource type: {resource_type}")

    # Captured before the first provider call
    started_at = utc_now()

    since = None
    effective_mode = "full"
    if mode == "incremental":
        supports = resource.supports_incremental and Capability.INCREMENTAL_SYNC in connector.metadata.capabilities
        state = await store.get_sync_state(app_config.app_key, resource.collection_key) if supports else None
        since = parse_iso(state.get("last_synced_at")) if state else None

        if since is not None:
            effective_mode = "incremental"
        else:
            reason = "no previous sync state" if supports else "incremental sync not supported"
            logger.info(f"{tag} Falling back to full sync ({reason})")

    logger.info(f"🚀 {tag} Starting {effective_mode} sync{f' since {since.isoformat()}' if since else ''}")

    options = SyncOptions(
        store=store,
        resource_types=[resource_type],
        cursor=cursor,
        limit=limit,
        dry_run=dry_run,
        on_progress=on_progress,
        should_stop=should_stop,
    )
    if since is not None:
        result = await connector.incremental_sync(app_config, since, options)
    else:
        result = await connector.full_sync(app_config, options)

    if result.success and not result.interrupted and not cursor and not limit and not dry_run:
        await store.update_sync_state(
            app_config.app_key,
            resource.collection_key,
            last_synced_at=started_at,
            metadata={
                "mode": effective_mode,
                "created": result.created,
                "deleted": result.deleted,
                "duration_ms": result.duration_ms,
            },
        )
    elif result.interrupted:
        logger.info(f"{tag} Interrupted at cursor {result.next_cursor}, sync state unchanged")
    elif not result.success:
        logger.warning(f"⚠️  {tag} Sync finished with {result.errors} error(s), sync state unchanged")

    return result


async def sync_app(
    store: SyncStore,
    registry: ConnectorRegistry,
    app_config: AppConfig,
    mode: str = "full",
    resource_types: Optional[List[str]] = None
) -> SyncResult:
    """
    Inline sync of several resources (POST /sync with immediate=true).

    Resources run sequentially; one failing resource doesn't stop the others.
    """
    timer = Timer()
    connector = registry.get_connector_for_app(app_config)
    types = resource_types or connector.default_resource_types(app_config)

    result = SyncResult.empty()
    for resource_type in types:
        result = result.merge(await sync_collection(store, connector, app_config, resource_type, mode))

    result.duration_ms = timer.elapsed_ms()
    logger.info(
        f"{'✅' if result.success else '⚠️ '} [{app_config.app_key}] Inline {mode} sync: "
        f"{result.created} upserted, {result.deleted} deleted, {result.errors} errors ({result.duration_ms}ms)"
    )
    return result


async def process_task_sync(
    store: SyncStore,
    registry: ConnectorRegistry,
    job: Dict[str, Any],
    task: Dict[str, Any],
    on_progress: Optional[Callable[[int, Optional[str]], Awaitable[None]]] = None,
    should_stop: Optional[Callable[[], bool]] = None
) -> SyncResult:
    """
    Run the sync for one claimed job task.

    Raises:
        ConnectorNotFoundError / ValueError when the job's app or connector is gone
    """
    app_config = registry.get_app_config(job["app_key"])
    if app_config is None:
        raise ValueError(f"Unknown app: {job['app_key']}")

    connector = registry.get_connector_for_app(app_config)
    return await sync_collection(
        store,
        connector,
        app_config,
        task["resource_type"],
        mode=job.get("mode") or "full",
        cursor=task.get("cursor"),
        on_progress=on_progress,
        should_stop=should_stop,
    )
