"""
Paginated Sync
Generic cursor-paginated sync loop shared by every connector

Flow per resource:
1. Fetch pages strictly sequentially via list_page(cursor)
2. Normalize + batch upsert each page (parents and embedded children together)
3. Track every external id seen this run
4. Full runs only: delete stored ids that were not seen (deletion-by-diff)

Upsert failures are counted and the run continues; a listing failure ends the
run without the deletion diff (seen ids are incomplete at that point).
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from app.services.sync.canonical import NormalizedEntity, SyncResult, Timer

logger = logging.getLogger(__name__)


@dataclass
class Page:
    """One page of provider records."""
    items: List[Any]
    has_more: bool
    next_cursor: Optional[str] = None


@dataclass
class ChildCollection:
    """Child records embedded in (or fetched per) parent record."""
    collection_key: str
    get_children: Callable[[Any], Awaitable[List[Dict[str, Any]]]]
    get_id: Callable[[Dict[str, Any]], str]
    normalize: Callable[[Dict[str, Any]], NormalizedEntity]
    existing_ids: Optional[Set[str]] = None


@dataclass
class PaginatedSyncConfig:
    connector_name: str
    resource_type: str
    collection_key: str
    app_key: str
    list_page: Callable[[Optional[str]], Awaitable[Page]]
    get_id: Callable[[Any], str]
    normalize: Callable[[Any], NormalizedEntity]
    upsert_batch: Callable[[List[NormalizedEntity]], Awaitable[Any]]
    delete_entity: Callable[[str, str, str], Awaitable[int]]
    cursor: Optional[str] = None
    # None disables deletion detection (incremental, resumed or limited runs)
    existing_ids: Optional[Set[str]] = None
    limit: Optional[int] = None
    dry_run: bool = False
    on_progress: Optional[Callable[[int, Optional[str]], Awaitable[None]]] = None
    should_stop: Optional[Callable[[], bool]] = None
    children: List[ChildCollection] = field(default_factory=list)


async def paginated_sync(config: PaginatedSyncConfig) -> SyncResult:
    """
    Run the sequential page loop for one resource.

    Returns:
        SyncResult; success is False if any page or delete failed, while the
        counters keep whatever was applied before/after the failure.
    """
    tag = f"[{config.connector_name}:{config.resource_type}]"
    result = SyncResult.empty()
    timer = Timer()

    cursor = config.cursor
    seen_ids: Set[str] = set()
    seen_child_ids: Dict[str, Set[str]] = {child.collection_key: set() for child in config.children}
    processed = 0
    limit_reached = False

    if cursor:
        logger.info(f"{tag} Resuming from cursor {cursor} (deletion detection disabled)")

    try:
        while True:
            page = await config.list_page(cursor)

            batch: List[NormalizedEntity] = []
            for item in page.items:
                seen_ids.add(config.get_id(item))
                batch.append(config.normalize(item))

                for child in config.children:
                    for child_item in await child.get_children(item):
                        seen_child_ids[child.collection_key].add(child.get_id(child_item))
                        batch.append(child.normalize(child_item))

            if batch:
                if config.dry_run:
                    result.created += len(batch)
                else:
                    try:
                        await config.upsert_batch(batch)
                        result.created += len(batch)
                    except Exception as e:
                        result.add_error(f"Failed to upsert {config.resource_type} batch: {e}")
                        logger.error(f"❌ {tag} Upsert failed: {e}")

            processed += len(page.items)
            cursor = page.next_cursor if page.has_more else None
            result.has_more = page.has_more
            result.next_cursor = cursor

            if config.on_progress:
                await config.on_progress(processed, cursor)

            if not page.has_more:
                break

            if config.limit and len(seen_ids) >= config.limit:
                limit_reached = True
                logger.info(f"{tag} Reached limit of {config.limit} records")
                break

            if config.should_stop and config.should_stop():
                result.interrupted = True
                logger.warning(f"⚠️  {tag} Stopping after {processed} records, resumable at cursor {cursor}")
                break

        if config.existing_ids is not None and not (result.interrupted or limit_reached or config.cursor):
            await _delete_unseen(config, config.collection_key, config.existing_ids, seen_ids, result, tag)
            for child in config.children:
                if child.existing_ids is not None:
                    await _delete_unseen(
                        config, child.collection_key, child.existing_ids,
                        seen_child_ids[child.collection_key], result, tag
                    )

    except Exception as e:
        result.success = False
        result.add_error(str(e))
        logger.error(f"❌ {tag} Sync failed after {processed} records: {e}")

    if result.errors:
        result.success = False

    result.duration_ms = timer.elapsed_ms()
    logger.info(
        f"{'✅' if result.success else '⚠️ '} {tag} {processed} records, "
        f"{result.created} upserted, {result.deleted} deleted, {result.errors} errors ({result.duration_ms}ms)"
    )
    return result


async def _delete_unseen(
    config: PaginatedSyncConfig,
    collection_key: str,
    existing_ids: Set[str],
    seen_ids: Set[str],
    result: SyncResult,
    tag: str
):
    """Hard-delete stored ids the provider no longer lists."""
    stale_ids = sorted(existing_ids - seen_ids)
    if not stale_ids:
        return

    logger.info(f"{tag} {len(stale_ids)} {collection_key} record(s) missing upstream, deleting")

    for external_id in stale_ids:
        if config.dry_run:
            result.deleted += 1
            continue
        try:
            await config.delete_entity(config.app_key, collection_key, external_id)
            result.deleted += 1
        except Exception as e:
            result.add_error(f"Failed to delete {collection_key}/{external_id}: {e}")
            logger.error(f"❌ {tag} Delete failed for {external_id}: {e}")
