"""
Notion Connector
Data sources (with their property schema), pages and users

Webhooks: X-Notion-Signature header, HMAC-SHA256 hex (optional "sha256=" prefix).
Events often carry only an entity reference, so thin payloads are fetched
in full before normalizing.

Notion UUIDs are used directly as the entity id for data sources, pages and
users. Data source properties get a composite external id
"{data_source_id}:{property_id}" and a store-generated id.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import httpx

from app.core.circuit_breakers import with_provider_retry
from app.core.config import AppConfig
from app.core.security import compute_hmac_hex, signatures_match
from app.services.sync.canonical import (
    UNKNOWN_RESOURCE,
    EventKind,
    NormalizedEntity,
    ParsedWebhookEvent,
    SyncResult,
    WebhookVerificationResult,
    build_collection_key,
    parse_iso,
)
from app.services.sync.connectors import (
    Capability,
    ConfigValidationResult,
    Connector,
    ConnectorMetadata,
    ProviderAPIError,
    SupportedResource,
    SyncOptions,
    build_paginated_config,
    get_sync_from,
    require_secret,
    validate_credentials,
)
from app.services.sync.pagination import ChildCollection, Page, paginated_sync

logger = logging.getLogger(__name__)

CONNECTOR_NAME = "notion"
CONNECTOR_VERSION = "1.0.0"
API_VERSION = "2025-09-03"
NOTION_API_BASE = "https://api.notion.com"
DEFAULT_PAGE_SIZE = 100

# Page sync cursors span data sources: "{data_source_id}|{start_cursor}"
CURSOR_SEPARATOR = "|"

UNDELETE = "undelete"

NOTION_WEBHOOK_EVENTS = {
    # Data sources
    "data_source.created": ("data_source", EventKind.CREATE),
    "data_source.schema_updated": ("data_source", EventKind.UPDATE),
    "data_source.content_updated": ("data_source", EventKind.UPDATE),
    "data_source.deleted": ("data_source", EventKind.DELETE),
    "data_source.undeleted": ("data_source", UNDELETE),
    # Pages
    "page.created": ("page", EventKind.CREATE),
    "page.properties_updated": ("page", EventKind.UPDATE),
    "page.content_updated": ("page", EventKind.UPDATE),
    "page.deleted": ("page", EventKind.DELETE),
    "page.undeleted": ("page", UNDELETE),
}


def _resource(
    resource_type: str,
    description: str,
    incremental: bool = False,
    webhooks: bool = True,
    parent: Optional[str] = None
) -> SupportedResource:
    return SupportedResource(
        resource_type=resource_type,
        collection_key=build_collection_key(CONNECTOR_NAME, resource_type),
        description=description,
        supports_incremental=incremental,
        supports_webhooks=webhooks,
        synced_with_parent=parent,
    )


def detect_notion_archived_at(data: Dict[str, Any]) -> Optional[datetime]:
    """Archived or trashed objects are archived as of their last edit."""
    if data.get("archived") or data.get("in_trash"):
        return parse_iso(data.get("last_edited_time")) or datetime.now(timezone.utc)
    return None


def has_full_object(data: Dict[str, Any]) -> bool:
    return isinstance(data.get("id"), str) and isinstance(data.get("object"), str)


def data_source_properties(data_source: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Property schema of a data source as standalone records."""
    properties = []
    for name, schema in (data_source.get("properties") or {}).items():
        properties.append({
            "data_source_id": data_source["id"],
            "property_id": schema.get("id"),
            "name": name,
            "type": schema.get("type"),
            "config": schema,
        })
    return properties


def split_page_cursor(cursor: Optional[str]) -> tuple:
    if not cursor:
        return None, None
    data_source_id, _, start_cursor = cursor.partition(CURSOR_SEPARATOR)
    return data_source_id, start_cursor or None


class NotionConnector(Connector):
    """Notion API connector (2025-09-03 data source model)."""

    metadata = ConnectorMetadata(
        name=CONNECTOR_NAME,
        display_name="Notion",
        version=CONNECTOR_VERSION,
        api_version=API_VERSION,
        capabilities=Capability.WEBHOOK | Capability.SYNC | Capability.INCREMENTAL_SYNC | Capability.CONFIG_VALIDATION,
        supported_resources=[
            _resource("data_source", "Notion data sources (databases)"),
            _resource("data_source_property", "Data source property schema", parent="data_source"),
            _resource("page", "Notion pages", incremental=True),
            _resource("user", "Workspace users", webhooks=False),
        ],
    )

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, api_base: str = NOTION_API_BASE):
        super().__init__(http_client)
        self.api_base = api_base

    # ============================================================================
    # WEBHOOKS
    # ============================================================================

    async def verify_webhook(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        app_config: AppConfig
    ) -> WebhookVerificationResult:
        signature = headers.get("x-notion-signature")
        if not signature:
            return WebhookVerificationResult(valid=False, reason="Missing X-Notion-Signature header")

        try:
            secret = require_secret(app_config, "webhook_secret")
        except ValueError as e:
            logger.error(f"❌ [notion] {e}")
            return WebhookVerificationResult(valid=False, reason=f"Webhook verification failed: {e}")

        if signature.startswith("sha256="):
            signature = signature[len("sha256="):]

        expected = compute_hmac_hex(secret, raw_body, "sha256")
        if not signatures_match(signature, expected):
            logger.warning("⚠️  [notion] Webhook signature mismatch")
            return WebhookVerificationResult(valid=False, reason="Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            return WebhookVerificationResult(valid=False, reason=f"Invalid JSON payload: {e}")

        return WebhookVerificationResult(valid=True, payload=payload)

    async def parse_webhook_event(self, payload: Dict[str, Any], app_config: AppConfig) -> ParsedWebhookEvent:
        event_name = payload.get("type", "")
        event_data = payload.get("data") or {}
        timestamp = parse_iso(payload.get("timestamp")) or datetime.now(timezone.utc)
        metadata = {
            "workspace_id": payload.get("workspace_id"),
            "integration_id": payload.get("integration_id"),
            "event_id": payload.get("id") or payload.get("event_id"),
        }

        mapping = NOTION_WEBHOOK_EVENTS.get(event_name)
        if mapping is None:
            logger.warning(f"⚠️  [notion] Unknown event type: {event_name}")
            return ParsedWebhookEvent(
                event_type=EventKind.UPDATE,
                original_event_type=event_name,
                resource_type=UNKNOWN_RESOURCE,
                external_id="",
                data=event_data.get("object") or {},
                timestamp=timestamp,
                metadata=metadata,
            )

        resource_type, kind = mapping

        if kind == EventKind.DELETE:
            deleted = event_data.get("deleted_object") or {}
            external_id = deleted.get("id", "")
            data = deleted
        else:
            entity = payload.get("entity") or {}
            external_id = (
                entity.get("id")
                or payload.get("page_id")
                or payload.get("data_source_id")
                or ""
            )
            data = event_data.get("page") or event_data.get("data_source") or event_data.get("object") or event_data
            if not external_id:
                logger.warning(f"⚠️  [notion] No entity id in {event_name} payload")

        metadata["is_undelete"] = kind == UNDELETE
        return ParsedWebhookEvent(
            event_type=EventKind.UPDATE if kind == UNDELETE else kind,
            original_event_type=event_name,
            resource_type=resource_type,
            external_id=str(external_id),
            data=data,
            timestamp=timestamp,
            metadata=metadata,
        )

    async def extract_entities(self, event: ParsedWebhookEvent, app_config: AppConfig) -> List[NormalizedEntity]:
        if event.resource_type == UNKNOWN_RESOURCE or event.event_type == EventKind.DELETE:
            return []

        data = event.data
        if not has_full_object(data):
            if not event.external_id:
                return []
            logger.info(f"[notion] Fetching full {event.resource_type}: {event.external_id}")
            data = await self._fetch_object(app_config, event.resource_type, event.external_id)

        entities = [self.normalize_entity(event.resource_type, data, app_config)]
        if event.resource_type == "data_source":
            for prop in data_source_properties(data):
                entities.append(self.normalize_entity("data_source_property", prop, app_config))
        return entities

    def normalize_entity(self, resource_type: str, data: Dict[str, Any], app_config: AppConfig) -> NormalizedEntity:
        resource = self.metadata.get_resource(resource_type)
        if resource is None:
            raise ValueError(f"Unknown Notion resource type: {resource_type}")

        if resource_type == "data_source_property":
            return NormalizedEntity(
                external_id=f"{data['data_source_id']}:{data['property_id']}",
                app_key=app_config.app_key,
                collection_key=resource.collection_key,
                raw_payload=data,
                api_version=API_VERSION,
            )

        notion_id = str(data["id"])
        archived_at = detect_notion_archived_at(data) if resource_type in ("data_source", "page") else None
        return NormalizedEntity(
            id=notion_id,
            external_id=notion_id,
            app_key=app_config.app_key,
            collection_key=resource.collection_key,
            raw_payload=data,
            api_version=API_VERSION,
            archived_at=archived_at,
        )

    # ============================================================================
    # SYNC
    # ============================================================================

    async def sync_resource(
        self,
        app_config: AppConfig,
        resource_type: str,
        options: SyncOptions,
        since: Optional[datetime] = None
    ) -> SyncResult:
        resource = self.metadata.get_resource(resource_type)
        if resource is None:
            return SyncResult.failed(f"Unknown resource type: {resource_type}")
        if resource.synced_with_parent:
            return SyncResult.failed(f"{resource_type} is synced with {resource.synced_with_parent}")

        sync_from = get_sync_from(app_config)
        page_size = options.page_size or DEFAULT_PAGE_SIZE
        # Users have no created_time to filter on
        created_after = sync_from.isoformat() if sync_from and resource_type != "user" else None

        existing_ids = await self.existing_ids_for_diff(
            app_config, resource.collection_key, options, since,
            created_after=created_after, created_field="created_time"
        )

        children = []
        if resource_type == "data_source":
            prop_resource = self.metadata.get_resource("data_source_property")
            children.append(ChildCollection(
                collection_key=prop_resource.collection_key,
                get_children=self._data_source_properties,
                get_id=lambda prop: f"{prop['data_source_id']}:{prop['property_id']}",
                normalize=lambda prop: self.normalize_entity("data_source_property", prop, app_config),
                existing_ids=await self.existing_ids_for_diff(app_config, prop_resource.collection_key, options, since),
            ))

        if resource_type == "data_source":
            async def list_page(cursor: Optional[str]) -> Page:
                return await self._data_sources_page(app_config, cursor, page_size, None if since else sync_from)
        elif resource_type == "page":
            data_source_ids = await self._data_source_ids(app_config)

            async def list_page(cursor: Optional[str]) -> Page:
                return await self._pages_page(
                    app_config, data_source_ids, cursor, page_size, since, None if since else sync_from
                )
        else:
            async def list_page(cursor: Optional[str]) -> Page:
                body = await self._request(app_config, "GET", "/v1/users", params=self._cursor_params(cursor, page_size))
                return Page(items=body.get("results") or [], has_more=bool(body.get("has_more")), next_cursor=body.get("next_cursor"))

        config = build_paginated_config(
            self, app_config, resource, options,
            list_page=list_page,
            normalize=lambda item: self.normalize_entity(resource_type, item, app_config),
            existing_ids=existing_ids,
            children=children,
        )
        return await paginated_sync(config)

    @staticmethod
    def _cursor_params(cursor: Optional[str], page_size: int) -> Dict[str, Any]:
        params: Dict[str, Any] = {"page_size": page_size}
        if cursor:
            params["start_cursor"] = cursor
        return params

    @staticmethod
    def _created_on_or_after(item: Dict[str, Any], sync_from: Optional[datetime]) -> bool:
        if sync_from is None:
            return True
        created = parse_iso(item.get("created_time"))
        return created is None or created >= sync_from

    async def _search_data_sources(self, app_config: AppConfig, cursor: Optional[str], page_size: int) -> Dict[str, Any]:
        body = self._cursor_params(cursor, page_size)
        body["filter"] = {"value": "data_source", "property": "object"}
        return await self._request(app_config, "POST", "/v1/search", json_body=body)

    async def _data_sources_page(
        self,
        app_config: AppConfig,
        cursor: Optional[str],
        page_size: int,
        sync_from: Optional[datetime]
    ) -> Page:
        """Search results, expanded to full data sources so the property schema is present."""
        response = await self._search_data_sources(app_config, cursor, page_size)
        items = []
        for data_source in response.get("results") or []:
            if not self._created_on_or_after(data_source, sync_from):
                continue
            if "properties" not in data_source:
                data_source = await self._fetch_object(app_config, "data_source", data_source["id"])
            items.append(data_source)
        return Page(
            items=items,
            has_more=bool(response.get("has_more")),
            next_cursor=response.get("next_cursor"),
        )

    async def _data_source_properties(self, data_source: Dict[str, Any]) -> List[Dict[str, Any]]:
        return data_source_properties(data_source)

    async def _data_source_ids(self, app_config: AppConfig) -> List[str]:
        ids: List[str] = []
        cursor = None
        while True:
            response = await self._search_data_sources(app_config, cursor, DEFAULT_PAGE_SIZE)
            ids.extend(ds["id"] for ds in response.get("results") or [])
            if not response.get("has_more") or not response.get("next_cursor"):
                break
            cursor = response["next_cursor"]
        logger.info(f"[notion] Discovered {len(ids)} data sources for page sync")
        return ids

    async def _pages_page(
        self,
        app_config: AppConfig,
        data_source_ids: List[str],
        cursor: Optional[str],
        page_size: int,
        since: Optional[datetime],
        sync_from: Optional[datetime]
    ) -> Page:
        """
        One query page from one data source.

        The composite cursor walks the data sources in order, so a resumed run
        continues inside the data source it stopped in.
        """
        if not data_source_ids:
            return Page(items=[], has_more=False)

        data_source_id, start_cursor = split_page_cursor(cursor)
        if data_source_id not in data_source_ids:
            data_source_id, start_cursor = data_source_ids[0], None

        body = self._cursor_params(start_cursor, page_size)
        if since:
            body["filter"] = {
                "timestamp": "last_edited_time",
                "last_edited_time": {"on_or_after": since.isoformat()},
            }
            body["sorts"] = [{"timestamp": "last_edited_time", "direction": "descending"}]

        response = await self._request(app_config, "POST", f"/v1/data_sources/{data_source_id}/query", json_body=body)
        items = [page for page in response.get("results") or [] if self._created_on_or_after(page, sync_from)]

        if response.get("has_more") and response.get("next_cursor"):
            next_cursor = f"{data_source_id}{CURSOR_SEPARATOR}{response['next_cursor']}"
        else:
            index = data_source_ids.index(data_source_id)
            if index + 1 < len(data_source_ids):
                next_cursor = f"{data_source_ids[index + 1]}{CURSOR_SEPARATOR}"
            else:
                next_cursor = None

        return Page(items=items, has_more=next_cursor is not None, next_cursor=next_cursor)

    async def _fetch_object(self, app_config: AppConfig, resource_type: str, object_id: str) -> Dict[str, Any]:
        paths = {
            "data_source": f"/v1/data_sources/{object_id}",
            "page": f"/v1/pages/{object_id}",
            "user": f"/v1/users/{object_id}",
        }
        return await self._request(app_config, "GET", paths[resource_type])

    async def _request(
        self,
        app_config: AppConfig,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        try:
            return await self._send(app_config, method, path, params, json_body)
        except httpx.HTTPStatusError as e:
            raise ProviderAPIError(CONNECTOR_NAME, e.response.status_code, e.response.text[:200]) from e

    @with_provider_retry
    async def _send(
        self,
        app_config: AppConfig,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]],
        json_body: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        api_key = require_secret(app_config, "api_key")
        response = await self.http_client.request(
            method,
            f"{self.api_base}{path}",
            params=params,
            json=json_body,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Notion-Version": API_VERSION,
            },
            timeout=30.0,
        )
        response.raise_for_status()
        return response.json()

    # ============================================================================
    # CONFIG
    # ============================================================================

    def validate_config(self, app_config: AppConfig) -> ConfigValidationResult:
        valid_types = [r.resource_type for r in self.metadata.schedulable_resources()]
        return validate_credentials(app_config, valid_types)
