"""
Intercom Connector
Companies, contacts, admins, conversations and conversation parts

Webhooks: X-Hub-Signature header, "sha1=" + HMAC-SHA1 hex of the raw body.
Payload shape: {"topic": ..., "data": {"item": {...}}, "created_at": ...}
Sync: REST API 2.14, cursor = pages.next.starting_after. Conversations support
incremental sync through POST /conversations/search (updated_at > since).
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
    detect_archived_at,
    from_unix,
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

CONNECTOR_NAME = "intercom"
CONNECTOR_VERSION = "1.0.0"
API_VERSION = "2.14"
INTERCOM_API_BASE = "https://api.intercom.io"
DEFAULT_PAGE_SIZE = 50

# (path, key holding the records in the list response)
RESOURCE_ENDPOINTS = {
    "company": ("/companies", "data"),
    "contact": ("/contacts", "data"),
    "admin": ("/admins", "admins"),
    "conversation": ("/conversations", "conversations"),
}

INTERCOM_WEBHOOK_TOPICS = {
    # Companies
    "company.created": ("company", EventKind.CREATE),
    "company.updated": ("company", EventKind.UPDATE),
    # Contacts
    "contact.created": ("contact", EventKind.CREATE),
    "contact.updated": ("contact", EventKind.UPDATE),
    "contact.deleted": ("contact", EventKind.DELETE),
    "contact.user.created": ("contact", EventKind.CREATE),
    "contact.user.updated": ("contact", EventKind.UPDATE),
    "contact.lead.created": ("contact", EventKind.CREATE),
    "contact.lead.updated": ("contact", EventKind.UPDATE),
    "contact.lead.signed_up": ("contact", EventKind.UPDATE),
    # Legacy user topics
    "user.created": ("contact", EventKind.CREATE),
    "user.deleted": ("contact", EventKind.DELETE),
    "user.email.updated": ("contact", EventKind.UPDATE),
    "user.tag.created": ("contact", EventKind.UPDATE),
    "user.tag.deleted": ("contact", EventKind.UPDATE),
    "user.unsubscribed": ("contact", EventKind.UPDATE),
}

CONVERSATION_TOPIC_PREFIX = "conversation."


def _resource(resource_type: str, description: str, incremental: bool = False, parent: Optional[str] = None) -> SupportedResource:
    return SupportedResource(
        resource_type=resource_type,
        collection_key=build_collection_key(CONNECTOR_NAME, resource_type),
        description=description,
        supports_incremental=incremental,
        synced_with_parent=parent,
    )


def map_topic(topic: str) -> Optional[tuple]:
    """Webhook topic -> (resource_type, EventKind), None for unknown topics."""
    if topic in INTERCOM_WEBHOOK_TOPICS:
        return INTERCOM_WEBHOOK_TOPICS[topic]
    if topic.startswith(CONVERSATION_TOPIC_PREFIX):
        kind = EventKind.CREATE if topic == "conversation.created" else EventKind.UPDATE
        return "conversation", kind
    return None


def conversation_parts(conversation: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Parts embedded in a conversation, each tagged with its conversation_id."""
    container = conversation.get("conversation_parts") or {}
    parts = container.get("conversation_parts") or []
    return [{**part, "conversation_id": conversation.get("id")} for part in parts]


class IntercomConnector(Connector):
    """Intercom REST API connector."""

    metadata = ConnectorMetadata(
        name=CONNECTOR_NAME,
        display_name="Intercom",
        version=CONNECTOR_VERSION,
        api_version=API_VERSION,
        capabilities=Capability.WEBHOOK | Capability.SYNC | Capability.INCREMENTAL_SYNC | Capability.CONFIG_VALIDATION,
        supported_resources=[
            _resource("company", "Intercom companies"),
            _resource("contact", "Intercom contacts (users and leads)"),
            _resource("admin", "Intercom admins (teammates)"),
            _resource("conversation", "Intercom conversations", incremental=True),
            _resource("conversation_part", "Messages within a conversation", parent="conversation"),
        ],
    )

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, api_base: str = INTERCOM_API_BASE):
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
        signature = headers.get("x-hub-signature")
        if not signature:
            return WebhookVerificationResult(valid=False, reason="Missing X-Hub-Signature header")

        try:
            secret = require_secret(app_config, "webhook_secret")
        except ValueError as e:
            logger.error(f"❌ [intercom] {e}")
            return WebhookVerificationResult(valid=False, reason=f"Webhook verification failed: {e}")

        expected = "sha1=" + compute_hmac_hex(secret, raw_body, "sha1")
        if not signatures_match(signature, expected):
            logger.warning("⚠️  [intercom] Webhook signature mismatch")
            return WebhookVerificationResult(valid=False, reason="Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            return WebhookVerificationResult(valid=False, reason=f"Invalid JSON payload: {e}")

        return WebhookVerificationResult(valid=True, payload=payload)

    async def parse_webhook_event(self, payload: Dict[str, Any], app_config: AppConfig) -> ParsedWebhookEvent:
        topic = payload.get("topic", "")
        item = (payload.get("data") or {}).get("item") or {}
        timestamp = from_unix(payload.get("created_at")) or datetime.now(timezone.utc)
        metadata = {
            "notification_id": payload.get("id"),
            "app_id": payload.get("app_id"),
            "delivery_attempts": payload.get("delivery_attempts"),
        }

        mapping = map_topic(topic)
        if mapping is None:
            logger.warning(f"⚠️  [intercom] Unknown webhook topic: {topic}")
            resource_type, event_kind = UNKNOWN_RESOURCE, EventKind.UPDATE
        else:
            resource_type, event_kind = mapping

        return ParsedWebhookEvent(
            event_type=event_kind,
            original_event_type=topic,
            resource_type=resource_type,
            external_id=str(item.get("id", "")),
            data=item,
            timestamp=timestamp,
            metadata=metadata,
        )

    async def extract_entities(self, event: ParsedWebhookEvent, app_config: AppConfig) -> List[NormalizedEntity]:
        if event.resource_type == UNKNOWN_RESOURCE or event.event_type == EventKind.DELETE:
            return []

        entities = [self.normalize_entity(event.resource_type, event.data, app_config)]
        if event.resource_type == "conversation":
            for part in conversation_parts(event.data):
                entities.append(self.normalize_entity("conversation_part", part, app_config))
        return entities

    def normalize_entity(self, resource_type: str, data: Dict[str, Any], app_config: AppConfig) -> NormalizedEntity:
        resource = self.metadata.get_resource(resource_type)
        if resource is None:
            raise ValueError(f"Unknown Intercom resource type: {resource_type}")

        return NormalizedEntity(
            external_id=str(data["id"]),
            app_key=app_config.app_key,
            collection_key=resource.collection_key,
            raw_payload=data,
            api_version=API_VERSION,
            archived_at=detect_archived_at(data),
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
        sync_from_ts = int(sync_from.timestamp()) if sync_from else None
        page_size = options.page_size or DEFAULT_PAGE_SIZE

        existing_ids = await self.existing_ids_for_diff(
            app_config, resource.collection_key, options, since,
            created_after=sync_from_ts, created_field="created_at"
        )

        children = []
        if resource_type == "conversation":
            part_resource = self.metadata.get_resource("conversation_part")
            children.append(ChildCollection(
                collection_key=part_resource.collection_key,
                get_children=lambda conversation: self._conversation_parts(app_config, conversation),
                get_id=lambda part: str(part["id"]),
                normalize=lambda part: self.normalize_entity("conversation_part", part, app_config),
                existing_ids=await self.existing_ids_for_diff(
                    app_config, part_resource.collection_key, options, since,
                    created_after=sync_from_ts, created_field="created_at"
                ),
            ))

        if resource_type == "conversation" and since is not None:
            async def list_page(cursor: Optional[str]) -> Page:
                return await self._search_conversations(app_config, int(since.timestamp()), cursor, page_size)
        elif resource_type == "admin":
            async def list_page(cursor: Optional[str]) -> Page:
                body = await self._request(app_config, "GET", "/admins")
                return Page(items=body.get("admins") or [], has_more=False)
        else:
            path, data_key = RESOURCE_ENDPOINTS[resource_type]

            async def list_page(cursor: Optional[str]) -> Page:
                params: Dict[str, Any] = {"per_page": page_size}
                if cursor:
                    params["starting_after"] = cursor
                body = await self._request(app_config, "GET", path, params=params)
                return self._page(body, data_key, sync_from_ts)

        config = build_paginated_config(
            self, app_config, resource, options,
            list_page=list_page,
            normalize=lambda item: self.normalize_entity(resource_type, item, app_config),
            existing_ids=existing_ids,
            children=children,
        )
        return await paginated_sync(config)

    @staticmethod
    def _page(body: Dict[str, Any], data_key: str, created_after: Optional[int] = None) -> Page:
        items = body.get(data_key) or []
        if created_after:
            items = [item for item in items if (item.get("created_at") or 0) >= created_after]

        next_page = (body.get("pages") or {}).get("next") or {}
        next_cursor = next_page.get("starting_after") if isinstance(next_page, dict) else None
        return Page(items=items, has_more=bool(next_cursor), next_cursor=next_cursor)

    async def _search_conversations(
        self,
        app_config: AppConfig,
        updated_after: int,
        cursor: Optional[str],
        page_size: int
    ) -> Page:
        pagination: Dict[str, Any] = {"per_page": page_size}
        if cursor:
            pagination["starting_after"] = cursor
        body = await self._request(app_config, "POST", "/conversations/search", json_body={
            "query": {"field": "updated_at", "operator": ">", "value": updated_after},
            "pagination": pagination,
        })
        return self._page(body, "conversations")

    async def _conversation_parts(self, app_config: AppConfig, conversation: Dict[str, Any]) -> List[Dict[str, Any]]:
        """List responses omit parts, so fetch the full conversation when they're missing."""
        if conversation.get("conversation_parts") is None:
            conversation = await self._request(app_config, "GET", f"/conversations/{conversation['id']}")
        return conversation_parts(conversation)

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
                "Intercom-Version": API_VERSION,
                "Accept": "application/json",
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
