"""
Stripe Connector
Customers, products, prices, plans and subscriptions (with subscription items)

Webhooks: Stripe-Signature header, HMAC-SHA256 over "{timestamp}.{body}".
Sync: /v1 list endpoints, cursor = last object id (starting_after),
created[gte] for incremental runs and for the configured sync_from floor.
"""
import json
import logging
import time
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

CONNECTOR_NAME = "stripe"
CONNECTOR_VERSION = "1.0.0"
API_VERSION = "2025-02-24.acacia"
STRIPE_API_BASE = "https://api.stripe.com"
DEFAULT_PAGE_SIZE = 100
SIGNATURE_TOLERANCE_SECONDS = 300

RESOURCE_ENDPOINTS = {
    "customer": "/v1/customers",
    "product": "/v1/products",
    "price": "/v1/prices",
    "plan": "/v1/plans",
    "subscription": "/v1/subscriptions",
    "subscription_item": "/v1/subscription_items",
}

STRIPE_WEBHOOK_EVENTS = {
    # Customers
    "customer.created": ("customer", EventKind.CREATE),
    "customer.updated": ("customer", EventKind.UPDATE),
    "customer.deleted": ("customer", EventKind.DELETE),
    # Products
    "product.created": ("product", EventKind.CREATE),
    "product.updated": ("product", EventKind.UPDATE),
    "product.deleted": ("product", EventKind.DELETE),
    # Prices
    "price.created": ("price", EventKind.CREATE),
    "price.updated": ("price", EventKind.UPDATE),
    "price.deleted": ("price", EventKind.DELETE),
    # Plans (legacy)
    "plan.created": ("plan", EventKind.CREATE),
    "plan.updated": ("plan", EventKind.UPDATE),
    "plan.deleted": ("plan", EventKind.DELETE),
    # Subscriptions (a deleted subscription is canceled, so it's archived)
    "customer.subscription.created": ("subscription", EventKind.CREATE),
    "customer.subscription.updated": ("subscription", EventKind.UPDATE),
    "customer.subscription.paused": ("subscription", EventKind.UPDATE),
    "customer.subscription.resumed": ("subscription", EventKind.UPDATE),
    "customer.subscription.deleted": ("subscription", EventKind.ARCHIVE),
}


def _resource(resource_type: str, description: str, incremental: bool = True, parent: Optional[str] = None) -> SupportedResource:
    return SupportedResource(
        resource_type=resource_type,
        collection_key=build_collection_key(CONNECTOR_NAME, resource_type),
        description=description,
        supports_incremental=incremental,
        synced_with_parent=parent,
    )


def parse_signature_header(header: str) -> Dict[str, List[str]]:
    """'t=123,v1=abc,v1=def' -> {'t': ['123'], 'v1': ['abc', 'def']}"""
    parts: Dict[str, List[str]] = {}
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key and value:
            parts.setdefault(key, []).append(value)
    return parts


def detect_stripe_archived_at(resource_type: str, data: Dict[str, Any]) -> Optional[datetime]:
    """
    Stripe soft-delete rules.

    - product/price/plan: active == False
    - subscription: status == "canceled" (canceled_at when present)
    - customers are hard-deleted via customer.deleted, never archived
    """
    if resource_type in ("product", "price", "plan"):
        if data.get("active") is False:
            return datetime.now(timezone.utc)
        return None

    if resource_type == "subscription" and data.get("status") == "canceled":
        canceled_at = data.get("canceled_at")
        if isinstance(canceled_at, (int, float)):
            return from_unix(canceled_at)
        return datetime.now(timezone.utc)

    return None


class StripeConnector(Connector):
    """Stripe REST API connector (httpx, no SDK)."""

    metadata = ConnectorMetadata(
        name=CONNECTOR_NAME,
        display_name="Stripe",
        version=CONNECTOR_VERSION,
        api_version=API_VERSION,
        capabilities=Capability.WEBHOOK | Capability.SYNC | Capability.INCREMENTAL_SYNC | Capability.CONFIG_VALIDATION,
        supported_resources=[
            _resource("customer", "Stripe customers"),
            _resource("product", "Stripe products"),
            _resource("price", "Stripe prices"),
            _resource("plan", "Stripe plans (legacy)"),
            _resource("subscription", "Stripe subscriptions"),
            _resource("subscription_item", "Stripe subscription items", incremental=False, parent="subscription"),
        ],
    )

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, api_base: str = STRIPE_API_BASE):
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
        signature_header = headers.get("stripe-signature")
        if not signature_header:
            return WebhookVerificationResult(valid=False, reason="Missing Stripe-Signature header")

        try:
            secret = require_secret(app_config, "webhook_secret")
        except ValueError as e:
            logger.error(f"❌ [stripe] {e}")
            return WebhookVerificationResult(valid=False, reason=f"Webhook verification failed: {e}")

        parts = parse_signature_header(signature_header)
        timestamps = parts.get("t")
        candidates = parts.get("v1", [])
        if not timestamps or not candidates:
            return WebhookVerificationResult(valid=False, reason="Malformed Stripe-Signature header")

        try:
            timestamp = int(timestamps[0])
        except ValueError:
            return WebhookVerificationResult(valid=False, reason="Malformed Stripe-Signature timestamp")

        if abs(time.time() - timestamp) > SIGNATURE_TOLERANCE_SECONDS:
            return WebhookVerificationResult(valid=False, reason="Timestamp outside the tolerance zone")

        signed_payload = f"{timestamp}.".encode() + raw_body
        expected = compute_hmac_hex(secret, signed_payload, "sha256")
        if not any(signatures_match(candidate, expected) for candidate in candidates):
            logger.warning("⚠️  [stripe] Webhook signature mismatch")
            return WebhookVerificationResult(valid=False, reason="Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            return WebhookVerificationResult(valid=False, reason=f"Invalid JSON payload: {e}")

        return WebhookVerificationResult(valid=True, payload=payload)

    async def parse_webhook_event(self, payload: Dict[str, Any], app_config: AppConfig) -> ParsedWebhookEvent:
        event_name = payload.get("type", "")
        obj = (payload.get("data") or {}).get("object") or {}
        timestamp = from_unix(payload.get("created")) or datetime.now(timezone.utc)
        metadata = {"event_id": payload.get("id"), "api_version": payload.get("api_version")}

        mapping = STRIPE_WEBHOOK_EVENTS.get(event_name)
        if mapping is None:
            logger.warning(f"⚠️  [stripe] Unknown event type: {event_name}")
            return ParsedWebhookEvent(
                event_type=EventKind.UPDATE,
                original_event_type=event_name,
                resource_type=UNKNOWN_RESOURCE,
                external_id=str(obj.get("id", "")),
                data=obj,
                timestamp=timestamp,
                metadata=metadata,
            )

        resource_type, event_kind = mapping
        return ParsedWebhookEvent(
            event_type=event_kind,
            original_event_type=event_name,
            resource_type=resource_type,
            external_id=str(obj.get("id", "")),
            data=obj,
            timestamp=timestamp,
            metadata=metadata,
        )

    async def extract_entities(self, event: ParsedWebhookEvent, app_config: AppConfig) -> List[NormalizedEntity]:
        if event.resource_type == UNKNOWN_RESOURCE or event.event_type == EventKind.DELETE:
            return []

        entities = [self.normalize_entity(event.resource_type, event.data, app_config)]

        if event.resource_type == "subscription":
            items = event.data.get("items") or {}
            if items.get("has_more"):
                logger.warning(
                    f"⚠️  [stripe] Subscription {event.external_id} has more items than the webhook carries; "
                    f"the next full sync will pick them up"
                )
            for item in items.get("data") or []:
                entities.append(self.normalize_entity("subscription_item", item, app_config))

        return entities

    def normalize_entity(self, resource_type: str, data: Dict[str, Any], app_config: AppConfig) -> NormalizedEntity:
        resource = self.metadata.get_resource(resource_type)
        if resource is None:
            raise ValueError(f"Unknown Stripe resource type: {resource_type}")

        return NormalizedEntity(
            external_id=str(data["id"]),
            app_key=app_config.app_key,
            collection_key=resource.collection_key,
            raw_payload=data,
            api_version=API_VERSION,
            archived_at=detect_stripe_archived_at(resource_type, data),
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
        created_gte = int(since.timestamp()) if since else sync_from_ts
        page_size = options.page_size or DEFAULT_PAGE_SIZE

        existing_ids = await self.existing_ids_for_diff(
            app_config, resource.collection_key, options, since, created_after=sync_from_ts
        )

        children = []
        if resource_type == "subscription":
            item_resource = self.metadata.get_resource("subscription_item")
            children.append(ChildCollection(
                collection_key=item_resource.collection_key,
                get_children=lambda subscription: self._subscription_items(app_config, subscription),
                get_id=lambda item: str(item["id"]),
                normalize=lambda item: self.normalize_entity("subscription_item", item, app_config),
                existing_ids=await self.existing_ids_for_diff(
                    app_config, item_resource.collection_key, options, since, created_after=sync_from_ts
                ),
            ))

        async def list_page(cursor: Optional[str]) -> Page:
            params: Dict[str, Any] = {"limit": page_size}
            if cursor:
                params["starting_after"] = cursor
            if created_gte:
                params["created[gte]"] = created_gte
            if resource_type == "subscription":
                params["status"] = "all"
            return await self._list(app_config, RESOURCE_ENDPOINTS[resource_type], params)

        config = build_paginated_config(
            self, app_config, resource, options,
            list_page=list_page,
            normalize=lambda item: self.normalize_entity(resource_type, item, app_config),
            existing_ids=existing_ids,
            children=children,
        )
        return await paginated_sync(config)

    async def _subscription_items(self, app_config: AppConfig, subscription: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Embedded items plus any further pages Stripe didn't inline."""
        embedded = subscription.get("items") or {}
        items = list(embedded.get("data") or [])

        has_more = embedded.get("has_more", False)
        while has_more and items:
            page = await self._list(app_config, RESOURCE_ENDPOINTS["subscription_item"], {
                "subscription": subscription["id"],
                "limit": DEFAULT_PAGE_SIZE,
                "starting_after": items[-1]["id"],
            })
            items.extend(page.items)
            has_more = page.has_more

        if not items:
            logger.warning(f"⚠️  [stripe] Subscription {subscription.get('id')} has no items")
        return items

    async def _list(self, app_config: AppConfig, path: str, params: Dict[str, Any]) -> Page:
        try:
            body = await self._get(app_config, path, params)
        except httpx.HTTPStatusError as e:
            raise ProviderAPIError(CONNECTOR_NAME, e.response.status_code, e.response.text[:200]) from e

        data = body.get("data") or []
        has_more = bool(body.get("has_more"))
        next_cursor = str(data[-1]["id"]) if has_more and data else None
        return Page(items=data, has_more=has_more and next_cursor is not None, next_cursor=next_cursor)

    @with_provider_retry
    async def _get(self, app_config: AppConfig, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        api_key = require_secret(app_config, "api_key")
        response = await self.http_client.get(
            f"{self.api_base}{path}",
            params=params,
            headers={"Authorization": f"Bearer {api_key}", "Stripe-Version": API_VERSION},
            timeout=30.0,
        )
        response.raise_for_status()
        return response.json()

    # ============================================================================
    # CONFIG
    # ============================================================================

    def validate_config(self, app_config: AppConfig) -> ConfigValidationResult:
        valid_types = [r.resource_type for r in self.metadata.schedulable_resources()]
        result = validate_credentials(app_config, valid_types)
        api_key = app_config.config.get("api_key")
        if api_key and not api_key.startswith(("sk_", "rk_")):
            logger.warning(f"⚠️  [stripe] {app_config.app_key}: api_key does not look like a secret/restricted key")
        return result
