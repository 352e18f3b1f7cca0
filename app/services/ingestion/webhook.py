"""
Webhook Ingestion Pipeline
Verifies, parses and applies one inbound provider webhook

Per request:
1. Validate the app_key and resolve the tenant + connector
2. Verify the signature over the RAW body before anything parses it
3. Map the provider event onto create/update/delete/archive
4. delete → direct delete by (app, collection, external_id)
   otherwise → extract parent + child entities and batch upsert them
5. Build the webhook_logs row (written in the background by the route)

SECURITY:
- Unverified payloads are never parsed or logged
- 5xx bodies are generic; details go to the server log only
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from app.core.security import sanitize_headers
from app.core.validation import is_valid_app_key
from app.services.sync.canonical import UNKNOWN_RESOURCE, EventKind, NormalizedEntity, ParsedWebhookEvent, Timer
from app.services.sync.connectors import Connector, ConnectorNotFoundError
from app.services.sync.database import SyncStore
from app.services.sync.registry import ConnectorRegistry

logger = logging.getLogger(__name__)

INTERNAL_ERROR = "Internal server error"


@dataclass
class WebhookOutcome:
    """HTTP result of one webhook plus what the audit log needs."""
    status_code: int
    body: Dict[str, Any]
    error: Optional[str] = None
    app_key: Optional[str] = None
    # Verified payload only (None before/without verification)
    request_body: Optional[Dict[str, Any]] = None
    duration_ms: int = 0

    def to_log(self, method: str, path: str, headers: Mapping[str, str]) -> Dict[str, Any]:
        """Row for the webhook_logs table (signature headers redacted)."""
        return {
            "app_key": self.app_key,
            "request_method": method,
            "request_path": path,
            "request_headers": sanitize_headers(headers),
            "request_body": self.request_body,
            "response_status": self.status_code,
            "response_body": self.body,
            "error_message": self.error,
            "processing_duration_ms": self.duration_ms,
        }


@dataclass
class ApplyResult:
    action: str
    count: int = 0
    entities: List[NormalizedEntity] = field(default_factory=list)


class WebhookPipeline:
    """
    Webhook processing shared by every connector.

    Usage:
        pipeline = WebhookPipeline(store, registry)
        outcome = await pipeline.process("stripe_live", raw_body, request.headers)
    """

    def __init__(self, store: SyncStore, registry: ConnectorRegistry):
        self.store = store
        self.registry = registry

    async def process(self, app_key: str, raw_body: bytes, headers: Mapping[str, str]) -> WebhookOutcome:
        timer = Timer()
        outcome = await self._process(app_key, raw_body, {k.lower(): v for k, v in headers.items()})
        outcome.duration_ms = timer.elapsed_ms()
        return outcome

    async def _process(self, app_key: str, raw_body: bytes, headers: Dict[str, str]) -> WebhookOutcome:
        if not is_valid_app_key(app_key):
            return WebhookOutcome(400, {"error": "Invalid app_key format"}, error="Invalid app_key format")

        app_config = self.registry.get_app_config(app_key)
        if app_config is None:
            logger.warning(f"⚠️  Webhook for unknown app_key: {app_key}")
            return WebhookOutcome(404, {"error": "Unknown app_key"}, error="Unknown app_key", app_key=app_key)

        try:
            connector = self.registry.get_connector_for_app(app_config)
        except ConnectorNotFoundError as e:
            logger.error(f"❌ No connector for {app_key}: {e}")
            return WebhookOutcome(500, {"error": "Connector not available"}, error=str(e), app_key=app_key)

        # Signature first: nothing below touches an unverified payload
        verification = await connector.verify_webhook(raw_body, headers, app_config)
        if not verification.valid:
            reason = verification.reason or "Webhook verification failed"
            logger.warning(f"⚠️  [{app_key}] Webhook verification failed: {reason}")
            return WebhookOutcome(401, {"error": reason}, error=reason, app_key=app_key)

        payload = verification.payload if isinstance(verification.payload, dict) else None

        try:
            event = await connector.parse_webhook_event(verification.payload, app_config)
            logger.info(
                f"[{app_key}] Webhook event: {event.original_event_type} -> {event.event_type.value} "
                f"for {event.resource_type}:{event.external_id}"
            )

            if event.resource_type == UNKNOWN_RESOURCE:
                body = {
                    "success": True,
                    "action": "ignored",
                    "event_type": event.original_event_type,
                }
                return WebhookOutcome(200, body, app_key=app_key, request_body=payload)

            applied = await self._apply(connector, event, app_config)

        except Exception as e:
            logger.error(f"❌ [{app_key}] Error processing webhook: {e}", exc_info=True)
            return WebhookOutcome(500, {"error": INTERNAL_ERROR}, error=str(e), app_key=app_key, request_body=payload)

        logger.info(
            f"✅ [{app_key}] Webhook processed: {applied.action} {applied.count} entity(ies) "
            f"for {event.resource_type}:{event.external_id}"
        )
        body = {
            "success": True,
            "action": applied.action,
            "resource_type": event.resource_type,
            "external_id": event.external_id,
            "entity_count": applied.count,
        }
        return WebhookOutcome(200, body, app_key=app_key, request_body=payload)

    async def _apply(self, connector: Connector, event: ParsedWebhookEvent, app_config) -> ApplyResult:
        """
        Apply a parsed event to the store.

        Raises:
            ValueError: No entity could be extracted from a create/update/archive
        """
        if event.event_type == EventKind.DELETE:
            resource = connector.metadata.get_resource(event.resource_type)
            collection_key = resource.collection_key if resource else event.resource_type
            deleted = await self.store.delete_entity(app_config.app_key, collection_key, event.external_id)
            return ApplyResult(action=EventKind.DELETE.value, count=deleted)

        entities = await connector.extract_entities(event, app_config)
        if not entities:
            raise ValueError(f"No entity data extracted from {event.original_event_type}")

        if event.event_type == EventKind.ARCHIVE:
            for entity in entities:
                entity.archived_at = event.timestamp

        # Parent and children in one batch
        count = await self.store.upsert_entities(entities)
        return ApplyResult(action=event.event_type.value, count=count, entities=entities)
