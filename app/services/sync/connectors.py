"""
Connector Capability Contract
What every provider integration (Stripe, Intercom, Notion, ...) implements

ARCHITECTURE:
- Capabilities are declared up-front in ConnectorMetadata (enum.Flag)
- ConnectorRegistry checks declarations against the class at registration
- Webhook + sync paths share normalize_entity() so both land identical rows
"""
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Flag, auto
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set

import httpx

from app.core.config import AppConfig
from app.services.sync.canonical import (
    NormalizedEntity,
    ParsedWebhookEvent,
    SyncResult,
    Timer,
    WebhookVerificationResult,
)

logger = logging.getLogger(__name__)


# ============================================================================
# ERRORS
# ============================================================================

class ConnectorNotFoundError(LookupError):
    """No connector registered under the requested name."""


class ConnectorCapabilityError(TypeError):
    """Declared capabilities don't match what the connector implements."""


class ConnectorConfigError(ValueError):
    """App config is unusable for its connector."""

    def __init__(self, message: str, errors: Optional[List["ConfigValidationError"]] = None):
        super().__init__(message)
        self.errors = errors or []


class ProviderAPIError(RuntimeError):
    """Non-2xx response from a provider API."""

    def __init__(self, provider: str, status_code: int, message: str):
        super().__init__(f"{provider} API error: {status_code} {message}")
        self.provider = provider
        self.status_code = status_code


# ============================================================================
# METADATA
# ============================================================================

class Capability(Flag):
    WEBHOOK = auto()
    SYNC = auto()
    INCREMENTAL_SYNC = auto()
    CONFIG_VALIDATION = auto()


REQUIRED_CAPABILITIES = Capability.WEBHOOK | Capability.SYNC


@dataclass(frozen=True)
class SupportedResource:
    resource_type: str
    collection_key: str
    description: str = ""
    supports_incremental: bool = False
    supports_webhooks: bool = True
    # Child resources are written by their parent's sync, never scheduled alone
    synced_with_parent: Optional[str] = None


@dataclass(frozen=True)
class ConnectorMetadata:
    name: str
    display_name: str
    version: str
    api_version: str
    capabilities: Capability
    supported_resources: List[SupportedResource] = field(default_factory=list)

    def get_resource(self, resource_type: str) -> Optional[SupportedResource]:
        for resource in self.supported_resources:
            if resource.resource_type == resource_type:
                return resource
        return None

    def schedulable_resources(self) -> List[SupportedResource]:
        return [r for r in self.supported_resources if not r.synced_with_parent]


@dataclass
class ConfigValidationError:
    field: str
    message: str
    suggestion: Optional[str] = None


@dataclass
class ConfigValidationResult:
    valid: bool
    errors: List[ConfigValidationError] = field(default_factory=list)


@dataclass
class SyncOptions:
    """
    Knobs for a single sync run.

    store is the SyncStore used for upserts, deletes and the existing-id
    snapshot; on_progress / should_stop are called once per page.
    """
    store: Any = None
    resource_types: Optional[List[str]] = None
    cursor: Optional[str] = None
    limit: Optional[int] = None
    page_size: Optional[int] = None
    dry_run: bool = False
    on_progress: Optional[Callable[[int, Optional[str]], Awaitable[None]]] = None
    should_stop: Optional[Callable[[], bool]] = None


# ============================================================================
# BASE CONNECTOR
# ============================================================================

class Connector:
    """
    Base class for provider connectors.

    Subclasses set `metadata` and override the webhook trio
    (verify_webhook, parse_webhook_event, extract_entities), normalize_entity
    and sync_resource. validate_config is optional.
    """

    metadata: ConnectorMetadata

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self._http_client = http_client

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(60.0),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            )
        return self._http_client

    async def aclose(self):
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    # ------------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------------

    async def verify_webhook(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        app_config: AppConfig
    ) -> WebhookVerificationResult:
        raise NotImplementedError

    async def parse_webhook_event(self, payload: Dict[str, Any], app_config: AppConfig) -> ParsedWebhookEvent:
        raise NotImplementedError

    async def extract_entity(self, event: ParsedWebhookEvent, app_config: AppConfig) -> Optional[NormalizedEntity]:
        entities = await self.extract_entities(event, app_config)
        return entities[0] if entities else None

    async def extract_entities(self, event: ParsedWebhookEvent, app_config: AppConfig) -> List[NormalizedEntity]:
        raise NotImplementedError

    def normalize_entity(self, resource_type: str, data: Dict[str, Any], app_config: AppConfig) -> NormalizedEntity:
        raise NotImplementedError

    # ------------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------------

    async def sync_resource(
        self,
        app_config: AppConfig,
        resource_type: str,
        options: SyncOptions,
        since: Optional[datetime] = None
    ) -> SyncResult:
        """Sync one resource type (since=None means full sync with deletion diff)."""
        raise NotImplementedError

    def default_resource_types(self, app_config: AppConfig) -> List[str]:
        """Resource types synced when none are requested (config sync_resources wins)."""
        configured = app_config.config.get("sync_resources")
        if configured:
            return list(configured)
        return [r.resource_type for r in self.metadata.schedulable_resources()]

    async def full_sync(self, app_config: AppConfig, options: SyncOptions) -> SyncResult:
        return await self._sync_many(app_config, options, since=None)

    async def incremental_sync(self, app_config: AppConfig, since: datetime, options: SyncOptions) -> SyncResult:
        return await self._sync_many(app_config, options, since=since)

    async def _sync_many(self, app_config: AppConfig, options: SyncOptions, since: Optional[datetime]) -> SyncResult:
        timer = Timer()
        result = SyncResult.empty()
        for resource_type in options.resource_types or self.default_resource_types(app_config):
            resource = self.metadata.get_resource(resource_type)
            if resource is None:
                result = result.merge(SyncResult.failed(f"Unknown resource type: {resource_type}"))
                continue
            resource_since = since if resource.supports_incremental else None
            result = result.merge(await self.sync_resource(app_config, resource_type, options, resource_since))
        result.duration_ms = timer.elapsed_ms()
        return result

    async def existing_ids_for_diff(
        self,
        app_config: AppConfig,
        collection_key: str,
        options: SyncOptions,
        since: Optional[datetime],
        created_after: Optional[Any] = None,
        created_field: str = "created"
    ) -> Optional[Set[str]]:
        """
        Snapshot of stored ids to diff against, or None when no diff may run.

        Incremental runs, resumed runs (cursor set) and limited runs never
        delete anything.
        """
        if since is not None or options.cursor or options.limit:
            return None
        if options.store is None:
            return None
        return await options.store.get_external_ids(
            app_config.app_key,
            collection_key,
            created_after=created_after,
            created_field=created_field,
        )

    # ------------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------------

    def validate_config(self, app_config: AppConfig) -> ConfigValidationResult:
        return ConfigValidationResult(valid=True)


# ============================================================================
# CREDENTIAL HELPERS
# ============================================================================

def resolve_secret(app_config: AppConfig, kind: str) -> Optional[str]:
    """
    Resolve a connector credential.

    Lookup order:
    1. config["{kind}_env"] names an environment variable
    2. config["{kind}"] direct value (not recommended for production)
    3. {CONNECTOR}_{KIND}_{APP_KEY} environment variable

    Args:
        app_config: Tenant configuration
        kind: "api_key" or "webhook_secret"
    """
    config = app_config.config

    env_name = config.get(f"{kind}_env")
    if env_name and os.getenv(env_name):
        return os.getenv(env_name)

    if config.get(kind):
        return config[kind]

    default_env = f"{app_config.connector}_{kind}_{app_config.app_key}".upper()
    return os.getenv(default_env)


def require_secret(app_config: AppConfig, kind: str) -> str:
    value = resolve_secret(app_config, kind)
    if not value:
        raise ConnectorConfigError(f"No {app_config.connector} {kind} found for app {app_config.app_key}")
    return value


def validate_credentials(
    app_config: AppConfig,
    valid_resource_types: List[str],
) -> ConfigValidationResult:
    """
    Shared config checks: api key present, webhook secret present, known
    sync_resources, parseable sync_from.
    """
    errors: List[ConfigValidationError] = []

    for kind, label in (("api_key", "API key"), ("webhook_secret", "webhook secret")):
        if not resolve_secret(app_config, kind):
            env_hint = app_config.config.get(f"{kind}_env") or f"{app_config.connector}_{kind}_{app_config.app_key}".upper()
            errors.append(ConfigValidationError(
                field=kind,
                message=f"No {app_config.connector} {label} configured",
                suggestion=f"Set {env_hint} environment variable or configure {kind}_env",
            ))

    for resource_type in app_config.config.get("sync_resources") or []:
        if resource_type not in valid_resource_types:
            errors.append(ConfigValidationError(
                field="sync_resources",
                message=f"Invalid resource type: {resource_type}",
                suggestion=f"Valid types: {', '.join(valid_resource_types)}",
            ))

    sync_from = app_config.config.get("sync_from")
    if sync_from is not None:
        try:
            datetime.fromisoformat(str(sync_from).replace("Z", "+00:00"))
        except ValueError:
            errors.append(ConfigValidationError(
                field="sync_from",
                message=f"Invalid sync_from date: {sync_from}",
                suggestion="Use ISO 8601 format, e.g. 2024-01-01T00:00:00Z",
            ))

    return ConfigValidationResult(valid=not errors, errors=errors)


def get_sync_from(app_config: AppConfig) -> Optional[datetime]:
    """Earliest creation time to sync: AppConfig.sync_from, then config["sync_from"]."""
    sync_from = app_config.sync_from
    raw = app_config.config.get("sync_from")
    if sync_from is None and raw:
        try:
            sync_from = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"⚠️  Invalid sync_from in {app_config.app_key} config: {raw}")
            return None

    if sync_from is not None and sync_from.tzinfo is None:
        # Naive timestamps are UTC
        sync_from = sync_from.replace(tzinfo=timezone.utc)
    return sync_from


# ============================================================================
# PAGINATION WIRING
# ============================================================================

def build_paginated_config(
    connector: Connector,
    app_config: AppConfig,
    resource: SupportedResource,
    options: SyncOptions,
    list_page,
    normalize,
    existing_ids: Optional[Set[str]],
    get_id=None,
    children=None
):
    """PaginatedSyncConfig wired to the store and the per-run options."""
    from app.services.sync.pagination import PaginatedSyncConfig

    if options.store is None:
        raise ValueError("SyncOptions.store is required for sync runs")

    return PaginatedSyncConfig(
        connector_name=connector.name,
        resource_type=resource.resource_type,
        collection_key=resource.collection_key,
        app_key=app_config.app_key,
        list_page=list_page,
        get_id=get_id or (lambda item: str(item["id"])),
        normalize=normalize,
        upsert_batch=options.store.upsert_entities,
        delete_entity=options.store.delete_entity,
        cursor=options.cursor,
        existing_ids=existing_ids,
        limit=options.limit,
        dry_run=options.dry_run,
        on_progress=options.on_progress,
        should_stop=options.should_stop,
        children=children or [],
    )
