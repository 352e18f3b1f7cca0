"""
Data Sync System
Connector contract, registry, pagination and persistence for SaaS ingestion
"""
from app.services.sync.canonical import EventKind, NormalizedEntity, ParsedWebhookEvent, SyncResult
from app.services.sync.connectors import Capability, Connector, ConnectorNotFoundError, SyncOptions
from app.services.sync.database import SyncStore
from app.services.sync.registry import ConnectorRegistry, build_connector_registry

__all__ = [
    "Capability",
    "Connector",
    "ConnectorNotFoundError",
    "ConnectorRegistry",
    "EventKind",
    "NormalizedEntity",
    "ParsedWebhookEvent",
    "SyncOptions",
    "SyncResult",
    "SyncStore",
    "build_connector_registry",
]
