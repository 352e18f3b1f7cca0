"""
Connector Registry
Maps connector names to factories and tenants to their app configs

Constructed once at startup (see app.core.dependencies) and passed to
handlers and workers. Connectors are instantiated lazily and cached.
"""
import logging
from typing import Callable, Dict, List, Optional

from app.core.config import AppConfig
from app.services.sync.connectors import (
    REQUIRED_CAPABILITIES,
    Capability,
    ConfigValidationError,
    ConfigValidationResult,
    Connector,
    ConnectorCapabilityError,
    ConnectorConfigError,
    ConnectorMetadata,
    ConnectorNotFoundError,
    SupportedResource,
)

logger = logging.getLogger(__name__)

ConnectorFactory = Callable[[], Connector]


def check_capabilities(connector_cls: type):
    """
    Verify a connector class implements what its metadata declares.

    Raises:
        ConnectorCapabilityError: On any mismatch
    """
    metadata: Optional[ConnectorMetadata] = getattr(connector_cls, "metadata", None)
    if metadata is None:
        raise ConnectorCapabilityError(f"{connector_cls.__name__} has no metadata")

    declared = metadata.capabilities
    missing = REQUIRED_CAPABILITIES & ~declared
    if missing:
        raise ConnectorCapabilityError(f"{metadata.name}: missing required capabilities {missing}")

    def overrides(method: str) -> bool:
        return getattr(connector_cls, method) is not getattr(Connector, method)

    if Capability.WEBHOOK in declared:
        for method in ("verify_webhook", "parse_webhook_event", "extract_entities", "normalize_entity"):
            if not overrides(method):
                raise ConnectorCapabilityError(f"{metadata.name}: WEBHOOK declared but {method} not implemented")

    if Capability.SYNC in declared and not overrides("sync_resource"):
        raise ConnectorCapabilityError(f"{metadata.name}: SYNC declared but sync_resource not implemented")

    incremental_resources = [r for r in metadata.supported_resources if r.supports_incremental]
    if Capability.INCREMENTAL_SYNC in declared and not incremental_resources:
        raise ConnectorCapabilityError(f"{metadata.name}: INCREMENTAL_SYNC declared but no resource supports it")
    if Capability.INCREMENTAL_SYNC not in declared and incremental_resources:
        raise ConnectorCapabilityError(
            f"{metadata.name}: resources support incremental sync but INCREMENTAL_SYNC is not declared"
        )

    if Capability.CONFIG_VALIDATION in declared and not overrides("validate_config"):
        raise ConnectorCapabilityError(f"{metadata.name}: CONFIG_VALIDATION declared but validate_config not implemented")


class ConnectorRegistry:
    """
    Explicit connector registry (no module-level singleton).

    Usage:
        registry = ConnectorRegistry(apps)
        registry.register("stripe", StripeConnector)
        connector = registry.get("stripe")
    """

    def __init__(self, apps: Optional[List[AppConfig]] = None):
        self._factories: Dict[str, ConnectorFactory] = {}
        self._instances: Dict[str, Connector] = {}
        self._apps: Dict[str, AppConfig] = {app.app_key: app for app in (apps or [])}

    # ------------------------------------------------------------------------
    # Connectors
    # ------------------------------------------------------------------------

    def register(self, name: str, factory: ConnectorFactory):
        """
        Register a connector factory.

        Re-registering a name replaces the factory and evicts only that
        cached instance.
        """
        if isinstance(factory, type):
            check_capabilities(factory)

        if name in self._factories:
            logger.warning(f"⚠️  Connector '{name}' already registered, overwriting")
            self._instances.pop(name, None)

        self._factories[name] = factory
        logger.debug(f"Registered connector: {name}")

    def get(self, name: str) -> Connector:
        """
        Get (and lazily create) a connector.

        Raises:
            ConnectorNotFoundError: If no factory is registered under name
        """
        if name in self._instances:
            return self._instances[name]

        factory = self._factories.get(name)
        if factory is None:
            raise ConnectorNotFoundError(f"Connector not found: {name}")

        connector = factory()
        if not isinstance(factory, type):
            check_capabilities(type(connector))

        self._instances[name] = connector
        return connector

    def has(self, name: str) -> bool:
        return name in self._factories

    def list_connectors(self) -> List[str]:
        return sorted(self._factories)

    def get_metadata(self, name: str) -> ConnectorMetadata:
        return self.get(name).metadata

    def get_resource(self, name: str, resource_type: str) -> Optional[SupportedResource]:
        return self.get_metadata(name).get_resource(resource_type)

    async def aclose(self):
        for connector in self._instances.values():
            await connector.aclose()
        self._instances.clear()

    # ------------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------------

    def get_app_config(self, app_key: str) -> Optional[AppConfig]:
        return self._apps.get(app_key)

    def list_apps(self) -> List[AppConfig]:
        return list(self._apps.values())

    def get_connector_for_app(self, app_config: AppConfig) -> Connector:
        return self.get(app_config.connector)

    def validate_connector_config(self, app_config: AppConfig) -> ConfigValidationResult:
        """
        Validate an app config against its connector.

        Raises:
            ConnectorConfigError: With the list of field errors when invalid
        """
        if not self.has(app_config.connector):
            error = ConfigValidationError(
                field="connector",
                message=f"Unknown connector: {app_config.connector}",
                suggestion=f"Available connectors: {', '.join(self.list_connectors())}",
            )
            raise ConnectorConfigError(error.message, [error])

        connector = self.get(app_config.connector)
        if Capability.CONFIG_VALIDATION not in connector.metadata.capabilities:
            return ConfigValidationResult(valid=True)

        result = connector.validate_config(app_config)
        if not result.valid:
            details = "; ".join(f"{e.field}: {e.message}" for e in result.errors)
            raise ConnectorConfigError(f"Invalid config for {app_config.app_key}: {details}", result.errors)

        return result


def build_connector_registry(apps: Optional[List[AppConfig]] = None) -> ConnectorRegistry:
    """Registry with the built-in connectors registered."""
    from app.services.sync.providers import BUILTIN_CONNECTORS

    registry = ConnectorRegistry(apps)
    for name, factory in BUILTIN_CONNECTORS.items():
        registry.register(name, factory)

    for app in registry.list_apps():
        try:
            registry.validate_connector_config(app)
        except ConnectorConfigError as e:
            # Sync-only or webhook-only deployments may lack one credential
            logger.warning(f"⚠️  {e}")

    logger.info(f"✅ Connector registry ready: {', '.join(registry.list_connectors())}")
    return registry
