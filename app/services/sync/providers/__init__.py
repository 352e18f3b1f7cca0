"""
Provider Connectors
Built-in integrations registered by build_connector_registry()
"""
from app.services.sync.providers.intercom import IntercomConnector
from app.services.sync.providers.notion import NotionConnector
from app.services.sync.providers.stripe import StripeConnector

BUILTIN_CONNECTORS = {
    "stripe": StripeConnector,
    "intercom": IntercomConnector,
    "notion": NotionConnector,
}

__all__ = [
    "BUILTIN_CONNECTORS",
    "IntercomConnector",
    "NotionConnector",
    "StripeConnector",
]
