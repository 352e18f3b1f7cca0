"""Root-level pytest fixtures for all tests.

Provides shared fixtures:
- Environment for Settings (set before any app import)
- In-memory Supabase fake + SyncStore
- Fake connector and registry with test tenants
- FastAPI TestClient wired through dependency overrides
"""

import os

ADMIN_TOKEN = "test-admin-token-0123456789abcdef"

os.environ.setdefault("ENVIRONMENT", "development")
os.environ["ADMIN_API_KEY"] = ADMIN_TOKEN
os.environ.pop("APPS_JSON", None)
os.environ.pop("APPS_CONFIG_PATH", None)

import pytest  # noqa: E402

from app.core.config import AppConfig, settings  # noqa: E402
from app.middleware.rate_limit import RateLimiter  # noqa: E402
from app.services.sync.database import SyncStore  # noqa: E402
from app.services.sync.providers import StripeConnector  # noqa: E402
from app.services.sync.registry import ConnectorRegistry  # noqa: E402
from tests.helpers import FakeConnector, FakeSupabase  # noqa: E402


# ============================================================================
# Store Fixtures
# ============================================================================


@pytest.fixture
def supabase() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def store(supabase: FakeSupabase) -> SyncStore:
    return SyncStore(supabase)


# ============================================================================
# Connector Fixtures
# ============================================================================


@pytest.fixture
def fake_app() -> AppConfig:
    return AppConfig(app_key="fake_app", name="Fake App", connector="fake", config={})


@pytest.fixture
def stripe_app() -> AppConfig:
    return AppConfig(
        app_key="stripe_test",
        name="Stripe Test",
        connector="stripe",
        config={"api_key": "sk_test_123", "webhook_secret": "whsec_test"},
    )


@pytest.fixture
def fake_connector() -> FakeConnector:
    return FakeConnector(records={
        "customer": [{"id": "c1"}, {"id": "c2"}, {"id": "c3"}],
        "product": [{"id": "p1", "name": "Widget"}],
    })


@pytest.fixture
def registry(fake_app, stripe_app, fake_connector) -> ConnectorRegistry:
    registry = ConnectorRegistry([fake_app, stripe_app])
    registry.register("fake", lambda: fake_connector)
    registry.register("stripe", StripeConnector)
    return registry


@pytest.fixture
def fast_worker(monkeypatch):
    """No pauses between worker iterations."""
    monkeypatch.setattr(settings, "worker_idle_delay_seconds", 0)
    monkeypatch.setattr(settings, "worker_claim_retry_delay_seconds", 0)


# ============================================================================
# API Fixtures
# ============================================================================


@pytest.fixture
def webhook_limiter() -> RateLimiter:
    return RateLimiter(100, 60)


@pytest.fixture
def sync_limiter() -> RateLimiter:
    return RateLimiter(10, 60)


@pytest.fixture
def admin_headers() -> dict:
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture
def client(monkeypatch, store, registry, webhook_limiter, sync_limiter, fast_worker):
    """TestClient with the global clients replaced by test doubles.

    Lifespan isn't entered, so nothing connects to Supabase or Redis.
    """
    from fastapi.testclient import TestClient

    from app.core import dependencies
    from main import app

    monkeypatch.setattr(settings, "admin_api_key", ADMIN_TOKEN)

    app.dependency_overrides[dependencies.get_store] = lambda: store
    app.dependency_overrides[dependencies.get_registry] = lambda: registry
    app.dependency_overrides[dependencies.get_webhook_limiter] = lambda: webhook_limiter
    app.dependency_overrides[dependencies.get_sync_limiter] = lambda: sync_limiter

    yield TestClient(app)

    app.dependency_overrides.clear()
