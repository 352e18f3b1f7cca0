"""
Unified Configuration
All environment variables and settings in one place

ARCHITECTURE:
- ONE Supabase project holds entities, sync state, jobs and tasks
- Tenants ("apps") are declared in APPS_JSON or a JSON file (APPS_CONFIG_PATH)
- Each app binds one provider connector to its credentials

SECURITY:
- All secrets loaded from environment variables
- Provider credentials resolved through *_env indirection (see connectors)
- Admin endpoints require ADMIN_API_KEY
"""
import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

APP_KEY_CONFIG_PATTERN = re.compile(r"^[a-z0-9_]+$")


class Settings(BaseSettings):
    """
    Unified application settings.
    Validates all environment variables at startup.
    """

    # ============================================================================
    # SERVER
    # ============================================================================

    environment: str = Field(default="production", description="Environment: development/staging/production")
    port: int = Field(default=8080, description="Server port")
    debug: bool = Field(default=False, description="Debug mode")

    # ============================================================================
    # DATABASE (Supabase PostgreSQL)
    # ============================================================================

    supabase_url: str = Field(default="", description="Supabase project URL")
    supabase_service_key: str = Field(default="", description="Supabase service key (backend uses this)")

    # Redis (Dramatiq job queue)
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL")

    # ============================================================================
    # TENANTS
    # ============================================================================

    apps_json: Optional[str] = Field(default=None, description="Inline JSON list of app configurations")
    apps_config_path: Optional[str] = Field(default=None, description="Path to a JSON file listing app configurations")

    # ============================================================================
    # API KEYS
    # ============================================================================

    admin_api_key: Optional[str] = Field(default=None, description="Bearer token for /sync and /worker endpoints")

    # ============================================================================
    # WORKER
    # ============================================================================

    worker_max_runtime_ms: int = Field(default=45_000, description="Wall-clock budget for one worker invocation")
    worker_heartbeat_interval_seconds: float = Field(default=5.0, description="Task heartbeat interval")
    worker_claim_retry_delay_seconds: float = Field(default=1.0, description="Pause after a failed claim query")
    worker_idle_delay_seconds: float = Field(default=0.1, description="Pause between processed tasks")
    stale_task_timeout_seconds: int = Field(default=120, description="Processing tasks without a heartbeat for this long are requeued")
    job_retention_days: int = Field(default=7, description="Completed/failed jobs older than this are deleted")

    # ============================================================================
    # INGRESS LIMITS
    # ============================================================================

    webhook_rate_limit: int = Field(default=100, description="Webhook requests per window per caller")
    sync_rate_limit: int = Field(default=10, description="Sync requests per window per caller")
    rate_limit_window_seconds: int = Field(default=60, description="Fixed rate limit window length")
    rate_limit_storage_uri: str = Field(default="memory://", description="limits storage backend (memory:// or redis://...)")
    max_request_size_bytes: int = Field(default=1024 * 1024, description="Largest accepted request body")

    # ============================================================================
    # WEBHOOK LOGGING
    # ============================================================================

    webhook_logging_enabled: bool = Field(default=False, description="Persist every webhook request to webhook_logs")

    # ============================================================================
    # PRODUCTION INFRASTRUCTURE
    # ============================================================================

    # Error tracking (Sentry)
    sentry_dsn: Optional[str] = Field(default=None, description="Sentry DSN for error tracking")

    # ============================================================================
    # CORS
    # ============================================================================

    cors_allowed_origins: str = Field(default="http://localhost:3000", description="Comma-separated list of allowed CORS origins")

    @model_validator(mode='after')
    def validate_settings(self):
        """
        Validate critical settings at startup.

        SECURITY CHECKS:
        - Warn if admin endpoints are unprotected
        - Warn if running in production without Sentry
        - Warn if debug mode enabled in production
        """
        if self.environment == "production":
            if self.debug:
                logger.warning("⚠️  DEBUG MODE ENABLED IN PRODUCTION! This is insecure.")

            if not self.sentry_dsn:
                logger.warning("⚠️  Sentry not configured in production. Error tracking disabled.")

        if not self.admin_api_key:
            logger.warning("⚠️  ADMIN_API_KEY not set. /sync and /worker will reject every request.")

        logger.info("=" * 80)
        logger.info("Sync Service Configuration Loaded")
        logger.info("=" * 80)
        logger.info(f"Environment: {self.environment}")
        logger.info(f"Debug: {self.debug}")
        logger.info(f"Supabase URL: {self.supabase_url or '❌ Not configured'}")
        logger.info(f"Redis: {'✅ Configured' if self.redis_url else '❌ Not configured'}")
        logger.info(f"Sentry: {'✅ Configured' if self.sentry_dsn else '❌ Not configured'}")
        logger.info(f"Worker budget: {self.worker_max_runtime_ms}ms (heartbeat {self.worker_heartbeat_interval_seconds}s)")
        logger.info(f"Webhook logging: {'✅ Enabled' if self.webhook_logging_enabled else '❌ Disabled'}")
        logger.info("=" * 80)

        return self

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


# ============================================================================
# APP (TENANT) CONFIGURATION
# ============================================================================

class AppConfig(BaseModel):
    """One configured provider instance (e.g. one Stripe account)."""
    app_key: str
    name: str
    connector: str
    config: Dict[str, Any] = Field(default_factory=dict)
    sync_from: Optional[datetime] = None


def validate_app_configs(raw_apps: Any) -> List[Dict[str, str]]:
    """
    Validate a raw list of app configurations.

    Args:
        raw_apps: Decoded JSON (expected: list of objects)

    Returns:
        List of {"path", "message"} errors (empty when valid)
    """
    errors: List[Dict[str, str]] = []

    if not isinstance(raw_apps, list):
        return [{"path": "apps", "message": "apps is required and must be an array"}]

    seen_keys = set()
    for index, app in enumerate(raw_apps):
        path = f"apps[{index}]"
        if not isinstance(app, dict):
            errors.append({"path": path, "message": "app entry must be an object"})
            continue

        app_key = app.get("app_key")
        if not app_key or not isinstance(app_key, str):
            errors.append({"path": f"{path}.app_key", "message": "app_key is required and must be a string"})
        elif not APP_KEY_CONFIG_PATTERN.match(app_key):
            errors.append({
                "path": f"{path}.app_key",
                "message": "app_key must contain only lowercase letters, numbers, and underscores",
            })
        elif app_key in seen_keys:
            errors.append({"path": f"{path}.app_key", "message": f"Duplicate app_key: {app_key}"})
        else:
            seen_keys.add(app_key)

        if not app.get("name") or not isinstance(app.get("name"), str):
            errors.append({"path": f"{path}.name", "message": "name is required and must be a string"})

        if not app.get("connector") or not isinstance(app.get("connector"), str):
            errors.append({"path": f"{path}.connector", "message": "connector is required and must be a string"})

        if app.get("config") is None:
            errors.append({"path": f"{path}.config", "message": "config is required"})

        if app.get("sync_from") is not None:
            try:
                TypeAdapter(datetime).validate_python(app["sync_from"])
            except ValidationError:
                errors.append({
                    "path": f"{path}.sync_from",
                    "message": "sync_from must be a valid ISO 8601 date string",
                })

    return errors


def load_app_configs(source: Optional[Settings] = None) -> List[AppConfig]:
    """
    Load tenant definitions from APPS_JSON or APPS_CONFIG_PATH.

    Raises:
        ValueError: If the configuration is malformed (all errors listed)
    """
    source = source or settings

    if source.apps_json:
        raw = json.loads(source.apps_json)
    elif source.apps_config_path:
        raw = json.loads(Path(source.apps_config_path).read_text(encoding="utf-8"))
    else:
        logger.warning("⚠️  No apps configured (set APPS_JSON or APPS_CONFIG_PATH)")
        return []

    # Accept either a bare list or {"apps": [...]}
    if isinstance(raw, dict):
        raw = raw.get("apps")

    errors = validate_app_configs(raw)
    if errors:
        details = "; ".join(f"{e['path']}: {e['message']}" for e in errors)
        raise ValueError(f"Invalid app configuration: {details}")

    apps = [AppConfig.model_validate(app) for app in raw]
    logger.info(f"✅ Loaded {len(apps)} app configuration(s): {', '.join(a.app_key for a in apps)}")
    return apps


# Global settings instance
settings = Settings()
