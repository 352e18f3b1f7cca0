"""
Canonical Entity Model
Shared record shapes produced by connectors and consumed by the store

Every provider payload is normalized into a NormalizedEntity keyed by
(app_key, collection_key, external_id). Supabase UPSERT on that key makes
both ingestion paths (webhooks + polling sync) idempotent.
"""
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class EventKind(str, Enum):
    """Canonical webhook event kinds."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    ARCHIVE = "archive"


UNKNOWN_RESOURCE = "unknown"


@dataclass
class NormalizedEntity:
    """Provider record in canonical form (transient, persisted via SyncStore)."""
    external_id: str
    app_key: str
    collection_key: str
    raw_payload: Dict[str, Any]
    api_version: Optional[str] = None
    archived_at: Optional[datetime] = None
    # Natural-key id (e.g. Notion UUIDs); None lets the store generate one
    id: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        """Row for the entities table."""
        row = {
            "external_id": self.external_id,
            "app_key": self.app_key,
            "collection_key": self.collection_key,
            "raw_payload": self.raw_payload,
            "api_version": self.api_version,
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
        }
        if self.id:
            row["id"] = self.id
        return row


@dataclass
class ParsedWebhookEvent:
    """Verified webhook payload mapped onto a canonical event kind."""
    event_type: EventKind
    original_event_type: str
    resource_type: str
    external_id: str
    data: Dict[str, Any]
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookVerificationResult:
    valid: bool
    payload: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None


@dataclass
class SyncResult:
    """
    Outcome of one sync run.

    Partial success is a normal outcome: success=False with created/deleted
    counts still reflecting the work that was applied.
    """
    success: bool = True
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: int = 0
    error_messages: List[str] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False
    duration_ms: Optional[int] = None
    # Pagination stopped early (shutdown or runtime budget); deletions were skipped
    interrupted: bool = False

    @classmethod
    def empty(cls) -> "SyncResult":
        return cls()

    @classmethod
    def failed(cls, message: str) -> "SyncResult":
        return cls(success=False, errors=1, error_messages=[message])

    def add_error(self, message: str):
        self.errors += 1
        self.error_messages.append(message)

    @property
    def entity_count(self) -> int:
        """Entities touched (upserted or deleted)."""
        return self.created + self.updated + self.deleted

    def merge(self, other: "SyncResult") -> "SyncResult":
        """Combine two results; cursor/has_more come from the later one."""
        durations = [d for d in (self.duration_ms, other.duration_ms) if d is not None]
        return SyncResult(
            success=self.success and other.success,
            created=self.created + other.created,
            updated=self.updated + other.updated,
            deleted=self.deleted + other.deleted,
            errors=self.errors + other.errors,
            error_messages=self.error_messages + other.error_messages,
            next_cursor=other.next_cursor,
            has_more=other.has_more,
            duration_ms=sum(durations) if durations else None,
            interrupted=self.interrupted or other.interrupted,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "errors": self.errors,
            "error_messages": self.error_messages,
            "next_cursor": self.next_cursor,
            "has_more": self.has_more,
            "duration_ms": self.duration_ms,
        }


# ============================================================================
# HELPERS
# ============================================================================

def build_collection_key(provider: str, resource_type: str) -> str:
    """
    Collection namespace for a provider resource.

    Examples:
        >>> build_collection_key("stripe", "customer")
        'stripe_customer'
    """
    return f"{provider}_{resource_type}"


def from_unix(seconds: Optional[float]) -> Optional[datetime]:
    """Unix seconds → aware UTC datetime (None passes through)."""
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


ARCHIVED_FLAGS = ("archived", "deleted", "is_archived", "is_deleted", "trashed", "is_trashed")
ARCHIVED_STATUSES = ("archived", "deleted", "trashed", "inactive", "cancelled")


def _to_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return from_unix(value)
    if isinstance(value, str) and value:
        return parse_iso(value)
    return None


def detect_archived_at(data: Dict[str, Any]) -> Optional[datetime]:
    """
    Generic soft-delete detection for providers without custom rules.

    Checks boolean archive/delete/trash flags (using a matching *_at
    timestamp when present, else now) and archived-like status/state values.
    """
    for flag in ARCHIVED_FLAGS:
        if data.get(flag) is True:
            for ts_field in ("archived_at", "deleted_at", "trashed_at", f"{flag}_at"):
                archived_at = _to_datetime(data.get(ts_field))
                if archived_at:
                    return archived_at
            return datetime.now(timezone.utc)

    status = data.get("status") or data.get("state")
    if isinstance(status, str) and status.lower() in ARCHIVED_STATUSES:
        return datetime.now(timezone.utc)

    return None


class Timer:
    """Millisecond stopwatch."""

    def __init__(self):
        self._start = time.monotonic()

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._start) * 1000)
