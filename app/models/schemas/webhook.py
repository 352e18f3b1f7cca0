"""
Webhook Schemas
Response bodies returned to webhook callers
"""
from typing import Optional

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    """Successful webhook (status 200)."""
    success: bool = True
    action: str  # create, update, delete, archive or ignored
    resource_type: Optional[str] = None
    external_id: Optional[str] = None
    entity_count: int = 0
    event_type: Optional[str] = None  # Only set for ignored events


class WebhookErrorResponse(BaseModel):
    error: str
