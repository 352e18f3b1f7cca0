"""
Pydantic Schemas
All request/response models for API endpoints
"""

# Health check schemas
from .health import HealthResponse

# Sync schemas
from .sync import JobCancelResponse, JobCreatedResponse, JobStatusResponse, SyncRequest, SyncResponse

# Webhook schemas
from .webhook import WebhookErrorResponse, WebhookResponse

# Worker schemas
from .worker import WorkerRequest, WorkerResponse

__all__ = [
    # Health
    "HealthResponse",
    # Sync
    "SyncRequest",
    "SyncResponse",
    "JobCreatedResponse",
    "JobStatusResponse",
    "JobCancelResponse",
    # Webhook
    "WebhookResponse",
    "WebhookErrorResponse",
    # Worker
    "WorkerRequest",
    "WorkerResponse",
]
