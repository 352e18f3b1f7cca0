"""
Sync Schemas
Models for admin sync operations (inline syncs, jobs, job status)
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class SyncRequest(BaseModel):
    """
    Body of POST /sync.

    immediate=True runs the sync inline and returns a SyncResponse;
    otherwise a background job is created and its id returned.
    """
    app_key: str = Field(..., min_length=1, max_length=64)
    mode: str = "full"  # "full" or "incremental"
    resource_types: Optional[List[str]] = None
    immediate: bool = False


class SyncResponse(BaseModel):
    """
    Response for an inline (immediate) sync.
    Partial success: success=False with counts still reflecting applied work.
    """
    success: bool
    app_key: str
    mode: str
    resource_types: List[str]
    created: int
    updated: int
    deleted: int
    errors: int
    error_messages: List[str] = []
    next_cursor: Optional[str] = None
    has_more: bool = False
    duration_ms: Optional[int] = None


class JobCreatedResponse(BaseModel):
    """Response when a background sync job was created."""
    job_id: str
    status: str
    total_tasks: int
    resource_types: List[str] = []


class JobStatusResponse(BaseModel):
    """GET /sync/jobs/{job_id}: job row, optional task breakdown and progress."""
    job: Dict[str, Any]
    tasks: Optional[List[Dict[str, Any]]] = None
    progress_percentage: int = 0


class JobCancelResponse(BaseModel):
    job_id: str
    status: str
    cancelled: bool
