"""
Worker Schemas
Models for the POST /worker endpoint
"""
from typing import List, Optional

from pydantic import BaseModel, Field


class WorkerRequest(BaseModel):
    job_id: Optional[str] = None  # Only process this job's tasks
    max_tasks: Optional[int] = Field(default=None, ge=1)


class WorkerResponse(BaseModel):
    success: bool
    tasks_processed: int
    jobs_completed: List[str] = []
    duration_ms: int
    shutdown_reason: Optional[str] = None
