"""
Sync Jobs
Job scheduling, the worker loop and Dramatiq-based worker chaining
"""
from app.services.jobs.scheduler import JobCreationError, check_job_completion, create_sync_job
from app.services.jobs.worker import HeartbeatTimer, WorkerResult, run_worker

__all__ = [
    "HeartbeatTimer",
    "JobCreationError",
    "WorkerResult",
    "check_job_completion",
    "create_sync_job",
    "run_worker",
]
