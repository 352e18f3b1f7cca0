"""
Dramatiq Worker Process
Consumes sync worker, dispatch and job retention messages from Redis

Usage:
    dramatiq worker -p 4 -t 4

Each run_sync_worker message drains one job within WORKER_MAX_RUNTIME_MS and
re-enqueues itself while the job is still flagged needs_worker.

Cron (enqueue only, the worker process does the work):
    - python -m app.services.jobs.run_worker_dispatch   (every minute)
    - python -m app.services.jobs.run_job_cleanup       (daily)

Environment: same as the API (SUPABASE_URL, REDIS_URL, APPS_JSON, ...)
"""
import logging

from app.core.config import settings
from app.core.sentry import init_sentry

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

init_sentry("worker")

# Importing the actors registers them on the broker the Dramatiq CLI loads
from app.services.jobs.broker import broker  # noqa: E402,F401
from app.services.jobs.tasks import (  # noqa: E402,F401
    cleanup_old_jobs_task,
    dispatch_pending_workers_task,
    run_sync_worker_task,
)

logger.info(f"📋 Worker ready: {', '.join(sorted(broker.get_declared_actors()))}")
