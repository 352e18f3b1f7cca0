"""
Dramatiq Redis Broker Configuration
Queue for sync workers, worker dispatch and job cleanup
"""
import logging
import threading

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.middleware import (
    AgeLimit, Callbacks, Middleware, Pipelines,
    Retries, ShutdownNotifications
)

from app.core.config import settings

logger = logging.getLogger(__name__)

REDIS_URL = settings.redis_url


class WorkerShutdownSignal(Middleware):
    """
    Tells running sync workers that the Dramatiq worker is shutting down.

    run_worker checks the event between tasks and after every page: the task
    in flight is released with its cursor and its job flagged needs_worker.
    """

    def __init__(self):
        self.event = threading.Event()

    def before_worker_shutdown(self, broker, worker):
        logger.warning("⚠️  Dramatiq worker shutting down, stopping sync workers at next checkpoint")
        self.event.set()


shutdown_signal = WorkerShutdownSignal()

if not REDIS_URL:
    logger.warning("⚠️  REDIS_URL not set - background sync workers will not run")
    redis_broker = RedisBroker()
else:
    # Explicit middleware (TimeLimit excluded: the worker enforces its own runtime budget)
    redis_broker = RedisBroker(
        url=REDIS_URL,
        middleware=[
            AgeLimit(),
            Retries(max_retries=3),
            Callbacks(),
            Pipelines(),
            ShutdownNotifications(),
        ]
    )
    logger.info(f"✅ Redis broker initialized: {REDIS_URL[:20]}...")

redis_broker.add_middleware(shutdown_signal)

dramatiq.set_broker(redis_broker)
broker = redis_broker
