"""
CLI Entry Point for Sync Worker Dispatch
Called by cron every minute to spawn continuation workers
"""
import sys
import logging

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    """
    Enqueue a sync worker for every job flagged needs_worker.
    Called by cron: * * * * * (every minute)
    """
    from app.services.jobs.tasks import dispatch_pending_workers_task

    logger.info("🔗 Worker dispatch cron job started")

    try:
        dispatch_pending_workers_task.send()

        logger.info("✅ Worker dispatch enqueued")
        sys.exit(0)

    except Exception as e:
        logger.error(f"❌ Worker dispatch cron job failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
