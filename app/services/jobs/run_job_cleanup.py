"""
CLI Entry Point for Sync Job Cleanup
Called by cron every day at 03:00
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
    Delete completed/failed sync jobs past the retention window.
    Called by cron: 0 3 * * * (daily)
    """
    from app.core.config import settings
    from app.services.jobs.tasks import cleanup_old_jobs_task

    logger.info("🧹 Job cleanup cron job started")
    logger.info(f"   Retention: {settings.job_retention_days} days")

    try:
        cleanup_old_jobs_task.send(settings.job_retention_days)

        logger.info("✅ Job cleanup enqueued")
        sys.exit(0)

    except Exception as e:
        logger.error(f"❌ Job cleanup cron job failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
