"""
APScheduler Configuration

Background jobs for the order lifecycle:
- Delivery auto-confirmation after the configured window
- Automatic settlement of delivered, paid sub-orders (opt-in)

Jobs go through the same services as API calls, so every precondition and
the optimistic-concurrency check apply unchanged.
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from orderflow.config import settings

logger = logging.getLogger(__name__)

# Job stores
jobstores = {
    'default': MemoryJobStore()
}

# Executors
executors = {
    'default': AsyncIOExecutor(),
}

# Job defaults
job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 60,  # Allow 60 seconds grace time for misfires
}

# Create scheduler
scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=settings.SCHEDULER_TIMEZONE
)


async def run_job(job_name: str):
    """
    Wrapper called by APScheduler.

    Looks the job up in the registry and logs its outcome; a failing run is
    logged and retried on the next interval.
    """
    from orderflow.jobs.order_jobs import JOBS

    try:
        result = await JOBS[job_name]()
        logger.info(f"Job '{job_name}' completed: {result}")
    except Exception as e:
        logger.error(f"Job '{job_name}' failed: {e}", exc_info=True)


def start_scheduler():
    """Start the background job scheduler."""
    if not scheduler.running:
        # Confirm deliveries nobody disputed within the window
        scheduler.add_job(
            run_job,
            'interval',
            minutes=settings.AUTO_CONFIRM_INTERVAL_MINUTES,
            args=['auto_confirm_deliveries'],
            id='auto_confirm_deliveries',
            name='Auto-confirm Deliveries',
            replace_existing=True,
        )

        if settings.AUTO_SETTLEMENT_ENABLED:
            scheduler.add_job(
                run_job,
                'interval',
                minutes=settings.AUTO_SETTLEMENT_INTERVAL_MINUTES,
                args=['settle_delivered_orders'],
                id='settle_delivered_orders',
                name='Settle Delivered Orders',
                replace_existing=True,
            )

        scheduler.start()
        logger.info("Background job scheduler started")

        for job in scheduler.get_jobs():
            logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background job scheduler stopped")


def get_job_status():
    """Get status of all scheduled jobs."""
    jobs = scheduler.get_jobs()
    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run_time': str(job.next_run_time) if job.next_run_time else None,
            'trigger': str(job.trigger),
        }
        for job in jobs
    ]
