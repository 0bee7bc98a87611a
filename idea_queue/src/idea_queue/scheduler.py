"""
Scheduler module for automatic ingestion passes.

Uses APScheduler to run a pass at configured times.
"""

import asyncio
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from .config import get_settings
from .db import Database
from .ingest import IngestAbortedError, IngestionRunner
from .logging_conf import get_logger, setup_logging

logger = get_logger(__name__)

JOB_ID = "ingest_pass"


class IngestScheduler:
    """
    Scheduler for automatic ingestion passes.
    """

    def __init__(self, db: Optional[Database] = None):
        self.settings = get_settings()
        self.db = db
        self.scheduler = AsyncIOScheduler()
        self._running = False

        logger.info("scheduler_initialized")

    def _create_job(self) -> None:
        """Run at minute 0 of each configured UTC hour."""
        hours = self.settings.schedule_hours_list
        hour_spec = ",".join(str(h) for h in hours)

        self.scheduler.add_job(
            self._run_job,
            CronTrigger(hour=hour_spec, minute=0, timezone="UTC"),
            id=JOB_ID,
            name="Ingestion Pass",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        logger.info("job_scheduled", hours=hours)

    async def _run_job(self) -> None:
        """Execute a single pass."""
        logger.info("scheduled_pass_starting")

        try:
            report = await IngestionRunner(db=self.db).run_pass()
            logger.info(
                "scheduled_pass_completed",
                new_items=report.new_items,
                queued=report.queued,
                feeds_failed=report.feeds_failed,
            )
        except IngestAbortedError as e:
            logger.error("scheduled_pass_failed", run_id=e.run_id, error=str(e))

    def start(self) -> None:
        """Start the scheduler."""
        if self._running:
            logger.warning("scheduler_already_running")
            return

        self._create_job()
        self.scheduler.start()
        self._running = True

        logger.info("scheduler_started")

    def stop(self) -> None:
        """Stop the scheduler."""
        if not self._running:
            return

        self.scheduler.shutdown(wait=False)
        self._running = False

        logger.info("scheduler_stopped")

    def get_next_run(self) -> Optional[datetime]:
        """Get the next scheduled run time."""
        job = self.scheduler.get_job(JOB_ID)
        if job:
            return job.next_run_time
        return None


async def run_scheduler():
    """
    Run the scheduler indefinitely, as a worker process.
    """
    settings = get_settings()

    setup_logging(
        level=settings.log_level,
        json_output=settings.log_json,
    )

    scheduler = IngestScheduler()
    scheduler.start()

    try:
        while True:
            next_run = scheduler.get_next_run()
            if next_run:
                logger.info("scheduler_waiting", next_run=next_run.isoformat())
            await asyncio.sleep(3600)

    finally:
        logger.info("scheduler_shutting_down")
        scheduler.stop()


def run_scheduler_sync():
    """Synchronous wrapper for run_scheduler."""
    asyncio.run(run_scheduler())
