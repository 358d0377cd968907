"""Scheduling of scans, by crontab expression or fixed interval.

Scheduled ticks never overlap: the APScheduler job is limited to one
instance, and a tick that finds a scan already running (e.g. a manual one)
is skipped. A scheduled scan that fails on a baseline version conflict is
retried from scratch, up to `conflict_retries` times.
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.interval import IntervalTrigger

from listingwatch.api.schemas import ScanRun, ScanStatus
from listingwatch.config import Settings, schedule_trigger
from listingwatch.errors import AlreadyRunning
from listingwatch.jobs.monitoring import MonitoringSystem

logger = logging.getLogger(__name__)

JOB_ID = "listing-scan"


class ScanScheduler:
    def __init__(self, monitor: MonitoringSystem, settings: Optional[Settings] = None):
        self.monitor = monitor
        self.settings = settings or Settings()
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def trigger(self) -> Optional[BaseTrigger]:
        if not self.running:
            return None
        job = self._scheduler.get_job(JOB_ID)
        return job.trigger if job else None

    def build_trigger(self) -> Optional[BaseTrigger]:
        """Cron expression if configured, else the interval; None when disabled."""
        if self.settings.schedule_cron:
            return schedule_trigger(self.settings.schedule_cron)
        if self.settings.schedule_minutes > 0:
            return IntervalTrigger(minutes=self.settings.schedule_minutes)
        return None

    def start(self):
        if self.running:
            return
        trigger = self.build_trigger()
        if trigger is None:
            logger.info("Scheduled scans disabled")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.run_once, trigger,
            id=JOB_ID, max_instances=1, coalesce=True,
        )
        self._scheduler.start()
        logger.info("Scheduler started with %s", trigger)

    def shutdown(self):
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
        self._scheduler = None

    def next_run_time(self) -> Optional[str]:
        if not self.running:
            return None
        job = self._scheduler.get_job(JOB_ID)
        if job is None or job.next_run_time is None:
            return None
        return job.next_run_time.isoformat()

    async def run_once(self) -> Optional[ScanRun]:
        """Run one scheduled scan. Returns None if a scan was already running."""
        attempts = self.settings.conflict_retries + 1
        run = None
        for attempt in range(1, attempts + 1):
            try:
                run = await self.monitor.run_scan(trigger="scheduled")
            except AlreadyRunning as e:
                logger.info("Scheduled scan skipped: %s", e)
                return None

            if run.status == ScanStatus.FAILED and run.failure_kind == "version_conflict":
                if attempt < attempts:
                    logger.warning(
                        "Scan %s hit a version conflict; retrying (%d/%d)",
                        run.scan_id, attempt, attempts - 1,
                    )
                    continue
                logger.error("Scan %s: version conflict persisted after %d retries",
                             run.scan_id, attempts - 1)
            return run
        return run
