"""
Payment Monitor Scheduler

Two interval jobs drive the reconciliation worker:
1. Payment Status Poll - one monitoring cycle over the pending working set
2. Allocation Reconciliation - re-attempts credit for finished payments left uncredited

Both jobs are single-instance and coalesced, so a slow cycle is never
overlapped by the next one.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config

logger = logging.getLogger(__name__)

POLL_JOB_ID = "payment_status_poll"
RECONCILE_JOB_ID = "allocation_reconciliation"


class PaymentMonitorScheduler:
    """APScheduler wiring for a PaymentMonitoringService"""

    def __init__(self, monitoring_service, reconcile_interval: int = None):
        self.monitoring_service = monitoring_service
        self.reconcile_interval = reconcile_interval or Config.ALLOCATION_RECONCILE_INTERVAL

        self.scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults={
                'coalesce': True,  # Prevent job pileup
                'max_instances': 1,  # Single instance enforcement
                'misfire_grace_time': 60,
            },
            timezone='UTC',
        )

    def setup_jobs(self) -> None:
        interval = self.monitoring_service.monitoring_interval

        self.scheduler.add_job(
            self.monitoring_service.run_scheduled_cycle,
            trigger=IntervalTrigger(seconds=interval),
            id=POLL_JOB_ID,
            name="🔍 Payment Status Poll",
            next_run_time=datetime.now(timezone.utc),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info(f"✅ Payment status poll scheduled every {interval} seconds")

        self.scheduler.add_job(
            self.monitoring_service.run_scheduled_reconciliation,
            trigger=IntervalTrigger(seconds=self.reconcile_interval),
            id=RECONCILE_JOB_ID,
            name="🧮 Allocation Reconciliation",
            next_run_time=datetime.now(timezone.utc) + timedelta(seconds=15),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info(f"✅ Allocation reconciliation scheduled every {self.reconcile_interval} seconds")

    @property
    def is_running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        self.setup_jobs()
        self.scheduler.start()
        logger.info("🚀 Payment monitor scheduler started")

    def pause(self) -> None:
        """Stop firing new job runs; jobs already running are not touched"""
        if self.scheduler.running:
            self.scheduler.pause()
            logger.info("⏸️ Payment monitor scheduler paused")

    async def stop(self) -> None:
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        # AsyncIOScheduler completes shutdown on the event loop
        for _ in range(10):
            if not self.scheduler.running:
                break
            await asyncio.sleep(0)
        logger.info("📴 Payment monitor scheduler stopped")
