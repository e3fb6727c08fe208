"""
Scheduler wiring for the status poll and allocation reconciliation jobs
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from jobs.payment_monitor_job import POLL_JOB_ID, RECONCILE_JOB_ID, PaymentMonitorScheduler


@pytest.fixture
def fake_monitoring_service():
    service = MagicMock()
    service.monitoring_interval = 30
    service.run_scheduled_cycle = AsyncMock(return_value={})
    service.run_scheduled_reconciliation = AsyncMock(return_value={})
    return service


class TestPaymentMonitorScheduler:

    def test_setup_jobs_registers_both_jobs(self, fake_monitoring_service):
        scheduler = PaymentMonitorScheduler(fake_monitoring_service, reconcile_interval=120)

        scheduler.setup_jobs()

        poll_job = scheduler.scheduler.get_job(POLL_JOB_ID)
        reconcile_job = scheduler.scheduler.get_job(RECONCILE_JOB_ID)
        assert poll_job.func is fake_monitoring_service.run_scheduled_cycle
        assert reconcile_job.func is fake_monitoring_service.run_scheduled_reconciliation
        assert poll_job.trigger.interval.total_seconds() == 30
        assert reconcile_job.trigger.interval.total_seconds() == 120
        assert poll_job.max_instances == 1
        assert poll_job.coalesce is True

    @pytest.mark.asyncio
    async def test_start_pause_and_stop(self, fake_monitoring_service):
        scheduler = PaymentMonitorScheduler(fake_monitoring_service)

        scheduler.start()
        assert scheduler.is_running

        scheduler.pause()
        assert scheduler.is_running

        await scheduler.stop()
        assert not scheduler.is_running

        # Stopping twice is harmless
        await scheduler.stop()
