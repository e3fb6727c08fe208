#!/usr/bin/env python3
"""
Payment Reconciliation Worker - process entry point

Startup sequence:
1. Configure logging and validate configuration
2. Verify the database and ensure tables exist
3. Connect the cache (Redis, falling back to in-memory)
4. Build the service graph and start the status poller
5. Run until SIGINT/SIGTERM, then stop the poller and release resources
"""

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Optional

from config import Config
from database import create_tables, dispose_engine, get_session_factory, test_connection
from services.cache_service import CacheService
from services.credit_allocation_service import CreditAllocationService
from services.nowpayments_service import NOWPaymentsService
from services.payment_failure_service import PaymentFailureService
from services.payment_monitoring_service import PaymentMonitoringService
from services.payment_repository import PaymentRepository
from utils.db_advisory_locks import UserLockService
from utils.service_metrics import AllocationMetrics, MonitoringMetrics

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@dataclass
class WorkerServices:
    cache: CacheService
    repository: PaymentRepository
    allocation: CreditAllocationService
    monitoring: PaymentMonitoringService


def build_services(session_factory, cache: CacheService, gateway: Optional[NOWPaymentsService] = None) -> WorkerServices:
    """Wire the service graph; the supervisor owns both metrics objects"""
    repository = PaymentRepository(session_factory)
    allocation = CreditAllocationService(
        session_factory=session_factory,
        cache=cache,
        lock_service=UserLockService(),
        metrics=AllocationMetrics(),
        payment_repository=repository,
    )
    monitoring = PaymentMonitoringService(
        session_factory=session_factory,
        cache=cache,
        gateway=gateway or NOWPaymentsService(),
        allocation_service=allocation,
        failure_handler=PaymentFailureService(cache),
        metrics=MonitoringMetrics(),
        payment_repository=repository,
    )
    return WorkerServices(cache=cache, repository=repository, allocation=allocation, monitoring=monitoring)


class PaymentWorker:
    """Deterministic startup and graceful shutdown for the reconciliation worker"""

    def __init__(self):
        self.services: Optional[WorkerServices] = None
        self.shutdown_event = asyncio.Event()

    async def initialize_database(self) -> None:
        logger.info("🗄️ Initializing database...")
        if not await test_connection():
            raise RuntimeError("Database connection test failed")
        if not await create_tables():
            raise RuntimeError("Database table creation failed")

    async def start(self) -> None:
        problems = Config.validate()
        if not Config.DATABASE_URL:
            raise RuntimeError("; ".join(problems))

        await self.initialize_database()

        cache = CacheService()
        await cache.connect()

        self.services = build_services(get_session_factory(), cache)
        await self.services.monitoring.start_monitoring()
        logger.info("✅ Payment reconciliation worker started")

    async def stop(self) -> None:
        logger.info("🛑 Shutting down payment reconciliation worker...")
        if self.services is not None:
            await self.services.monitoring.stop_monitoring()
            logger.info(f"📊 Final monitoring metrics: {self.services.monitoring.get_metrics()}")
            logger.info(f"📊 Final allocation metrics: {self.services.allocation.get_metrics()}")
            await self.services.cache.close()
        await dispose_engine()
        logger.info("✅ Shutdown complete")

    def setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._request_shutdown, sig)
            except NotImplementedError:
                # Windows event loops have no signal handler support
                signal.signal(sig, lambda signum, frame: self._request_shutdown(signum))

    def _request_shutdown(self, signum) -> None:
        logger.info(f"🛑 Received signal {signum}, initiating shutdown...")
        self.shutdown_event.set()

    async def run(self) -> None:
        self.setup_signal_handlers()
        try:
            await self.start()
            await self.shutdown_event.wait()
        finally:
            await self.stop()


def main() -> int:
    try:
        asyncio.run(PaymentWorker().run())
        return 0
    except Exception as e:
        logger.critical(f"💥 Worker failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
