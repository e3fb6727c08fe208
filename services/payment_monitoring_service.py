"""Payment Monitoring Service - polls NOWPayments for non-terminal payments and reconciles the ledger"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, text, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from models import CreditTransaction, GatewayPaymentStatus, MonitoringStatus, PaymentProvider
from services.cache_service import CacheService
from services.credit_allocation_service import CreditAllocationService
from services.nowpayments_service import GatewayPaymentReport, NOWPaymentsService
from services.payment_failure_service import PaymentFailureHandler
from services.payment_repository import PaymentRepository
from utils.atomic_transactions import async_atomic_transaction, session_scope
from utils.datetime_helpers import get_naive_utc_now, to_iso
from utils.decimal_precision import MonetaryDecimal
from utils.payment_status import (
    NON_TERMINAL_STATUSES, is_failure, is_regression, is_terminal,
    is_valid_gateway_payment_id, normalize_status,
)
from utils.service_metrics import MonitoringMetrics

logger = logging.getLogger(__name__)


@dataclass
class PendingPayment:
    """Working-set entry; the ledger stays authoritative"""
    payment_id: str
    user_id: str
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"payment_id": self.payment_id, "user_id": self.user_id, "created_at": self.created_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["PendingPayment"]:
        if not isinstance(data, dict) or not data.get("payment_id"):
            return None
        return cls(
            payment_id=str(data["payment_id"]),
            user_id=str(data.get("user_id") or ""),
            created_at=data.get("created_at"),
        )


class PaymentMonitoringService:
    """Status poller: working set, retry/backoff, transition routing"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        cache: CacheService,
        gateway: NOWPaymentsService,
        allocation_service: CreditAllocationService,
        failure_handler: PaymentFailureHandler,
        metrics: MonitoringMetrics,
        payment_repository: PaymentRepository,
        batch_size: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        monitoring_interval: Optional[int] = None,
        window_days: Optional[int] = None,
        payment_id_pattern: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.gateway = gateway
        self.allocation_service = allocation_service
        self.failure_handler = failure_handler
        self.metrics = metrics
        self.payment_repository = payment_repository

        self.batch_size = max(1, batch_size or Config.PAYMENT_MONITORING_BATCH_SIZE)
        self.retry_attempts = max(1, retry_attempts or Config.PAYMENT_RETRY_ATTEMPTS)
        self.retry_delay = Config.PAYMENT_RETRY_DELAY if retry_delay is None else retry_delay
        self.monitoring_interval = monitoring_interval or Config.PAYMENT_MONITORING_INTERVAL
        self.window_days = window_days or Config.PAYMENT_MONITORING_WINDOW_DAYS
        self.payment_id_pattern = payment_id_pattern or Config.NOWPAYMENTS_PAYMENT_ID_PATTERN
        self.queue_key = Config.PENDING_QUEUE_CACHE_KEY

        self._scheduler = None
        self._cycle_lock = asyncio.Lock()
        self._job_tasks: Dict[str, asyncio.Task] = {}
        self._semaphore = asyncio.Semaphore(self.batch_size)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_monitoring(self) -> None:
        from jobs.payment_monitor_job import PaymentMonitorScheduler

        if self.is_monitoring_active():
            logger.warning("⚠️ PAYMENT_MONITOR: already running")
            return

        await self.rebuild_pending_queue()
        self._scheduler = PaymentMonitorScheduler(self)
        self._scheduler.start()
        logger.info(
            f"🚀 PAYMENT_MONITOR_STARTED: every {self.monitoring_interval}s, "
            f"batch size {self.batch_size}, {self.retry_attempts} attempts"
        )

    async def stop_monitoring(self) -> None:
        """Stop scheduling new work and let in-flight jobs run to completion"""
        if self._scheduler is None:
            return
        scheduler = self._scheduler
        self._scheduler = None
        scheduler.pause()

        in_flight = [task for task in self._job_tasks.values() if not task.done()]
        if in_flight:
            logger.info(f"⏳ PAYMENT_MONITOR_DRAINING: waiting for {len(in_flight)} in-flight job(s)")
            await asyncio.gather(*in_flight, return_exceptions=True)
        async with self._cycle_lock:
            pass

        await scheduler.stop()
        logger.info("🛑 PAYMENT_MONITOR_STOPPED")

    def is_monitoring_active(self) -> bool:
        return self._scheduler is not None and self._scheduler.is_running

    # ------------------------------------------------------------------
    # Polling cycle
    # ------------------------------------------------------------------

    async def run_scheduled_cycle(self) -> Dict[str, int]:
        """Scheduler entry point for the status poll"""
        return await self._run_job("poll", self.run_monitoring_cycle)

    async def run_scheduled_reconciliation(self) -> Dict[str, int]:
        """Scheduler entry point for allocation reconciliation"""
        return await self._run_job("reconcile", self.reconcile_pending_allocations)

    async def _run_job(self, name: str, job) -> Dict[str, int]:
        # Owned task: cancelling the scheduler job future leaves the cycle running
        task = self._job_tasks.get(name)
        if task is None or task.done():
            task = asyncio.ensure_future(job())
            self._job_tasks[name] = task
        return await asyncio.shield(task)

    async def run_monitoring_cycle(self) -> Dict[str, int]:
        """One pass over the working set, batch by batch"""
        results = {"checked": 0, "updated": 0, "failed": 0, "skipped": 0, "errors": 0}

        async with self._cycle_lock:
            start_time = time.monotonic()
            try:
                pending = await self.get_pending_payments()
                if not pending:
                    logger.debug("No pending payments to monitor")
                else:
                    logger.info(f"🔍 PAYMENT_MONITOR_CYCLE: {len(pending)} pending payments")
                    for i in range(0, len(pending), self.batch_size):
                        batch_results = await self._process_batch(pending[i:i + self.batch_size])
                        for key, value in batch_results.items():
                            results[key] += value
                    self.metrics.increment("total_monitored", len(pending))

            except Exception as e:
                self.metrics.increment("cycle_errors")
                results["errors"] += 1
                logger.error(f"❌ PAYMENT_MONITOR_CYCLE_ERROR: {e}", exc_info=True)

            finally:
                remaining = await self.cache.get_json(self.queue_key)
                self.metrics.record_cycle(
                    (time.monotonic() - start_time) * 1000,
                    len(remaining) if isinstance(remaining, list) else 0,
                )

        if results["checked"]:
            logger.info(
                f"✅ PAYMENT_MONITOR_CYCLE_DONE: checked={results['checked']} updated={results['updated']} "
                f"failed={results['failed']} skipped={results['skipped']} errors={results['errors']}"
            )
        return results

    async def _process_batch(self, batch: List[PendingPayment]) -> Dict[str, int]:
        results = {"checked": 0, "updated": 0, "failed": 0, "skipped": 0, "errors": 0}
        outcomes = await asyncio.gather(
            *(self._monitor_entry(entry) for entry in batch),
            return_exceptions=True,
        )
        for entry, outcome in zip(batch, outcomes):
            results["checked"] += 1
            if isinstance(outcome, Exception):
                results["errors"] += 1
                logger.error(f"❌ PAYMENT_MONITOR_ITEM_ERROR: {entry.payment_id} - {outcome}")
            elif outcome == "skipped":
                results["skipped"] += 1
            elif outcome == "updated":
                results["updated"] += 1
            else:
                results["failed"] += 1
        return results

    async def _monitor_entry(self, entry: PendingPayment) -> str:
        async with self._semaphore:
            if not is_valid_gateway_payment_id(entry.payment_id, self.payment_id_pattern):
                await self.skip_payment(entry.payment_id)
                return "skipped"
            return "updated" if await self.monitor_payment(entry.payment_id) else "failed"

    async def skip_payment(self, payment_id: str) -> None:
        """Permanently exclude an id the gateway cannot know from monitoring"""
        logger.warning(f"⏭️ PAYMENT_MONITOR_SKIP: {payment_id} is not a NOWPayments payment id")
        async with self.session_factory() as db:
            async with async_atomic_transaction(db):
                await db.execute(
                    update(CreditTransaction)
                    .where(CreditTransaction.payment_id == payment_id)
                    .values(monitoring_status=MonitoringStatus.SKIPPED.value, updated_at=get_naive_utc_now())
                )
        await self.remove_pending_payment(payment_id)
        self.metrics.increment("skipped_payments")

    async def monitor_payment(self, payment_id: str) -> bool:
        """
        Poll one payment with exponential backoff.

        Returns False once every attempt failed; the payment is reported to the
        failure handler and stays in the working set for the next cycle.
        """
        last_error: Optional[Exception] = None

        for attempt in range(1, self.retry_attempts + 1):
            try:
                await self._poll_payment_status(payment_id)
                return True
            except Exception as e:
                last_error = e
                if attempt < self.retry_attempts:
                    delay = self.retry_delay * (2 ** (attempt - 1))
                    logger.warning(
                        f"🔄 PAYMENT_MONITOR_RETRY: {payment_id} attempt {attempt} failed, "
                        f"retrying in {delay}s - {e}"
                    )
                    await asyncio.sleep(delay)

        logger.error(f"❌ PAYMENT_MONITOR_EXHAUSTED: {payment_id} after {self.retry_attempts} attempts - {last_error}")
        self.metrics.increment("failed_updates")
        await self._increment_retry_count(payment_id)
        await self._escalate(
            "handle_monitoring_failure", payment_id, str(last_error) if last_error else "Unknown error"
        )
        return False

    async def _poll_payment_status(self, payment_id: str) -> None:
        report = await self.gateway.get_payment_status(payment_id)
        await self.process_payment_update(report)
        self.metrics.increment("successful_updates")

    async def process_payment_update(self, report: GatewayPaymentReport) -> str:
        """
        Apply one gateway report to the ledger row and the unified record.

        Returns 'not_found', 'regression', 'unchanged' or 'updated'. Credit
        allocation and failure escalation run only after the status commit.
        """
        payment_id = report.payment_id
        new_status = report.payment_status

        async with self.session_factory() as db:
            async with async_atomic_transaction(db):
                result = await db.execute(
                    select(CreditTransaction).where(CreditTransaction.payment_id == payment_id).with_for_update()
                )
                row = result.scalar_one_or_none()
                if row is None:
                    logger.warning(f"⚠️ PAYMENT_MONITOR_UNKNOWN: {payment_id} not found in ledger")
                    return "not_found"

                previous_status = row.payment_status
                user_id = row.user_id
                reservation_metadata = dict(row.extra_data or {})

                if is_regression(previous_status, new_status):
                    outcome = "regression"
                elif previous_status == new_status:
                    outcome = "unchanged"
                else:
                    now = get_naive_utc_now()
                    row.payment_status = new_status
                    if report.payin_hash:
                        row.blockchain_hash = report.payin_hash
                    row.extra_data = {
                        **reservation_metadata,
                        "actuallyPaid": MonetaryDecimal.to_float(report.actually_paid),
                        "lastMonitoredAt": to_iso(now),
                        "lastProviderStatus": new_status,
                    }
                    row.last_monitored_at = now
                    row.updated_at = now

                    await self.payment_repository.update_status_by_provider_payment_id(
                        row.payment_provider or PaymentProvider.NOWPAYMENTS.value,
                        payment_id,
                        normalize_status(new_status),
                        new_status,
                        metadata_patch={
                            "actuallyPaid": MonetaryDecimal.to_float(report.actually_paid),
                            "payinHash": report.payin_hash,
                            "lastMonitoredAt": to_iso(now),
                        },
                        session=db,
                    )
                    outcome = "updated"

        if outcome == "regression":
            logger.warning(
                f"⏪ PAYMENT_STATUS_REGRESSION_IGNORED: {payment_id} stored {previous_status}, "
                f"gateway reported {new_status}"
            )
            self.metrics.increment("regressions_ignored")
            await self.remove_pending_payment(payment_id)
            return outcome

        if outcome == "unchanged":
            logger.debug(f"No status change for payment {payment_id}: {new_status}")
            if is_terminal(new_status):
                await self.remove_pending_payment(payment_id)
            return outcome

        logger.info(f"🔁 PAYMENT_STATUS_CHANGED: {payment_id} {previous_status} -> {new_status}")

        if new_status == GatewayPaymentStatus.FINISHED.value:
            await self._handle_payment_success(report, user_id, reservation_metadata)
        elif is_failure(new_status):
            logger.info(f"🧾 PAYMENT_FAILED: {payment_id} ({new_status})")
            await self._escalate("handle_payment_failure", payment_id, new_status, "Payment failed during monitoring")

        if is_terminal(new_status):
            await self.remove_pending_payment(payment_id)
        return outcome

    async def _handle_payment_success(
        self, report: GatewayPaymentReport, user_id: str, reservation_metadata: Dict[str, Any]
    ) -> None:
        requested_usd = self.requested_usd_for(reservation_metadata, report)
        result = await self.allocation_service.allocate_credits_for_payment(
            user_id, report.payment_id, requested_usd, report
        )
        if result.success:
            self.metrics.increment("credits_allocated")
            await self._escalate("resolve_failure", report.payment_id, "Credits allocated")
        else:
            self.metrics.increment("allocation_failures")
            logger.error(f"❌ PAYMENT_ALLOCATION_FAILED: {report.payment_id} - {result.error}")
            await self._escalate(
                "handle_monitoring_failure", report.payment_id, f"Credit allocation failed: {result.error}"
            )

    @staticmethod
    def requested_usd_for(reservation_metadata: Dict[str, Any], report: Optional[GatewayPaymentReport]) -> Any:
        for key in ("requestedUsd", "creditAmountUsd", "priceAmount"):
            amount = MonetaryDecimal.parse_positive(reservation_metadata.get(key))
            if amount is not None:
                return amount
        return report.price_amount if report is not None else None

    async def _escalate(self, method: str, *args: Any) -> None:
        """Failure-handler calls never break the poller"""
        try:
            await getattr(self.failure_handler, method)(*args)
        except Exception as e:
            logger.error(f"❌ PAYMENT_FAILURE_HANDLER_ERROR: {method}{args[:1]} - {e}")

    async def _increment_retry_count(self, payment_id: str) -> None:
        try:
            async with self.session_factory() as db:
                async with async_atomic_transaction(db):
                    await db.execute(
                        update(CreditTransaction)
                        .where(CreditTransaction.payment_id == payment_id)
                        .values(retry_count=CreditTransaction.retry_count + 1, last_monitored_at=get_naive_utc_now())
                    )
        except Exception as e:
            logger.error(f"❌ PAYMENT_MONITOR_RETRY_COUNT_ERROR: {payment_id} - {e}")

    # ------------------------------------------------------------------
    # Working set
    # ------------------------------------------------------------------

    async def get_pending_payments(self) -> List[PendingPayment]:
        cached = await self.cache.get_json(self.queue_key)
        if isinstance(cached, list):
            return [entry for entry in (PendingPayment.from_dict(item) for item in cached) if entry]
        return await self.rebuild_pending_queue()

    async def rebuild_pending_queue(self) -> List[PendingPayment]:
        """Reload the working set from the ledger"""
        cutoff = get_naive_utc_now() - timedelta(days=self.window_days)
        async with session_scope(self.session_factory) as db:
            result = await db.execute(
                select(CreditTransaction.payment_id, CreditTransaction.user_id, CreditTransaction.created_at)
                .where(
                    CreditTransaction.payment_id.is_not(None),
                    CreditTransaction.payment_status.in_(sorted(NON_TERMINAL_STATUSES)),
                    CreditTransaction.monitoring_status != MonitoringStatus.SKIPPED.value,
                    CreditTransaction.created_at > cutoff,
                )
                .order_by(CreditTransaction.created_at.desc())
            )
            rows = result.all()

        pending = [
            PendingPayment(payment_id=row.payment_id, user_id=row.user_id, created_at=to_iso(row.created_at))
            for row in rows
            if is_valid_gateway_payment_id(row.payment_id, self.payment_id_pattern)
        ]
        await self._store_queue(pending)
        logger.info(f"📋 PAYMENT_MONITOR_QUEUE_REBUILT: {len(pending)} pending payments")
        return pending

    async def _store_queue(self, pending: List[PendingPayment]) -> None:
        await self.cache.set_json(self.queue_key, [entry.to_dict() for entry in pending], Config.PENDING_QUEUE_TTL)
        self.metrics.set_active(len(pending))

    async def add_pending_payment(self, payment_id: str, user_id: str) -> bool:
        """Start monitoring a payment; returns False when it was already queued"""
        pending = await self.get_pending_payments()
        if any(entry.payment_id == payment_id for entry in pending):
            return False
        pending.append(PendingPayment(payment_id=payment_id, user_id=user_id, created_at=to_iso(get_naive_utc_now())))
        await self._store_queue(pending)
        logger.info(f"➕ PAYMENT_MONITOR_QUEUED: {payment_id} for user {user_id}")
        return True

    async def remove_pending_payment(self, payment_id: str) -> None:
        cached = await self.cache.get_json(self.queue_key)
        if not isinstance(cached, list):
            return
        pending = [entry for entry in (PendingPayment.from_dict(item) for item in cached) if entry]
        remaining = [entry for entry in pending if entry.payment_id != payment_id]
        if len(remaining) != len(pending):
            await self._store_queue(remaining)
            logger.info(f"➖ PAYMENT_MONITOR_DEQUEUED: {payment_id}")

    async def trigger_payment_check(self, payment_id: str) -> bool:
        """Out-of-band check of a single payment"""
        logger.info(f"👆 PAYMENT_MONITOR_MANUAL_CHECK: {payment_id}")
        if not is_valid_gateway_payment_id(payment_id, self.payment_id_pattern):
            await self.skip_payment(payment_id)
            return False
        try:
            return await self.monitor_payment(payment_id)
        except Exception as e:
            logger.error(f"❌ PAYMENT_MONITOR_MANUAL_CHECK_FAILED: {payment_id} - {e}")
            return False

    # ------------------------------------------------------------------
    # Allocation reconciliation
    # ------------------------------------------------------------------

    async def reconcile_pending_allocations(self) -> Dict[str, int]:
        """Retry allocation for finished payments whose credit never landed"""
        results = {"checked": 0, "allocated": 0, "failed": 0}
        pending = await self.allocation_service.get_pending_allocations()

        for item in pending:
            payment_id = item["payment_id"]
            if not is_valid_gateway_payment_id(payment_id, self.payment_id_pattern):
                continue
            results["checked"] += 1
            try:
                report = await self.gateway.get_payment_status(payment_id)
            except Exception as e:
                results["failed"] += 1
                logger.warning(f"⚠️ ALLOCATION_RECONCILE_POLL_FAILED: {payment_id} - {e}")
                continue
            if report.payment_status != GatewayPaymentStatus.FINISHED.value:
                results["failed"] += 1
                logger.warning(
                    f"⚠️ ALLOCATION_RECONCILE_STATUS_MISMATCH: {payment_id} ledger finished, "
                    f"gateway {report.payment_status}"
                )
                continue

            requested_usd = item.get("requested_usd") or report.price_amount
            result = await self.allocation_service.allocate_credits_for_payment(
                item["user_id"], payment_id, requested_usd, report
            )
            if result.success:
                results["allocated"] += 1
                await self._escalate("resolve_failure", payment_id, "Credits allocated by reconciliation")
            else:
                results["failed"] += 1

        if results["checked"]:
            logger.info(
                f"🧮 ALLOCATION_RECONCILE_DONE: checked={results['checked']} "
                f"allocated={results['allocated']} failed={results['failed']}"
            )
        return results

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        data = self.metrics.snapshot()
        data["is_running"] = self.is_monitoring_active()
        return data

    def reset_metrics(self) -> None:
        self.metrics.reset()
        logger.info("📊 PAYMENT_MONITOR_METRICS_RESET")

    async def health_check(self) -> Dict[str, Any]:
        cache_ok = await self.cache.ping()

        database_ok = True
        try:
            async with session_scope(self.session_factory) as db:
                await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.error(f"❌ PAYMENT_MONITOR_HEALTH: database check failed - {e}")
            database_ok = False

        gateway_ok = await self.gateway.health_check()

        return {
            "healthy": cache_ok and database_ok and gateway_ok,
            "cache": cache_ok,
            "database": database_ok,
            "gateway": gateway_ok,
            "is_running": self.is_monitoring_active(),
        }
