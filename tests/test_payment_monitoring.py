"""
Status poller tests: working set, skip rule, regression guard, retries,
batch isolation and hand-off to the allocation engine.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from config import Config
from services.nowpayments_service import NOWPaymentsAPIError
from services.payment_repository import PaymentCreate
from utils.datetime_helpers import get_naive_utc_now


async def _queued_ids(cache):
    return [item["payment_id"] for item in (await cache.get_json(Config.PENDING_QUEUE_CACHE_KEY) or [])]


class TestPendingQueue:
    """Working-set rebuild and maintenance"""

    @pytest.mark.asyncio
    async def test_rebuild_selects_recent_non_terminal_numeric_ids(
        self, monitoring_service, create_user, create_reservation, cache
    ):
        user_id = await create_user()
        await create_reservation(user_id, "1001", payment_status="waiting")
        await create_reservation(user_id, "1002", payment_status="partially_paid")
        await create_reservation(user_id, "1003", payment_status="finished")
        await create_reservation(user_id, "1004", payment_status="pending",
                                 created_at=get_naive_utc_now() - timedelta(days=8))
        await create_reservation(user_id, "1005", payment_status="pending", monitoring_status="skipped")
        await create_reservation(user_id, "cs_test_abc", payment_status="pending")

        pending = await monitoring_service.rebuild_pending_queue()

        assert sorted(entry.payment_id for entry in pending) == ["1001", "1002"]
        assert sorted(await _queued_ids(cache)) == ["1001", "1002"]
        assert monitoring_service.metrics.active_monitoring == 2

    @pytest.mark.asyncio
    async def test_cached_queue_is_used_without_database(self, monitoring_service, cache):
        await cache.set_json(Config.PENDING_QUEUE_CACHE_KEY, [{"payment_id": "42", "user_id": "u1"}], 60)

        pending = await monitoring_service.get_pending_payments()

        assert [entry.payment_id for entry in pending] == ["42"]

    @pytest.mark.asyncio
    async def test_add_and_remove_pending_payment(self, monitoring_service, cache):
        assert await monitoring_service.add_pending_payment("2001", "user-1") is True
        assert await monitoring_service.add_pending_payment("2001", "user-1") is False
        await monitoring_service.add_pending_payment("2002", "user-2")

        await monitoring_service.remove_pending_payment("2001")

        assert await _queued_ids(cache) == ["2002"]


class TestStatusUpdates:
    """Applying gateway reports to the ledger"""

    @pytest.mark.asyncio
    async def test_fifty_dollar_payment_is_credited_and_dequeued(
        self, monitoring_service, gateway, failure_handler, create_user, create_reservation,
        repository, load_row, load_payment, report_factory, cache,
    ):
        user_id = await create_user()
        await create_reservation(user_id, "3001", requested_usd=50)
        await repository.create(PaymentCreate(
            user_id=user_id, provider="nowpayments", purpose="credit_topup",
            amount=Decimal("0.001"), currency="btc", provider_payment_id="3001",
        ))
        await monitoring_service.add_pending_payment("3001", user_id)
        gateway.get_payment_status.return_value = report_factory(
            "3001", outcome_amount=50.0, outcome_currency="usd"
        )

        results = await monitoring_service.run_monitoring_cycle()

        assert results["updated"] == 1
        row = await load_row("3001")
        assert row.amount == Decimal("50")
        assert row.balance_after == Decimal("50")
        assert row.extra_data["paymentCompleted"] is True
        payment = await load_payment("3001")
        assert payment.status == "succeeded"
        assert payment.provider_status == "finished"
        assert await _queued_ids(cache) == []
        failure_handler.resolve_failure.assert_awaited_once_with("3001", "Credits allocated")
        assert monitoring_service.metrics.credits_allocated == 1

    @pytest.mark.asyncio
    async def test_regression_after_finished_is_ignored(
        self, monitoring_service, allocation_service, create_user, create_reservation, load_row, report_factory, cache
    ):
        user_id = await create_user()
        await create_reservation(user_id, "3002")
        await monitoring_service.process_payment_update(report_factory("3002", status="finished"))
        await monitoring_service.add_pending_payment("3002", user_id)
        before = await load_row("3002")

        outcome = await monitoring_service.process_payment_update(report_factory("3002", status="confirming"))

        after = await load_row("3002")
        assert outcome == "regression"
        assert after.payment_status == "finished"
        assert after.amount == before.amount
        assert after.updated_at == before.updated_at
        assert await _queued_ids(cache) == []
        assert monitoring_service.metrics.regressions_ignored == 1

    @pytest.mark.asyncio
    async def test_intermediate_status_updates_row_and_unified_record(
        self, monitoring_service, create_user, create_reservation, repository, load_row, load_payment, report_factory
    ):
        user_id = await create_user()
        await create_reservation(user_id, "3003")
        await repository.create(PaymentCreate(
            user_id=user_id, provider="nowpayments", purpose="credit_topup",
            amount=Decimal("0.001"), currency="btc", provider_payment_id="3003",
        ))

        outcome = await monitoring_service.process_payment_update(
            report_factory("3003", status="confirming", actually_paid="0.0005")
        )

        assert outcome == "updated"
        row = await load_row("3003")
        assert row.payment_status == "confirming"
        assert row.extra_data["actuallyPaid"] == 0.0005
        assert row.extra_data["requestedUsd"] == 50.0
        assert row.last_monitored_at is not None
        payment = await load_payment("3003")
        assert payment.status == "processing"
        assert payment.provider_status == "confirming"

    @pytest.mark.asyncio
    async def test_same_status_is_a_no_op(self, monitoring_service, create_user, create_reservation, load_row, report_factory):
        user_id = await create_user()
        await create_reservation(user_id, "3004", payment_status="waiting")
        before = await load_row("3004")

        outcome = await monitoring_service.process_payment_update(report_factory("3004", status="waiting"))

        assert outcome == "unchanged"
        assert (await load_row("3004")).updated_at == before.updated_at

    @pytest.mark.asyncio
    async def test_unknown_payment_is_ignored(self, monitoring_service, report_factory):
        assert await monitoring_service.process_payment_update(report_factory("999999")) == "not_found"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["failed", "expired", "refunded"])
    async def test_failure_statuses_are_escalated(
        self, monitoring_service, failure_handler, create_user, create_reservation, cache, report_factory, status
    ):
        user_id = await create_user()
        await create_reservation(user_id, "3005")
        await monitoring_service.add_pending_payment("3005", user_id)

        await monitoring_service.process_payment_update(report_factory("3005", status=status))

        failure_handler.handle_payment_failure.assert_awaited_once_with(
            "3005", status, "Payment failed during monitoring"
        )
        assert await _queued_ids(cache) == []

    @pytest.mark.asyncio
    async def test_failed_allocation_is_reported_and_left_for_reconciliation(
        self, monitoring_service, allocation_service, failure_handler, create_user, create_reservation, report_factory
    ):
        user_id = await create_user()
        await create_reservation(user_id, "3006", requested_usd=100, pay_amount=Decimal("100"))

        await monitoring_service.process_payment_update(
            report_factory("3006", price_amount=100, pay_amount="100", actually_paid="95")
        )

        failure_handler.handle_monitoring_failure.assert_awaited_once()
        args = failure_handler.handle_monitoring_failure.await_args.args
        assert args[0] == "3006"
        assert "below required amount" in args[1]
        pending = await allocation_service.get_pending_allocations()
        assert [item["payment_id"] for item in pending] == ["3006"]


class TestMonitoringCycle:
    """Batches, retries and the skip rule"""

    @pytest.mark.asyncio
    async def test_non_gateway_id_is_skipped_permanently(
        self, monitoring_service, gateway, create_user, create_reservation, load_row, cache
    ):
        user_id = await create_user()
        await create_reservation(user_id, "cs_test_123")
        await cache.set_json(
            Config.PENDING_QUEUE_CACHE_KEY, [{"payment_id": "cs_test_123", "user_id": user_id}], 60
        )

        results = await monitoring_service.run_monitoring_cycle()

        assert results["skipped"] == 1
        gateway.get_payment_status.assert_not_awaited()
        assert (await load_row("cs_test_123")).monitoring_status == "skipped"
        assert await _queued_ids(cache) == []
        await cache.delete(Config.PENDING_QUEUE_CACHE_KEY)
        assert await monitoring_service.rebuild_pending_queue() == []

    @pytest.mark.asyncio
    async def test_failing_item_does_not_affect_rest_of_batch(
        self, monitoring_service, gateway, failure_handler, create_user, create_reservation,
        load_row, report_factory, cache,
    ):
        user_id = await create_user()
        payment_ids = [str(4000 + i) for i in range(10)]
        for payment_id in payment_ids:
            await create_reservation(user_id, payment_id, payment_status="waiting")
        await monitoring_service.rebuild_pending_queue()

        async def gateway_status(payment_id):
            if payment_id == payment_ids[3]:
                raise NOWPaymentsAPIError("HTTP 503", status_code=503)
            return report_factory(payment_id, status="confirming")

        gateway.get_payment_status.side_effect = gateway_status

        results = await monitoring_service.run_monitoring_cycle()

        assert results["checked"] == 10
        assert results["updated"] == 9
        assert results["failed"] == 1
        for payment_id in payment_ids:
            expected = "waiting" if payment_id == payment_ids[3] else "confirming"
            assert (await load_row(payment_id)).payment_status == expected
        assert payment_ids[3] in await _queued_ids(cache)
        assert (await load_row(payment_ids[3])).retry_count == 1
        failure_handler.handle_monitoring_failure.assert_awaited_once_with(payment_ids[3], "HTTP 503")
        assert monitoring_service.metrics.failed_updates == 1
        assert monitoring_service.metrics.successful_updates == 9

    @pytest.mark.asyncio
    async def test_retries_use_exponential_backoff(self, monitoring_service, gateway, failure_handler):
        monitoring_service.retry_delay = 5
        gateway.get_payment_status.side_effect = NOWPaymentsAPIError("timeout")

        with patch("services.payment_monitoring_service.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await monitoring_service.monitor_payment("5555") is False

        assert gateway.get_payment_status.await_count == 3
        assert [call.args[0] for call in sleep.await_args_list] == [5, 10]
        failure_handler.handle_monitoring_failure.assert_awaited_once_with("5555", "timeout")

    @pytest.mark.asyncio
    async def test_transient_error_then_success(self, monitoring_service, gateway, create_user, create_reservation, load_row, report_factory):
        user_id = await create_user()
        await create_reservation(user_id, "5556")
        gateway.get_payment_status.side_effect = [
            NOWPaymentsAPIError("connection reset"),
            report_factory("5556", status="confirmed"),
        ]

        assert await monitoring_service.monitor_payment("5556") is True
        assert (await load_row("5556")).payment_status == "confirmed"

    @pytest.mark.asyncio
    async def test_cycle_error_is_counted_not_raised(self, monitoring_service):
        with patch.object(monitoring_service, "get_pending_payments", AsyncMock(side_effect=RuntimeError("db down"))):
            results = await monitoring_service.run_monitoring_cycle()

        assert results["errors"] == 1
        assert monitoring_service.metrics.cycle_errors == 1
        assert monitoring_service.metrics.cycles_completed == 1

    @pytest.mark.asyncio
    async def test_trigger_payment_check(self, monitoring_service, gateway, create_user, create_reservation, report_factory):
        user_id = await create_user()
        await create_reservation(user_id, "6100")
        gateway.get_payment_status.return_value = report_factory("6100", status="waiting")

        assert await monitoring_service.trigger_payment_check("6100") is True
        assert await monitoring_service.trigger_payment_check("not-a-gateway-id") is False


class TestReconciliation:

    @pytest.mark.asyncio
    async def test_uncredited_finished_payment_is_allocated(
        self, monitoring_service, gateway, failure_handler, create_user, create_reservation, load_row, report_factory
    ):
        user_id = await create_user()
        await create_reservation(user_id, "7100", payment_status="finished")
        gateway.get_payment_status.return_value = report_factory("7100")

        results = await monitoring_service.reconcile_pending_allocations()

        assert results == {"checked": 1, "allocated": 1, "failed": 0}
        assert (await load_row("7100")).amount == Decimal("50")
        failure_handler.resolve_failure.assert_awaited_once()


class TestMonitoringIntrospection:

    @pytest.mark.asyncio
    async def test_health_check_reports_components(self, monitoring_service, gateway):
        health = await monitoring_service.health_check()
        assert health == {"healthy": True, "cache": True, "database": True, "gateway": True, "is_running": False}

        gateway.health_check.return_value = False
        assert (await monitoring_service.health_check())["healthy"] is False

    @pytest.mark.asyncio
    async def test_start_and_stop_monitoring(self, monitoring_service, gateway):
        await monitoring_service.start_monitoring()
        try:
            assert monitoring_service.is_monitoring_active()
            assert monitoring_service.get_metrics()["is_running"] is True
        finally:
            await monitoring_service.stop_monitoring()
        assert not monitoring_service.is_monitoring_active()

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_cycle_finish(self, monitoring_service):
        state = {"finished": False}

        async def slow_pending():
            await asyncio.sleep(0.3)
            state["finished"] = True
            return []

        with patch.object(monitoring_service, "get_pending_payments", AsyncMock(side_effect=slow_pending)):
            await monitoring_service.start_monitoring()
            cycle = asyncio.ensure_future(monitoring_service.run_scheduled_cycle())
            await asyncio.sleep(0.05)

            await monitoring_service.stop_monitoring()

            assert state["finished"] is True
            assert not cycle.cancelled()
            assert (await cycle)["errors"] == 0
        assert not monitoring_service.is_monitoring_active()

    @pytest.mark.asyncio
    async def test_cancelled_job_future_does_not_cancel_cycle(self, monitoring_service):
        state = {"finished": False}

        async def slow_pending():
            await asyncio.sleep(0.1)
            state["finished"] = True
            return []

        with patch.object(monitoring_service, "get_pending_payments", AsyncMock(side_effect=slow_pending)):
            job_future = asyncio.ensure_future(monitoring_service.run_scheduled_cycle())
            await asyncio.sleep(0.02)
            job_future.cancel()

            await asyncio.sleep(0.2)

        assert state["finished"] is True
        assert monitoring_service.metrics.cycles_completed == 1

    def test_reset_metrics(self, monitoring_service):
        monitoring_service.metrics.increment("failed_updates", 3)
        monitoring_service.reset_metrics()
        assert monitoring_service.get_metrics()["failed_updates"] == 0
