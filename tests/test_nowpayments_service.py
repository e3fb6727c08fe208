"""
NOWPayments status client tests (HTTP layer patched out)
"""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from services.nowpayments_service import GatewayPaymentReport, NOWPaymentsAPIError, NOWPaymentsService


@pytest.fixture
def client():
    return NOWPaymentsService(api_key="test-api-key-123456", base_url="https://api.example.test/v1/", sandbox=True)


class TestGatewayPaymentReport:

    def test_from_api_parses_amounts_as_decimals(self):
        report = GatewayPaymentReport.from_api({
            "payment_id": 5077125051,
            "payment_status": "Finished",
            "price_amount": 50,
            "price_currency": "usd",
            "pay_amount": 0.00123456,
            "actually_paid": "0.00123456",
            "pay_currency": "btc",
            "outcome_amount": "49.9",
            "outcome_currency": "USD",
            "payin_hash": "",
        })

        assert report.payment_id == "5077125051"
        assert report.payment_status == "finished"
        assert report.price_amount == Decimal("50")
        assert report.pay_amount == Decimal("0.00123456")
        assert report.actually_paid == Decimal("0.00123456")
        assert report.payin_hash is None
        assert report.outcome_is_usd()

    def test_non_usd_outcome(self):
        report = GatewayPaymentReport.from_api({
            "payment_id": "1", "payment_status": "finished", "outcome_amount": "50", "outcome_currency": "usdttrc20",
        })
        assert not report.outcome_is_usd()

    def test_malformed_amount_is_none(self):
        report = GatewayPaymentReport.from_api({"payment_id": "1", "payment_status": "waiting", "actually_paid": "n/a"})
        assert report.actually_paid is None


class TestNOWPaymentsService:

    def test_headers_include_sandbox_flag(self, client):
        headers = client._get_headers()
        assert headers["x-api-key"] == "test-api-key-123456"
        assert headers["x-sandbox"] == "true"
        assert client.base_url == "https://api.example.test/v1"

    def test_availability_requires_api_key(self):
        assert not NOWPaymentsService(api_key="").is_available()

    @pytest.mark.asyncio
    async def test_get_payment_status(self, client):
        payload = {"payment_id": 42, "payment_status": "confirming", "actually_paid": "0.0005"}
        with patch.object(client, "_get_json", AsyncMock(return_value=payload)) as get_json:
            report = await client.get_payment_status("42")

        get_json.assert_awaited_once_with("/payment/42")
        assert report.payment_status == "confirming"
        assert report.actually_paid == Decimal("0.0005")

    @pytest.mark.asyncio
    async def test_get_payment_status_rejects_malformed_payload(self, client):
        with patch.object(client, "_get_json", AsyncMock(return_value={"payment_id": 42})):
            with pytest.raises(NOWPaymentsAPIError):
                await client.get_payment_status("42")

    @pytest.mark.asyncio
    async def test_health_check(self, client):
        with patch.object(client, "_get_json", AsyncMock(return_value={"message": "OK"})):
            assert await client.health_check() is True

        with patch.object(client, "_get_json", AsyncMock(side_effect=NOWPaymentsAPIError("HTTP 500", 500))):
            assert await client.health_check() is False
