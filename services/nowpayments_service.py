"""NOWPayments API Service - payment status lookups for the status poller"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)


class NOWPaymentsAPIError(Exception):
    """Transport or HTTP error from the NOWPayments API"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _mask(secret: str) -> str:
    if not secret:
        return "<unset>"
    return f"{secret[:4]}...{secret[-4:]}" if len(secret) > 8 else "****"


@dataclass
class GatewayPaymentReport:
    """One payment status report as returned by GET /payment/{id}"""
    payment_id: str
    payment_status: str
    price_amount: Optional[Decimal] = None
    price_currency: Optional[str] = None
    pay_amount: Optional[Decimal] = None
    actually_paid: Optional[Decimal] = None
    pay_currency: Optional[str] = None
    outcome_amount: Optional[Decimal] = None
    outcome_currency: Optional[str] = None
    order_id: Optional[str] = None
    payin_hash: Optional[str] = None
    payout_hash: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "GatewayPaymentReport":
        def _str(name: str) -> Optional[str]:
            value = data.get(name)
            return str(value) if value not in (None, "") else None

        return cls(
            payment_id=str(data.get("payment_id", "")),
            payment_status=str(data.get("payment_status", "")).lower(),
            price_amount=MonetaryDecimal.parse(data.get("price_amount"), "price_amount"),
            price_currency=_str("price_currency"),
            pay_amount=MonetaryDecimal.parse(data.get("pay_amount"), "pay_amount"),
            actually_paid=MonetaryDecimal.parse(data.get("actually_paid"), "actually_paid"),
            pay_currency=_str("pay_currency"),
            outcome_amount=MonetaryDecimal.parse(data.get("outcome_amount"), "outcome_amount"),
            outcome_currency=_str("outcome_currency"),
            order_id=_str("order_id"),
            payin_hash=_str("payin_hash"),
            payout_hash=_str("payout_hash"),
            created_at=_str("created_at"),
            updated_at=_str("updated_at"),
            raw=dict(data),
        )

    def outcome_is_usd(self) -> bool:
        """Settlement amount is only usable as paid USD when it is USD-denominated"""
        return (self.outcome_currency or "").lower() == "usd"


class NOWPaymentsService:
    """Read-only NOWPayments client used for status polling"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        sandbox: Optional[bool] = None,
        timeout_seconds: Optional[int] = None,
    ):
        self.api_key = api_key if api_key is not None else Config.NOWPAYMENTS_API_KEY
        self.base_url = (base_url or Config.NOWPAYMENTS_BASE_URL).rstrip("/")
        self.sandbox = Config.NOWPAYMENTS_SANDBOX_MODE if sandbox is None else sandbox
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.NOWPAYMENTS_REQUEST_TIMEOUT)

        if not self.api_key:
            logger.warning("NOWPayments API key not configured - status polling will fail")
        else:
            logger.info(f"NOWPayments API initialized with key: {_mask(self.api_key)} (sandbox={self.sandbox})")

    def _get_headers(self) -> Dict[str, str]:
        headers = {
            'accept': 'application/json',
            'x-api-key': self.api_key,
        }
        if self.sandbox:
            headers['x-sandbox'] = 'true'
        return headers

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def _get_json(self, path: str) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url, headers=self._get_headers()) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        logger.warning(f"NOWPayments HTTP {response.status} for {path}: {error_text[:200]}")
                        raise NOWPaymentsAPIError(
                            f"NOWPayments API error {response.status}: {error_text[:200]}",
                            status_code=response.status,
                        )
                    return await response.json(content_type=None)
        except NOWPaymentsAPIError:
            raise
        except aiohttp.ClientError as e:
            raise NOWPaymentsAPIError(f"Network error: {e}") from e
        except asyncio.TimeoutError as e:
            raise NOWPaymentsAPIError(f"Request timed out after {self.timeout.total}s") from e
        except ValueError as e:
            raise NOWPaymentsAPIError(f"Malformed response: {e}") from e

    async def get_payment_status(self, payment_id: str) -> GatewayPaymentReport:
        """Fetch the current status of one payment"""
        data = await self._get_json(f"/payment/{payment_id}")
        if not isinstance(data, dict) or not data.get("payment_status"):
            raise NOWPaymentsAPIError(f"Malformed payment status response for {payment_id}")
        report = GatewayPaymentReport.from_api(data)
        if not report.payment_id:
            report.payment_id = str(payment_id)
        logger.debug(f"NOWPayments status {payment_id}: {report.payment_status}")
        return report

    async def health_check(self) -> bool:
        """API reachability via the public /status endpoint"""
        try:
            data = await self._get_json("/status")
            return str(data.get("message", "")).upper() == "OK"
        except NOWPaymentsAPIError as e:
            logger.warning(f"⚠️ NOWPAYMENTS_HEALTH_FAILED: {e}")
            return False
