"""
Payment Failure Escalation
Failure-escalation collaborator used by the status poller.

The poller only depends on the PaymentFailureHandler protocol. The default
implementation keeps a failure record per payment in the cache and raises an
admin alert once a payment keeps failing.
"""

import logging
from typing import Any, Dict, Optional, Protocol

from config import Config
from services.cache_service import CacheService
from utils.datetime_helpers import get_naive_utc_now, to_iso

logger = logging.getLogger(__name__)

FAILURE_CACHE_PREFIX = "payment_failure:"
ADMIN_ALERT_PREFIX = "payment_failure:admin_alert:"


class PaymentFailureHandler(Protocol):
    async def handle_monitoring_failure(self, payment_id: str, reason: str) -> None: ...

    async def handle_payment_failure(self, payment_id: str, provider_status: str, reason: str) -> None: ...

    async def resolve_failure(self, payment_id: str, reason: str) -> None: ...


class PaymentFailureService:
    """Cache-backed failure bookkeeping with admin alerting"""

    ADMIN_ALERT_THRESHOLD = 3

    def __init__(self, cache: CacheService, ttl_seconds: Optional[int] = None):
        self.cache = cache
        self.ttl_seconds = ttl_seconds or Config.PAYMENT_FAILURE_TTL

    async def get_failure_record(self, payment_id: str) -> Optional[Dict[str, Any]]:
        record = await self.cache.get_json(f"{FAILURE_CACHE_PREFIX}{payment_id}")
        return record if isinstance(record, dict) else None

    async def _record(self, payment_id: str, kind: str, reason: str, provider_status: Optional[str] = None) -> Dict[str, Any]:
        now = to_iso(get_naive_utc_now())
        record = await self.get_failure_record(payment_id) or {
            "payment_id": payment_id,
            "failure_count": 0,
            "first_failure_at": now,
        }
        record["failure_count"] = int(record.get("failure_count", 0)) + 1
        record["last_failure_at"] = now
        record["last_failure_kind"] = kind
        record["last_reason"] = reason
        if provider_status:
            record["provider_status"] = provider_status
        await self.cache.set_json(f"{FAILURE_CACHE_PREFIX}{payment_id}", record, self.ttl_seconds)
        return record

    async def handle_monitoring_failure(self, payment_id: str, reason: str) -> None:
        """Poll attempts exhausted or an allocation could not be completed"""
        record = await self._record(payment_id, "monitoring", reason)
        logger.warning(
            f"⚠️ PAYMENT_MONITORING_FAILURE: {payment_id} - {reason} "
            f"(failure #{record['failure_count']})"
        )
        if record["failure_count"] >= self.ADMIN_ALERT_THRESHOLD:
            await self._alert_admin(record)

    async def handle_payment_failure(self, payment_id: str, provider_status: str, reason: str) -> None:
        """Gateway reported a failed, expired or refunded payment"""
        record = await self._record(payment_id, "payment", reason, provider_status=provider_status)
        logger.info(f"🧾 PAYMENT_FAILED: {payment_id} status={provider_status} - {reason}")
        if provider_status == "refunded":
            await self._alert_admin(record)

    async def resolve_failure(self, payment_id: str, reason: str) -> None:
        if await self.get_failure_record(payment_id) is None:
            return
        await self.cache.delete(f"{FAILURE_CACHE_PREFIX}{payment_id}")
        logger.info(f"✅ PAYMENT_FAILURE_RESOLVED: {payment_id} - {reason}")

    async def _alert_admin(self, record: Dict[str, Any]) -> None:
        logger.error(
            f"🚨 ADMIN_ALERT: payment {record['payment_id']} needs intervention - "
            f"{record.get('last_reason')} ({record['failure_count']} failures)"
        )
        await self.cache.set_json(f"{ADMIN_ALERT_PREFIX}{record['payment_id']}", record, self.ttl_seconds)
