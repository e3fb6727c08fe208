"""
Gateway payment status classification and normalization.

NOWPayments reports a payment through pending/waiting/confirming/confirmed/
sending/partially_paid before settling on one of finished, failed, expired
or refunded.
"""

import re
from functools import lru_cache
from typing import Optional

from config import Config
from models import GatewayPaymentStatus, UnifiedPaymentStatus

TERMINAL_STATUSES = frozenset({
    GatewayPaymentStatus.FINISHED.value,
    GatewayPaymentStatus.FAILED.value,
    GatewayPaymentStatus.EXPIRED.value,
    GatewayPaymentStatus.REFUNDED.value,
})

NON_TERMINAL_STATUSES = frozenset({
    GatewayPaymentStatus.PENDING.value,
    GatewayPaymentStatus.WAITING.value,
    GatewayPaymentStatus.CONFIRMING.value,
    GatewayPaymentStatus.CONFIRMED.value,
    GatewayPaymentStatus.SENDING.value,
    GatewayPaymentStatus.PARTIALLY_PAID.value,
})

FAILURE_STATUSES = frozenset({
    GatewayPaymentStatus.FAILED.value,
    GatewayPaymentStatus.EXPIRED.value,
    GatewayPaymentStatus.REFUNDED.value,
})

_UNIFIED_BY_GATEWAY = {
    GatewayPaymentStatus.FINISHED.value: UnifiedPaymentStatus.SUCCEEDED,
    GatewayPaymentStatus.FAILED.value: UnifiedPaymentStatus.FAILED,
    GatewayPaymentStatus.REFUNDED.value: UnifiedPaymentStatus.FAILED,
    GatewayPaymentStatus.EXPIRED.value: UnifiedPaymentStatus.EXPIRED,
}


def _clean(status: Optional[str]) -> str:
    return (status or "").strip().lower()


def is_terminal(status: Optional[str]) -> bool:
    return _clean(status) in TERMINAL_STATUSES


def is_non_terminal(status: Optional[str]) -> bool:
    return _clean(status) in NON_TERMINAL_STATUSES


def is_failure(status: Optional[str]) -> bool:
    return _clean(status) in FAILURE_STATUSES


def is_regression(previous: Optional[str], incoming: Optional[str]) -> bool:
    """A settled payment must never move back to an in-flight state"""
    return is_terminal(previous) and is_non_terminal(incoming)


def normalize_status(gateway_status: Optional[str]) -> UnifiedPaymentStatus:
    """
    Map a raw gateway status onto the unified payment status.

    Every in-flight sub-state (and anything unrecognized) is 'processing'.
    """
    return _UNIFIED_BY_GATEWAY.get(_clean(gateway_status), UnifiedPaymentStatus.PROCESSING)


@lru_cache(maxsize=8)
def _compiled(pattern: str) -> "re.Pattern[str]":
    return re.compile(pattern)


def is_valid_gateway_payment_id(payment_id: Optional[str], pattern: Optional[str] = None) -> bool:
    """Syntactic check only; ids failing it are never sent to the gateway"""
    if payment_id is None:
        return False
    return bool(_compiled(pattern or Config.NOWPAYMENTS_PAYMENT_ID_PATTERN).fullmatch(str(payment_id)))
