"""
Typed allocation metadata.

An allocation is recorded on the ledger row's JSON metadata. Each source of
the paid amount is its own record type; they are only flattened into the
camelCase JSON document when written to the ledger.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from models import AllocationSource
from utils.datetime_helpers import get_naive_utc_now, to_iso
from utils.decimal_precision import MonetaryDecimal


@dataclass(frozen=True)
class PaidAmount:
    """Resolved paid USD and where it came from"""
    paid_usd: Decimal
    paid_ratio: Optional[Decimal]
    source: AllocationSource


@dataclass(frozen=True)
class _AllocationRecord:
    requested_usd: Optional[Decimal]
    paid_usd: Decimal
    paid_ratio: Optional[Decimal]
    credit_allocation_rate: Decimal

    source = None  # overridden per record type

    def _common(self) -> Dict[str, Any]:
        now = to_iso(get_naive_utc_now())
        return {
            "paymentCompleted": True,
            "completedAt": now,
            "allocationTimestamp": now,
            "requestedUsd": MonetaryDecimal.to_float(self.requested_usd),
            "paidUsd": MonetaryDecimal.to_float(self.paid_usd),
            "paidRatio": MonetaryDecimal.to_float(self.paid_ratio),
            "allocationSource": self.source.value,
            "creditAllocationRate": float(self.credit_allocation_rate),
        }


@dataclass(frozen=True)
class GatewayAllocationRecord(_AllocationRecord):
    """Allocation driven by a gateway 'finished' report"""
    blockchain_hash: Optional[str] = None
    actually_paid: Optional[Decimal] = None
    from_outcome_amount: bool = True

    @property
    def source(self) -> AllocationSource:
        if self.from_outcome_amount:
            return AllocationSource.OUTCOME_AMOUNT
        return AllocationSource.ACTUALLY_PAID_RATIO

    def to_metadata(self) -> Dict[str, Any]:
        data = self._common()
        data["blockchainHash"] = self.blockchain_hash
        data["actuallyPaid"] = MonetaryDecimal.to_float(self.actually_paid)
        return data


@dataclass(frozen=True)
class ManualAllocationRecord(_AllocationRecord):
    """Administrator-approved allocation"""
    admin_user_id: str = ""
    reason: str = ""
    manual_credit_amount: Decimal = Decimal("0")

    source = AllocationSource.MANUAL

    def to_metadata(self) -> Dict[str, Any]:
        data = self._common()
        data["manualAllocation"] = True
        data["manualCreditAmount"] = float(self.manual_credit_amount)
        data["manualReason"] = self.reason
        data["adminUserId"] = self.admin_user_id
        return data


AllocationRecord = Union[GatewayAllocationRecord, ManualAllocationRecord]


def merge_allocation_metadata(existing: Optional[Dict[str, Any]], record: AllocationRecord) -> Dict[str, Any]:
    """New metadata dict: reservation fields preserved, allocation fields layered on top"""
    merged = dict(existing or {})
    merged.update(record.to_metadata())
    if merged.get("requestedUsd") is None:
        # Keep the reservation's requested amount when the caller had none
        fallback = MonetaryDecimal.parse_positive(
            (existing or {}).get("requestedUsd")
            or (existing or {}).get("creditAmountUsd")
            or (existing or {}).get("priceAmount")
        )
        merged["requestedUsd"] = MonetaryDecimal.to_float(fallback)
    return merged
