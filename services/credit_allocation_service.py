"""
Credit Allocation Service
Converts a finished gateway payment into account credit exactly once.

Every allocation runs under a per-user transaction-scoped lock and updates
the payment's reservation row in place. Duplicate allocations are refused
twice over: a fast cache marker check before any work, and the ledger row's
paymentCompleted flag re-checked inside the locked transaction.
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Config
from models import (
    AllocationErrorCode, AllocationSource, CreditTransaction, CreditTransactionType, GatewayPaymentStatus,
    MonitoringStatus, PaymentProvider, UnifiedPaymentStatus, User,
)
from services.allocation_records import (
    AllocationRecord, GatewayAllocationRecord, ManualAllocationRecord, PaidAmount,
    merge_allocation_metadata,
)
from services.cache_service import CacheService
from services.nowpayments_service import GatewayPaymentReport
from services.payment_repository import PaymentRepository
from utils.atomic_transactions import async_atomic_transaction, session_scope
from utils.datetime_helpers import get_naive_utc_now, to_iso
from utils.db_advisory_locks import UserLockService
from utils.decimal_precision import MonetaryDecimal
from utils.service_metrics import AllocationMetrics

logger = logging.getLogger(__name__)

CACHE_PREFIX = "credit_allocation:"
BALANCE_CACHE_PREFIX = "credit:balance:"


def duplicate_marker_key(payment_id: str) -> str:
    return f"{CACHE_PREFIX}completed:{payment_id}"


@dataclass
class AllocationResult:
    """Outcome of an allocation attempt; duplicates are successes"""
    success: bool
    credit_amount: Optional[Decimal] = None
    transaction_id: Optional[str] = None
    balance_after: Optional[Decimal] = None
    user_id: Optional[str] = None
    payment_id: Optional[str] = None
    is_duplicate: bool = False
    error: Optional[str] = None
    error_code: Optional[AllocationErrorCode] = None

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: AllocationErrorCode,
        user_id: Optional[str] = None,
        payment_id: Optional[str] = None,
    ) -> "AllocationResult":
        return cls(success=False, error=error, error_code=error_code, user_id=user_id, payment_id=payment_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "credit_amount": MonetaryDecimal.to_float(self.credit_amount),
            "transaction_id": self.transaction_id,
            "balance_after": MonetaryDecimal.to_float(self.balance_after),
            "user_id": self.user_id,
            "payment_id": self.payment_id,
            "is_duplicate": self.is_duplicate,
            "error": self.error,
            "error_code": self.error_code.value if self.error_code else None,
        }


class AllocationAborted(Exception):
    """Raised to refuse an allocation; inside a transaction it forces a rollback"""

    def __init__(self, message: str, code: AllocationErrorCode):
        super().__init__(message)
        self.message = message
        self.code = code


class AlreadyAllocated(Exception):
    """Reservation row was completed by a concurrent allocation"""

    def __init__(self, row: CreditTransaction):
        super().__init__(f"Credits already allocated for payment {row.payment_id}")
        self.transaction_id = row.id
        self.credit_amount = row.amount
        self.balance_after = row.balance_after


class CreditAllocationService:
    """Duplicate-safe atomic credit allocation"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        cache: CacheService,
        lock_service: UserLockService,
        metrics: AllocationMetrics,
        payment_repository: PaymentRepository,
        allocation_rate: Optional[Decimal] = None,
        max_credit_allocation: Optional[Decimal] = None,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.lock_service = lock_service
        self.metrics = metrics
        self.payment_repository = payment_repository
        self.allocation_rate = Decimal(str(allocation_rate)) if allocation_rate is not None else Config.CREDIT_ALLOCATION_RATE
        self.max_credit_allocation = max_credit_allocation or Config.MAX_CREDIT_ALLOCATION

    # ------------------------------------------------------------------
    # Gateway-driven allocation
    # ------------------------------------------------------------------

    async def allocate_credits_for_payment(
        self,
        user_id: str,
        payment_id: str,
        requested_usd_amount: Any,
        payment_data: GatewayPaymentReport,
    ) -> AllocationResult:
        """Allocate credit for a finished gateway payment"""
        start_time = time.monotonic()
        logger.info(f"💰 CREDIT_ALLOCATION_START: payment {payment_id} user {user_id}")

        try:
            if not user_id or not payment_id:
                raise AllocationAborted("user_id and payment_id are required", AllocationErrorCode.INVALID_REQUEST)

            duplicate = await self._check_for_duplicate(payment_id, user_id)
            if duplicate is not None:
                return duplicate

            requested_usd = MonetaryDecimal.parse_positive(requested_usd_amount, "requested_usd")
            if requested_usd is None:
                raise AllocationAborted(
                    f"Invalid requested USD amount: {requested_usd_amount!r}",
                    AllocationErrorCode.INVALID_REQUESTED_AMOUNT,
                )

            paid = self.resolve_paid_amount(requested_usd, payment_data)
            if paid is None:
                raise AllocationAborted(
                    "Unable to determine paid amount from payment data",
                    AllocationErrorCode.AMOUNT_UNDETERMINABLE,
                )

            if paid.paid_usd + Config.FULL_PAYMENT_EPSILON < requested_usd:
                logger.warning(
                    f"⚠️ CREDIT_ALLOCATION_UNDERPAID: payment {payment_id} paid {paid.paid_usd} "
                    f"of {requested_usd} USD ({paid.source.value})"
                )
                raise AllocationAborted(
                    f"Paid amount below required amount ({paid.paid_usd} < {requested_usd} USD)",
                    AllocationErrorCode.UNDERPAID,
                )

            credit_amount = self.calculate_credit_amount(requested_usd)
            await self._validate_allocation(user_id, credit_amount, payment_data)

            record = GatewayAllocationRecord(
                requested_usd=requested_usd,
                paid_usd=paid.paid_usd,
                paid_ratio=paid.paid_ratio,
                credit_allocation_rate=self.allocation_rate,
                blockchain_hash=payment_data.payin_hash,
                actually_paid=payment_data.actually_paid,
                from_outcome_amount=paid.source == AllocationSource.OUTCOME_AMOUNT,
            )
            pay_currency = (payment_data.pay_currency or "").upper()
            description = (
                f"Cryptocurrency payment completed - {pay_currency or 'CRYPTO'} "
                f"({payment_data.actually_paid if payment_data.actually_paid is not None else payment_data.pay_amount})"
            )

            return await self._perform_atomic_allocation(
                user_id,
                payment_id,
                credit_amount,
                record,
                start_time,
                description=description,
                blockchain_hash=payment_data.payin_hash,
                pinned_currency=pay_currency if paid.source == AllocationSource.ACTUALLY_PAID_RATIO else None,
            )

        except AllocationAborted as e:
            self.metrics.record_failure()
            logger.warning(f"🚫 CREDIT_ALLOCATION_REFUSED: payment {payment_id} - {e.code.value}: {e.message}")
            return AllocationResult.failure(e.message, e.code, user_id=user_id, payment_id=payment_id)
        except Exception as e:
            self.metrics.record_failure()
            logger.error(f"❌ CREDIT_ALLOCATION_ERROR: payment {payment_id} - {e}", exc_info=True)
            return AllocationResult.failure(
                "Credit allocation failed due to system error",
                AllocationErrorCode.DATABASE_ERROR,
                user_id=user_id,
                payment_id=payment_id,
            )

    def resolve_paid_amount(self, requested_usd: Decimal, payment_data: GatewayPaymentReport) -> Optional[PaidAmount]:
        """
        Paid USD from the settlement amount when it is USD-denominated,
        otherwise requested USD scaled by actually_paid / pay_amount.
        """
        outcome = payment_data.outcome_amount
        if outcome is not None and outcome > 0 and payment_data.outcome_is_usd():
            return PaidAmount(
                paid_usd=outcome,
                paid_ratio=outcome / requested_usd,
                source=AllocationSource.OUTCOME_AMOUNT,
            )

        actually_paid = payment_data.actually_paid
        pay_amount = payment_data.pay_amount
        if actually_paid is not None and actually_paid > 0 and pay_amount is not None and pay_amount > 0:
            ratio = actually_paid / pay_amount
            return PaidAmount(
                paid_usd=requested_usd * ratio,
                paid_ratio=ratio,
                source=AllocationSource.ACTUALLY_PAID_RATIO,
            )

        return None

    def calculate_credit_amount(self, usd_amount: Decimal) -> Decimal:
        return MonetaryDecimal.quantize_usd(usd_amount * self.allocation_rate)

    async def _validate_allocation(
        self, user_id: str, credit_amount: Decimal, payment_data: GatewayPaymentReport
    ) -> None:
        await self._validate_user(user_id)
        self._validate_credit_amount(credit_amount)

        if payment_data.payment_status != GatewayPaymentStatus.FINISHED.value:
            raise AllocationAborted(
                f"Invalid payment status for allocation: {payment_data.payment_status}",
                AllocationErrorCode.PAYMENT_NOT_FINISHED,
            )

        actually_paid = payment_data.actually_paid
        pay_amount = payment_data.pay_amount
        if (
            actually_paid is not None
            and pay_amount is not None
            and pay_amount > 0
            and actually_paid + Config.FULL_PAYMENT_EPSILON < pay_amount
        ):
            raise AllocationAborted(
                f"Payment amount below required invoice amount ({actually_paid} < {pay_amount})",
                AllocationErrorCode.UNDERPAID,
            )

    async def _validate_user(self, user_id: str) -> None:
        async with session_scope(self.session_factory) as db:
            user = await db.get(User, user_id)
        if user is None:
            raise AllocationAborted("User not found", AllocationErrorCode.USER_NOT_FOUND)
        if not user.is_active:
            raise AllocationAborted("User account is not active", AllocationErrorCode.USER_INACTIVE)

    def _validate_credit_amount(self, credit_amount: Decimal) -> None:
        if credit_amount <= 0:
            raise AllocationAborted("Invalid credit amount", AllocationErrorCode.INVALID_CREDIT_AMOUNT)
        if credit_amount > self.max_credit_allocation:
            raise AllocationAborted(
                f"Credit amount exceeds maximum limit of {self.max_credit_allocation}",
                AllocationErrorCode.CREDIT_LIMIT_EXCEEDED,
            )

    # ------------------------------------------------------------------
    # Manual allocation
    # ------------------------------------------------------------------

    async def manual_credit_allocation(
        self,
        user_id: str,
        payment_id: str,
        credit_amount: Any,
        admin_user_id: str,
        reason: str,
    ) -> AllocationResult:
        """Administrator-approved allocation against an existing reservation row"""
        start_time = time.monotonic()
        logger.info(f"🛠️ MANUAL_CREDIT_ALLOCATION_START: payment {payment_id} user {user_id} by admin {admin_user_id}")

        try:
            if not user_id or not payment_id:
                raise AllocationAborted("user_id and payment_id are required", AllocationErrorCode.INVALID_REQUEST)
            if not admin_user_id or not (reason or "").strip():
                raise AllocationAborted("admin_user_id and reason are required", AllocationErrorCode.INVALID_REQUEST)

            amount = MonetaryDecimal.parse_positive(credit_amount, "manual_credit")
            if amount is None:
                raise AllocationAborted("Invalid credit amount", AllocationErrorCode.INVALID_CREDIT_AMOUNT)
            amount = MonetaryDecimal.quantize_usd(amount)
            self._validate_credit_amount(amount)

            duplicate = await self._check_for_duplicate(payment_id, user_id)
            if duplicate is not None:
                return duplicate

            await self._validate_user(user_id)

            record = ManualAllocationRecord(
                requested_usd=None,
                paid_usd=amount,
                paid_ratio=None,
                credit_allocation_rate=self.allocation_rate,
                admin_user_id=str(admin_user_id),
                reason=reason.strip(),
                manual_credit_amount=amount,
            )
            return await self._perform_atomic_allocation(
                user_id,
                payment_id,
                amount,
                record,
                start_time,
                description=f"Manual credit allocation - {reason.strip()}",
                manual=True,
            )

        except AllocationAborted as e:
            self.metrics.record_failure()
            logger.warning(f"🚫 MANUAL_CREDIT_ALLOCATION_REFUSED: payment {payment_id} - {e.code.value}: {e.message}")
            return AllocationResult.failure(e.message, e.code, user_id=user_id, payment_id=payment_id)
        except Exception as e:
            self.metrics.record_failure()
            logger.error(f"❌ MANUAL_CREDIT_ALLOCATION_ERROR: payment {payment_id} - {e}", exc_info=True)
            return AllocationResult.failure(
                "Manual credit allocation failed due to system error",
                AllocationErrorCode.DATABASE_ERROR,
                user_id=user_id,
                payment_id=payment_id,
            )

    # ------------------------------------------------------------------
    # Atomic ledger mutation
    # ------------------------------------------------------------------

    async def _perform_atomic_allocation(
        self,
        user_id: str,
        payment_id: str,
        credit_amount: Decimal,
        record: AllocationRecord,
        start_time: float,
        description: str,
        blockchain_hash: Optional[str] = None,
        pinned_currency: Optional[str] = None,
        manual: bool = False,
    ) -> AllocationResult:
        try:
            async with self.session_factory() as db:
                async with self.lock_service.user_lock(db, user_id):
                    async with async_atomic_transaction(db):
                        balance_before = await self.get_balance(db, user_id)
                        balance_after = balance_before + credit_amount

                        row = await self._load_reservation(db, payment_id)
                        if row is None:
                            raise AllocationAborted(
                                "Original payment transaction not found",
                                AllocationErrorCode.RESERVATION_NOT_FOUND,
                            )
                        if row.user_id != user_id:
                            raise AllocationAborted(
                                "Payment does not belong to this user",
                                AllocationErrorCode.OWNERSHIP_MISMATCH,
                            )
                        if (row.extra_data or {}).get("paymentCompleted"):
                            raise AlreadyAllocated(row)
                        if (
                            pinned_currency
                            and row.payment_currency
                            and row.payment_currency.upper() != pinned_currency
                        ):
                            raise AllocationAborted(
                                f"Paid currency {pinned_currency} does not match reserved currency "
                                f"{row.payment_currency.upper()}",
                                AllocationErrorCode.CURRENCY_MISMATCH,
                            )

                        row.amount = credit_amount
                        row.balance_before = balance_before
                        row.balance_after = balance_after
                        row.description = description
                        row.extra_data = merge_allocation_metadata(row.extra_data, record)
                        row.payment_status = GatewayPaymentStatus.FINISHED.value
                        row.monitoring_status = MonitoringStatus.COMPLETED.value
                        if blockchain_hash:
                            row.blockchain_hash = blockchain_hash
                        row.updated_at = get_naive_utc_now()
                        transaction_id = row.id
                        provider = row.payment_provider or PaymentProvider.NOWPAYMENTS.value

                        if manual:
                            await self.payment_repository.update_status_by_provider_payment_id(
                                provider,
                                payment_id,
                                UnifiedPaymentStatus.SUCCEEDED,
                                "manual_approved",
                                metadata_patch={
                                    "manualAllocation": True,
                                    "manualCreditAmount": float(credit_amount),
                                    "manualReason": row.extra_data.get("manualReason"),
                                    "adminUserId": row.extra_data.get("adminUserId"),
                                },
                                session=db,
                            )
                        await self.payment_repository.link_credit_transaction(
                            provider, payment_id, transaction_id, session=db
                        )

        except AlreadyAllocated as dup:
            logger.warning(f"🔁 CREDIT_ALLOCATION_DUPLICATE: payment {payment_id} already completed as {dup.transaction_id}")
            self.metrics.record_duplicate()
            result = AllocationResult(
                success=True,
                credit_amount=dup.credit_amount,
                transaction_id=dup.transaction_id,
                balance_after=dup.balance_after,
                user_id=user_id,
                payment_id=payment_id,
                is_duplicate=True,
            )
            await self._mark_allocation_completed(result)
            return result

        processing_ms = (time.monotonic() - start_time) * 1000
        result = AllocationResult(
            success=True,
            credit_amount=credit_amount,
            transaction_id=transaction_id,
            balance_after=balance_after,
            user_id=user_id,
            payment_id=payment_id,
        )
        logger.info(
            f"✅ CREDIT_ALLOCATION_COMPLETED: {credit_amount} credits to user {user_id} for payment "
            f"{payment_id} (tx {transaction_id}, balance {balance_after}, {processing_ms:.0f}ms)"
        )

        # Post-commit side effects are best effort
        await self.cache.delete(f"{BALANCE_CACHE_PREFIX}{user_id}")
        await self._mark_allocation_completed(result)
        await self._send_credit_allocation_notification(result)
        self.metrics.record_success(credit_amount, processing_ms, manual=manual)
        return result

    async def get_balance(self, db: AsyncSession, user_id: str) -> Decimal:
        result = await db.execute(
            select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(CreditTransaction.user_id == user_id)
        )
        return MonetaryDecimal.to_decimal(result.scalar_one())

    @staticmethod
    async def _load_reservation(db: AsyncSession, payment_id: str) -> Optional[CreditTransaction]:
        result = await db.execute(
            select(CreditTransaction)
            .where(
                CreditTransaction.payment_id == payment_id,
                CreditTransaction.type == CreditTransactionType.DEPOSIT.value,
            )
            .with_for_update()
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Duplicate markers and notifications
    # ------------------------------------------------------------------

    async def _check_for_duplicate(self, payment_id: str, user_id: Optional[str]) -> Optional[AllocationResult]:
        cached = await self.cache.get_json(duplicate_marker_key(payment_id))
        if isinstance(cached, dict) and cached.get("transaction_id"):
            self._ensure_owner(payment_id, cached.get("user_id"), user_id)
            logger.warning(f"🔁 CREDIT_ALLOCATION_DUPLICATE: payment {payment_id} (cache marker)")
            self.metrics.record_duplicate()
            return AllocationResult(
                success=True,
                credit_amount=MonetaryDecimal.parse(cached.get("credit_amount")),
                transaction_id=cached["transaction_id"],
                balance_after=MonetaryDecimal.parse(cached.get("balance_after")),
                user_id=cached.get("user_id") or user_id,
                payment_id=payment_id,
                is_duplicate=True,
            )

        async with session_scope(self.session_factory) as db:
            result = await db.execute(
                select(CreditTransaction).where(
                    CreditTransaction.payment_id == payment_id,
                    CreditTransaction.amount > 0,
                )
            )
            row = result.scalar_one_or_none()

        if row is None or not row.payment_completed:
            return None
        self._ensure_owner(payment_id, row.user_id, user_id)

        logger.warning(f"🔁 CREDIT_ALLOCATION_DUPLICATE: payment {payment_id} (ledger)")
        self.metrics.record_duplicate()
        duplicate = AllocationResult(
            success=True,
            credit_amount=row.amount,
            transaction_id=row.id,
            balance_after=row.balance_after,
            user_id=row.user_id,
            payment_id=payment_id,
            is_duplicate=True,
        )
        await self._mark_allocation_completed(duplicate)
        return duplicate

    @staticmethod
    def _ensure_owner(payment_id: str, owner_id: Optional[str], user_id: Optional[str]) -> None:
        """A completed payment is only ever reported back to the user it was credited to"""
        if owner_id and user_id and owner_id != user_id:
            logger.warning(f"🚫 CREDIT_ALLOCATION_OWNER_MISMATCH: payment {payment_id} was credited to another user")
            raise AllocationAborted(
                "Payment does not belong to this user",
                AllocationErrorCode.OWNERSHIP_MISMATCH,
            )

    async def _mark_allocation_completed(self, result: AllocationResult) -> None:
        await self.cache.set_json(
            duplicate_marker_key(result.payment_id),
            {
                "transaction_id": result.transaction_id,
                "credit_amount": MonetaryDecimal.to_float(result.credit_amount),
                "balance_after": MonetaryDecimal.to_float(result.balance_after),
                "user_id": result.user_id,
                "completed_at": to_iso(get_naive_utc_now()),
            },
            Config.DUPLICATE_ALLOCATION_TTL,
        )

    async def _send_credit_allocation_notification(self, result: AllocationResult) -> None:
        timestamp_ms = int(time.time() * 1000)
        await self.cache.set_json(
            f"{CACHE_PREFIX}notification:{result.user_id}:{timestamp_ms}",
            {
                "type": "credit_allocated",
                "user_id": result.user_id,
                "payment_id": result.payment_id,
                "credit_amount": MonetaryDecimal.to_float(result.credit_amount),
                "balance_after": MonetaryDecimal.to_float(result.balance_after),
                "transaction_id": result.transaction_id,
                "timestamp": to_iso(get_naive_utc_now()),
            },
            Config.ALLOCATION_NOTIFICATION_TTL,
        )

    # ------------------------------------------------------------------
    # Queries and introspection
    # ------------------------------------------------------------------

    async def get_allocation_history(self, user_id: str, limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
        """Gateway-linked ledger rows for a user, newest first"""
        async with session_scope(self.session_factory) as db:
            result = await db.execute(
                select(CreditTransaction)
                .where(CreditTransaction.user_id == user_id, CreditTransaction.payment_id.is_not(None))
                .order_by(CreditTransaction.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            rows = result.scalars().all()

        return [
            {
                "transaction_id": row.id,
                "payment_id": row.payment_id,
                "amount": float(row.amount),
                "balance_after": float(row.balance_after),
                "payment_status": row.payment_status,
                "payment_completed": row.payment_completed,
                "allocation_source": (row.extra_data or {}).get("allocationSource"),
                "description": row.description,
                "created_at": to_iso(row.created_at),
                "updated_at": to_iso(row.updated_at),
            }
            for row in rows
        ]

    async def get_pending_allocations(self) -> List[Dict[str, Any]]:
        """Finished payments whose reservation row was never credited"""
        async with session_scope(self.session_factory) as db:
            result = await db.execute(
                select(CreditTransaction)
                .where(
                    CreditTransaction.type == CreditTransactionType.DEPOSIT.value,
                    CreditTransaction.payment_status == GatewayPaymentStatus.FINISHED.value,
                    CreditTransaction.amount == 0,
                    CreditTransaction.payment_id.is_not(None),
                )
                .order_by(CreditTransaction.created_at.asc())
            )
            rows = result.scalars().all()

        pending = []
        for row in rows:
            metadata = row.extra_data or {}
            if metadata.get("paymentCompleted"):
                continue
            pending.append({
                "transaction_id": row.id,
                "payment_id": row.payment_id,
                "user_id": row.user_id,
                "requested_usd": metadata.get("requestedUsd") or metadata.get("creditAmountUsd") or metadata.get("priceAmount"),
                "created_at": to_iso(row.created_at),
            })
        return pending

    def get_metrics(self) -> Dict[str, Any]:
        return self.metrics.snapshot()

    def reset_metrics(self) -> None:
        self.metrics.reset()
        logger.info("📊 CREDIT_ALLOCATION_METRICS_RESET")

    async def health_check(self) -> Dict[str, Any]:
        database_ok = True
        try:
            async with session_scope(self.session_factory) as db:
                await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.error(f"❌ CREDIT_ALLOCATION_HEALTH: database check failed - {e}")
            database_ok = False

        cache_ok = await self.cache.ping()
        return {
            "healthy": database_ok and cache_ok,
            "database": database_ok,
            "cache": cache_ok,
            "metrics": self.get_metrics(),
        }
