"""
Payment Reconciliation - Database Schema
========================================

Schema for the credit ledger and the provider-agnostic payment record:
- credit_transactions: signed credit ledger, one row per gateway payment
- payments: unified payment record mirrored from gateway status reports
- users: account owner of ledger rows

The ledger is the only source of truth for balances and allocation state.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, JSON, Numeric,
    String, Text, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")
LEDGER_AMOUNT = Numeric(18, 8)


def _new_uuid() -> str:
    return str(uuid.uuid4())


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class CreditTransactionType(Enum):
    """Ledger entry kinds"""
    DEPOSIT = "deposit"
    PURCHASE = "purchase"
    REFUND = "refund"
    BONUS = "bonus"
    WITHDRAWAL = "withdrawal"


class GatewayPaymentStatus(Enum):
    """Raw NOWPayments payment status values"""
    PENDING = "pending"
    WAITING = "waiting"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    SENDING = "sending"
    PARTIALLY_PAID = "partially_paid"
    FINISHED = "finished"
    FAILED = "failed"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class UnifiedPaymentStatus(Enum):
    """Provider-agnostic payment status"""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXPIRED = "expired"


class PaymentProvider(Enum):
    NOWPAYMENTS = "nowpayments"
    STRIPE = "stripe"
    MANUAL = "manual"
    ADMIN = "admin"


class PaymentPurpose(Enum):
    SUBSCRIPTION = "subscription"
    CREDIT_TOPUP = "credit_topup"
    ONE_TIME = "one_time"


class MonitoringStatus(Enum):
    """Poller bookkeeping on a ledger row"""
    PENDING = "pending"
    SKIPPED = "skipped"
    COMPLETED = "completed"


class AllocationSource(Enum):
    OUTCOME_AMOUNT = "outcome_amount"
    ACTUALLY_PAID_RATIO = "actually_paid_ratio"
    MANUAL = "manual"


class AllocationErrorCode(Enum):
    """Structured reasons an allocation was refused"""
    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_REQUESTED_AMOUNT = "INVALID_REQUESTED_AMOUNT"
    AMOUNT_UNDETERMINABLE = "AMOUNT_UNDETERMINABLE"
    UNDERPAID = "UNDERPAID"
    CURRENCY_MISMATCH = "CURRENCY_MISMATCH"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    USER_INACTIVE = "USER_INACTIVE"
    INVALID_CREDIT_AMOUNT = "INVALID_CREDIT_AMOUNT"
    CREDIT_LIMIT_EXCEEDED = "CREDIT_LIMIT_EXCEEDED"
    PAYMENT_NOT_FINISHED = "PAYMENT_NOT_FINISHED"
    RESERVATION_NOT_FOUND = "RESERVATION_NOT_FOUND"
    OWNERSHIP_MISMATCH = "OWNERSHIP_MISMATCH"
    DATABASE_ERROR = "DATABASE_ERROR"


# ============================================================================
# MODELS
# ============================================================================

class User(Base):
    """Account that owns credit ledger rows"""
    __tablename__ = 'users'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)


class CreditTransaction(Base):
    """
    Signed credit ledger entry.

    A gateway payment is first reserved with amount=0 and payment_status
    'pending'; allocation updates that row in place exactly once, setting the
    credited amount and metadata.paymentCompleted.
    """
    __tablename__ = 'credit_transactions'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(LEDGER_AMOUNT, nullable=False, default=Decimal("0"))
    balance_before: Mapped[Decimal] = mapped_column(LEDGER_AMOUNT, nullable=False, default=Decimal("0"))
    balance_after: Mapped[Decimal] = mapped_column(LEDGER_AMOUNT, nullable=False, default=Decimal("0"))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    extra_data: Mapped[Dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)

    # Gateway correlation
    payment_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, unique=True)
    payment_provider: Mapped[str] = mapped_column(String(50), nullable=False, default=PaymentProvider.NOWPAYMENTS.value)
    payment_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    payment_currency: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    payment_amount: Mapped[Optional[Decimal]] = mapped_column(LEDGER_AMOUNT, nullable=True)
    blockchain_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Poller bookkeeping
    monitoring_status: Mapped[str] = mapped_column(String(20), nullable=False, default=MonitoringStatus.PENDING.value)
    last_monitored_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "(type IN ('deposit', 'bonus', 'refund') AND amount >= 0) OR "
            "(type IN ('purchase', 'withdrawal') AND amount <= 0)",
            name='ck_credit_transaction_amount_sign',
        ),
        CheckConstraint("monitoring_status IN ('pending', 'skipped', 'completed')", name='ck_credit_transaction_monitoring_status'),
        Index('ix_credit_transactions_monitoring', 'payment_status', 'monitoring_status', 'created_at'),
        Index('ix_credit_transactions_user_created', 'user_id', 'created_at'),
    )

    @property
    def payment_completed(self) -> bool:
        return bool((self.extra_data or {}).get("paymentCompleted")) and self.amount > 0

    def __repr__(self):
        return f"<CreditTransaction {self.id} user={self.user_id} amount={self.amount} payment={self.payment_id}>"


class Payment(Base):
    """Provider-agnostic payment record, mirrored from gateway reports"""
    __tablename__ = 'payments'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_payment_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=UnifiedPaymentStatus.PENDING.value)
    provider_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    purpose: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    amount_usd: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    payment_method_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    subscription_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    credit_transaction_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey('credit_transactions.id'), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    extra_data: Mapped[Dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint('provider', 'provider_payment_id', name='uq_payments_provider_payment_id'),
        CheckConstraint("provider IN ('nowpayments', 'stripe', 'manual', 'admin')", name='ck_payments_provider_valid'),
        CheckConstraint("status IN ('pending', 'processing', 'succeeded', 'failed', 'expired')", name='ck_payments_status_valid'),
        CheckConstraint("purpose IN ('subscription', 'credit_topup', 'one_time')", name='ck_payments_purpose_valid'),
        Index('ix_payments_provider_order', 'provider', 'order_id'),
    )

    def __repr__(self):
        return f"<Payment {self.id} {self.provider}:{self.provider_payment_id} {self.status}>"
