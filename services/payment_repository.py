"""
Payment Repository
Canonical, provider-agnostic payment records (table 'payments').

Thin CRUD only: ordering and regression rules live in the status poller.
Every write accepts an optional caller-owned AsyncSession so it can join the
caller's atomic transaction; without one it runs in its own committed unit.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import Payment, PaymentProvider, PaymentPurpose, UnifiedPaymentStatus
from utils.atomic_transactions import async_atomic_transaction, session_scope
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now

logger = logging.getLogger(__name__)


def _value(enum_or_str: Union[str, Any]) -> str:
    return enum_or_str.value if hasattr(enum_or_str, "value") else str(enum_or_str)


@dataclass
class PaymentCreate:
    """Input for PaymentRepository.create"""
    user_id: str
    provider: Union[PaymentProvider, str]
    purpose: Union[PaymentPurpose, str]
    amount: Decimal
    currency: str
    provider_payment_id: Optional[str] = None
    status: Union[UnifiedPaymentStatus, str] = UnifiedPaymentStatus.PENDING
    provider_status: Optional[str] = None
    amount_usd: Optional[Decimal] = None
    payment_method_type: Optional[str] = None
    order_id: Optional[str] = None
    subscription_id: Optional[str] = None
    credit_transaction_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class PaymentRepository:
    """CRUD over the unified payment record"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def create(self, data: PaymentCreate, session: Optional[AsyncSession] = None) -> Payment:
        async with session_scope(self.session_factory, session) as db:
            async with async_atomic_transaction(db):
                payment = Payment(
                    user_id=data.user_id,
                    provider=_value(data.provider),
                    provider_payment_id=data.provider_payment_id,
                    status=_value(data.status),
                    provider_status=data.provider_status,
                    purpose=_value(data.purpose),
                    amount=data.amount,
                    currency=data.currency,
                    amount_usd=data.amount_usd,
                    payment_method_type=data.payment_method_type,
                    order_id=data.order_id,
                    subscription_id=data.subscription_id,
                    credit_transaction_id=data.credit_transaction_id,
                    expires_at=ensure_naive_datetime(data.expires_at),
                    extra_data=dict(data.metadata or {}),
                )
                db.add(payment)
                await db.flush()
            logger.info(f"💳 PAYMENT_RECORD_CREATED: {payment.provider}:{payment.provider_payment_id} user {payment.user_id}")
            return payment

    async def update_status_by_provider_payment_id(
        self,
        provider: Union[PaymentProvider, str],
        provider_payment_id: str,
        status: Union[UnifiedPaymentStatus, str],
        provider_status: Optional[str] = None,
        metadata_patch: Optional[Dict[str, Any]] = None,
        session: Optional[AsyncSession] = None,
    ) -> Optional[Payment]:
        """
        Set the normalized status and the verbatim provider status.

        metadata_patch is merged into the stored metadata. Returns None when no
        record exists for the provider id.
        """
        async with session_scope(self.session_factory, session) as db:
            async with async_atomic_transaction(db):
                payment = await self._select_one(db, _value(provider), provider_payment_id, for_update=True)
                if payment is None:
                    logger.debug(f"No payment record for {_value(provider)}:{provider_payment_id}")
                    return None

                payment.status = _value(status)
                payment.provider_status = provider_status
                if metadata_patch:
                    payment.extra_data = {**(payment.extra_data or {}), **metadata_patch}
                payment.updated_at = get_naive_utc_now()
                await db.flush()
            return payment

    async def find_by_provider_payment_id(
        self,
        provider: Union[PaymentProvider, str],
        provider_payment_id: str,
        session: Optional[AsyncSession] = None,
    ) -> Optional[Payment]:
        async with session_scope(self.session_factory, session) as db:
            return await self._select_one(db, _value(provider), provider_payment_id)

    async def find_by_provider_payment_id_any(
        self, provider_payment_id: str, user_id: Optional[str] = None
    ) -> Optional[Payment]:
        """Latest record with this provider id under any provider"""
        query = select(Payment).where(Payment.provider_payment_id == provider_payment_id)
        if user_id:
            query = query.where(Payment.user_id == user_id)
        query = query.order_by(Payment.created_at.desc()).limit(1)
        async with session_scope(self.session_factory) as db:
            result = await db.execute(query)
            return result.scalar_one_or_none()

    async def find_latest_by_order_id(
        self,
        provider: Union[PaymentProvider, str],
        order_id: str,
        purpose: Optional[Union[PaymentPurpose, str]] = None,
        session: Optional[AsyncSession] = None,
    ) -> Optional[Payment]:
        query = select(Payment).where(Payment.provider == _value(provider), Payment.order_id == order_id)
        if purpose:
            query = query.where(Payment.purpose == _value(purpose))
        query = query.order_by(Payment.created_at.desc()).limit(1)
        try:
            async with session_scope(self.session_factory, session) as db:
                result = await db.execute(query)
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"❌ PAYMENT_LOOKUP_FAILED: order {order_id} ({_value(provider)}, purpose={purpose}): {e}")
            return None

    async def link_credit_transaction(
        self,
        provider: Union[PaymentProvider, str],
        provider_payment_id: str,
        credit_transaction_id: str,
        session: Optional[AsyncSession] = None,
    ) -> bool:
        return await self._set_link(provider, provider_payment_id, session, credit_transaction_id=credit_transaction_id)

    async def link_subscription(
        self,
        provider: Union[PaymentProvider, str],
        provider_payment_id: str,
        subscription_id: str,
        session: Optional[AsyncSession] = None,
    ) -> bool:
        return await self._set_link(provider, provider_payment_id, session, subscription_id=subscription_id)

    async def _set_link(
        self,
        provider: Union[PaymentProvider, str],
        provider_payment_id: str,
        session: Optional[AsyncSession],
        **values: str,
    ) -> bool:
        async with session_scope(self.session_factory, session) as db:
            async with async_atomic_transaction(db):
                result = await db.execute(
                    update(Payment)
                    .where(Payment.provider == _value(provider), Payment.provider_payment_id == provider_payment_id)
                    .values(updated_at=get_naive_utc_now(), **values)
                    .execution_options(synchronize_session="fetch")
                )
            return result.rowcount > 0

    @staticmethod
    async def _select_one(
        db: AsyncSession, provider: str, provider_payment_id: str, for_update: bool = False
    ) -> Optional[Payment]:
        query = select(Payment).where(
            Payment.provider == provider, Payment.provider_payment_id == provider_payment_id
        )
        if for_update:
            query = query.with_for_update()
        result = await db.execute(query)
        return result.scalar_one_or_none()
