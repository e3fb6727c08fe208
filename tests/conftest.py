"""
Shared fixtures for the payment reconciliation test suites.

Each test gets its own file-backed SQLite database (aiosqlite) so that
concurrent sessions see each other's commits like they would on PostgreSQL,
an in-memory cache backend, and AsyncMock stand-ins for the gateway and the
failure-escalation collaborator.
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from caching.memory_backend import InMemoryRedis
from database import build_session_factory, create_tables
from models import CreditTransaction, CreditTransactionType, Payment, User
from services.cache_service import CacheService
from services.credit_allocation_service import CreditAllocationService
from services.nowpayments_service import GatewayPaymentReport, NOWPaymentsService
from services.payment_monitoring_service import PaymentMonitoringService
from services.payment_repository import PaymentRepository
from utils.db_advisory_locks import UserLockService
from utils.service_metrics import AllocationMetrics, MonitoringMetrics

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", poolclass=NullPool)
    assert await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def cache():
    return CacheService(InMemoryRedis())


@pytest.fixture
def repository(session_factory):
    return PaymentRepository(session_factory)


@pytest.fixture
def allocation_metrics():
    return AllocationMetrics()


@pytest.fixture
def monitoring_metrics():
    return MonitoringMetrics()


@pytest.fixture
def allocation_service(session_factory, cache, repository, allocation_metrics):
    return CreditAllocationService(
        session_factory=session_factory,
        cache=cache,
        lock_service=UserLockService(),
        metrics=allocation_metrics,
        payment_repository=repository,
        allocation_rate=Decimal("1.0"),
    )


@pytest.fixture
def gateway():
    gateway = MagicMock(spec=NOWPaymentsService)
    gateway.get_payment_status = AsyncMock()
    gateway.health_check = AsyncMock(return_value=True)
    return gateway


@pytest.fixture
def failure_handler():
    handler = MagicMock()
    handler.handle_monitoring_failure = AsyncMock()
    handler.handle_payment_failure = AsyncMock()
    handler.resolve_failure = AsyncMock()
    return handler


@pytest.fixture
def monitoring_service(session_factory, cache, gateway, allocation_service, failure_handler, monitoring_metrics, repository):
    return PaymentMonitoringService(
        session_factory=session_factory,
        cache=cache,
        gateway=gateway,
        allocation_service=allocation_service,
        failure_handler=failure_handler,
        metrics=monitoring_metrics,
        payment_repository=repository,
        batch_size=50,
        retry_attempts=3,
        retry_delay=0,
        monitoring_interval=30,
    )


@pytest.fixture
def create_user(session_factory):
    async def _create_user(is_active: bool = True) -> str:
        user_id = str(uuid.uuid4())
        async with session_factory() as db:
            db.add(User(id=user_id, email=f"{user_id[:8]}@example.com", is_active=is_active))
            await db.commit()
        return user_id
    return _create_user


@pytest.fixture
def create_reservation(session_factory):
    """Pending ledger row as written by checkout when a gateway invoice is created"""
    async def _create_reservation(
        user_id: str,
        payment_id: str,
        requested_usd: Any = 50,
        currency: str = "btc",
        pay_amount: Decimal = Decimal("0.001"),
        payment_status: str = "pending",
        metadata: Optional[Dict[str, Any]] = None,
        **overrides: Any,
    ) -> CreditTransaction:
        extra = {"requestedUsd": float(requested_usd), "paymentCompleted": False}
        extra.update(metadata or {})
        overrides.setdefault("type", CreditTransactionType.DEPOSIT.value)
        row = CreditTransaction(
            user_id=user_id,
            amount=Decimal("0"),
            balance_before=Decimal("0"),
            balance_after=Decimal("0"),
            description="Cryptocurrency payment pending",
            payment_id=payment_id,
            payment_status=payment_status,
            payment_currency=currency,
            payment_amount=pay_amount,
            extra_data=extra,
            **overrides,
        )
        async with session_factory() as db:
            db.add(row)
            await db.commit()
        return row
    return _create_reservation


@pytest.fixture
def create_ledger_entry(session_factory):
    async def _create_ledger_entry(user_id: str, amount: Decimal, type_: str = CreditTransactionType.BONUS.value) -> None:
        async with session_factory() as db:
            db.add(CreditTransaction(
                user_id=user_id,
                type=type_,
                amount=amount,
                balance_before=Decimal("0"),
                balance_after=amount,
                description="Existing ledger entry",
                extra_data={},
            ))
            await db.commit()
    return _create_ledger_entry


@pytest.fixture
def load_row(session_factory):
    async def _load_row(payment_id: str) -> Optional[CreditTransaction]:
        async with session_factory() as db:
            result = await db.execute(select(CreditTransaction).where(CreditTransaction.payment_id == payment_id))
            return result.scalar_one_or_none()
    return _load_row


@pytest.fixture
def load_payment(session_factory):
    async def _load_payment(provider_payment_id: str) -> Optional[Payment]:
        async with session_factory() as db:
            result = await db.execute(select(Payment).where(Payment.provider_payment_id == provider_payment_id))
            return result.scalar_one_or_none()
    return _load_payment


def make_report(payment_id: str, status: str = "finished", **fields: Any) -> GatewayPaymentReport:
    data = {
        "payment_id": payment_id,
        "payment_status": status,
        "price_amount": 50,
        "price_currency": "usd",
        "pay_amount": "0.001",
        "actually_paid": "0.001",
        "pay_currency": "btc",
        "payin_hash": f"hash-{payment_id}",
    }
    data.update(fields)
    return GatewayPaymentReport.from_api(data)


@pytest.fixture
def report_factory():
    return make_report
