"""
Per-user transaction-scoped locks for ledger mutations.

On PostgreSQL this takes pg_advisory_xact_lock, which is held until the
surrounding transaction commits or rolls back. Other dialects (SQLite in
tests and local runs) get a process-local asyncio.Lock per user that the
caller holds for the whole transaction block.
"""

import asyncio
import hashlib
import logging
import time
import weakref
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class DBAdvisoryLockError(Exception):
    """Base exception for advisory lock operations"""
    pass


class UserLockService:
    """
    Serializes balance-affecting transactions per user.

    Usage:
        async with lock_service.user_lock(session, user_id):
            async with async_atomic_transaction(session):
                ...  # read balance, update ledger row
    """

    # 32-bit namespace so ledger locks never collide with other advisory lock users
    CREDIT_LEDGER_NAMESPACE = 0x43524544  # 'CRED' in hex

    def __init__(self):
        self._local_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self.metrics: Dict[str, Any] = {
            'locks_acquired': 0,
            'advisory_locks_acquired': 0,
            'local_locks_acquired': 0,
            'lock_errors': 0,
            'total_wait_seconds': 0.0,
        }

    @staticmethod
    def _generate_lock_id(key: str) -> int:
        """Deterministic positive 32-bit lock id for a string key"""
        key_hash = hashlib.sha256(key.encode('utf-8')).hexdigest()
        return int(key_hash[:8], 16) & 0x7FFFFFFF

    def _get_local_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._local_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._local_locks[user_id] = lock
        return lock

    @staticmethod
    def _is_postgresql(session: AsyncSession) -> bool:
        return session.get_bind().dialect.name == "postgresql"

    @asynccontextmanager
    async def user_lock(self, session: AsyncSession, user_id: str) -> AsyncIterator[None]:
        start_time = time.monotonic()

        if self._is_postgresql(session):
            lock_id = self._generate_lock_id(f"credit_ledger:{user_id}")
            try:
                # Released automatically when the transaction ends
                await session.execute(
                    text("SELECT pg_advisory_xact_lock(:namespace, :lock_id)"),
                    {"namespace": self.CREDIT_LEDGER_NAMESPACE, "lock_id": lock_id},
                )
            except Exception as e:
                self.metrics['lock_errors'] += 1
                logger.error(f"❌ CREDIT_LOCK_ERROR: user {user_id} - {e}")
                raise DBAdvisoryLockError(f"Could not lock ledger for user {user_id}: {e}") from e

            self._record_acquired('advisory_locks_acquired', user_id, start_time)
            yield
            return

        local_lock = self._get_local_lock(user_id)
        async with local_lock:
            self._record_acquired('local_locks_acquired', user_id, start_time)
            yield

    def _record_acquired(self, kind: str, user_id: str, start_time: float) -> None:
        waited = time.monotonic() - start_time
        self.metrics['locks_acquired'] += 1
        self.metrics[kind] += 1
        self.metrics['total_wait_seconds'] += waited
        logger.debug(f"🔒 CREDIT_LOCK_ACQUIRED: user {user_id} in {waited:.3f}s")

    def get_metrics(self) -> Dict[str, Any]:
        return dict(self.metrics)
