"""Atomic transaction utilities for ledger and payment record mutations"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


@asynccontextmanager
async def async_atomic_transaction(session: AsyncSession) -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager for atomic database transactions with proper rollback.

    Nested use on the same session defers the commit to the outermost level.
    Any exception rolls the whole transaction back and is re-raised.
    """
    transaction_depth = getattr(session, '_atomic_transaction_depth', 0)
    try:
        setattr(session, '_atomic_transaction_depth', transaction_depth + 1)

        if transaction_depth > 0:
            logger.debug(f"Nested async transaction detected (depth: {transaction_depth + 1})")

        yield session

        # For nested transactions, let the outermost handle commit
        if transaction_depth == 0:
            await session.commit()
            logger.debug("Outermost async transaction committed successfully")

    except Exception as e:
        await session.rollback()
        logger.error(f"Async transaction rolled back due to error (depth: {transaction_depth + 1}): {e}")
        raise
    finally:
        current_depth = getattr(session, '_atomic_transaction_depth', 1)
        setattr(session, '_atomic_transaction_depth', max(0, current_depth - 1))


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker, session: Optional[AsyncSession] = None
) -> AsyncIterator[AsyncSession]:
    """
    Yield the caller's session when one is given, otherwise open and close
    a fresh one from the factory. The caller's session is never closed here.
    """
    if session is not None:
        yield session
        return

    async with session_factory() as own_session:
        yield own_session
