"""
Database Configuration and Session Management
============================================

This module provides the async database engine, session factory, and table
creation for the payment reconciliation worker. The engine is built on first
use so that importing models or services never requires DATABASE_URL.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from config import Config
from models import Base

logger = logging.getLogger(__name__)

_async_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def to_async_database_url(url: str) -> str:
    """Convert a plain PostgreSQL URL for asyncpg"""
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    # asyncpg uses 'ssl' instead of 'sslmode' parameter
    for mode in ("require", "prefer", "disable"):
        url = url.replace(f"sslmode={mode}", f"ssl={mode}")
    return url


def get_async_engine() -> AsyncEngine:
    global _async_engine
    if _async_engine is None:
        if not Config.DATABASE_URL:
            raise ValueError("DATABASE_URL environment variable is required")

        url = to_async_database_url(Config.DATABASE_URL)
        kwargs = {"echo": Config.DATABASE_ECHO, "pool_pre_ping": True}
        if url.startswith("postgresql+asyncpg://"):
            kwargs.update(
                pool_size=Config.DATABASE_POOL_SIZE,
                max_overflow=Config.DATABASE_MAX_OVERFLOW,
                pool_recycle=3600,
                pool_timeout=30,
                connect_args={
                    "server_settings": {"application_name": "payment_reconciliation_worker"},
                    "timeout": 10,
                    "command_timeout": 30,
                },
            )
        _async_engine = create_async_engine(url, **kwargs)
        logger.info(f"🗄️ DB_ENGINE_CREATED: dialect={_async_engine.dialect.name}")
    return _async_engine


def get_session_factory() -> async_sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(get_async_engine())
    return _session_factory


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,  # objects stay readable after commit in background jobs
    )


@asynccontextmanager
async def async_managed_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager for database sessions.

    Commits on clean exit, rolls back and re-raises on error.

    Usage:
        async with async_managed_session() as session:
            result = await session.execute(select(User).where(...))
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def create_tables(engine: Optional[AsyncEngine] = None) -> bool:
    """Create all database tables if they don't exist"""
    engine = engine or get_async_engine()
    try:
        logger.info(f"🏗️ Creating database tables: {', '.join(sorted(Base.metadata.tables))}")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all, checkfirst=True)
        logger.info("✅ Database schema verified")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        return False


async def test_connection() -> bool:
    """Test database connectivity"""
    try:
        async with get_async_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("✅ Database connection successful")
        return True
    except Exception as e:
        logger.error(f"❌ Database connection failed: {e}")
        return False


async def dispose_engine() -> None:
    global _async_engine, _session_factory
    if _async_engine is not None:
        await _async_engine.dispose()
        logger.info("🗄️ DB_ENGINE_DISPOSED")
    _async_engine = None
    _session_factory = None
