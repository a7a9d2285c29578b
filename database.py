"""
Database Configuration and Session Management
============================================

Async engine, session factory and table creation for the escrow engine.
Engines are created lazily so that importing this module never requires a
configured DATABASE_URL.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from config import Config
from models import Base

logger = logging.getLogger(__name__)

_async_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def to_async_url(database_url: str) -> str:
    """Convert a sync driver URL into its async-driver equivalent"""
    if database_url.startswith('postgresql://'):
        # asyncpg uses 'ssl' instead of 'sslmode' parameter
        database_url = database_url.replace('postgresql://', 'postgresql+asyncpg://')
        database_url = database_url.replace('sslmode=require', 'ssl=require')
        database_url = database_url.replace('sslmode=prefer', 'ssl=prefer')
        database_url = database_url.replace('sslmode=disable', 'ssl=disable')
    elif database_url.startswith('sqlite://'):
        database_url = database_url.replace('sqlite://', 'sqlite+aiosqlite://')
    return database_url


def build_async_engine(database_url: str) -> AsyncEngine:
    """Create an async engine with pool settings suited to the backend"""
    async_url = to_async_url(database_url)
    if async_url.startswith('sqlite'):
        return create_async_engine(async_url, echo=False)

    return create_async_engine(
        async_url,
        pool_size=Config.DATABASE_POOL_SIZE,
        max_overflow=Config.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,       # Wait max 30 seconds for connection during bursts
        echo=False,
        connect_args={
            "server_settings": {"application_name": "agent_cash_engine"},
            "timeout": 10,
            "command_timeout": 30,
        },
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory with expire_on_commit disabled so records stay usable after commit"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


def get_async_engine() -> AsyncEngine:
    global _async_engine
    if _async_engine is None:
        if not Config.DATABASE_URL:
            raise ValueError("DATABASE_URL environment variable is required")
        _async_engine = build_async_engine(Config.DATABASE_URL)
    return _async_engine


def get_session_factory() -> async_sessionmaker:
    """Get the process-wide async session factory"""
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(get_async_engine())
    return _session_factory


@asynccontextmanager
async def async_managed_session(session_factory: Optional[async_sessionmaker] = None):
    """Async context manager for database sessions: commit on success, rollback on error"""
    factory = session_factory or get_session_factory()
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception as e:
        logger.error(f"Database session error: {e}")
        await session.rollback()
        raise
    finally:
        await session.close()


async def create_tables(engine: Optional[AsyncEngine] = None) -> None:
    """Create all database tables if they don't exist"""
    engine = engine or get_async_engine()
    logger.info(f"🏗️ Creating database tables (if they don't exist): {len(Base.metadata.tables)} models")
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all, checkfirst=True)
    logger.info("✅ Database schema verified")


async def dispose_engine() -> None:
    global _async_engine, _session_factory
    if _async_engine is not None:
        await _async_engine.dispose()
    _async_engine = None
    _session_factory = None
