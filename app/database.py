"""
Database engine and session management.
Defaults to an embedded SQLite file through aiosqlite.
"""
import logging
from typing import Optional
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from app.core.config import get_settings
from app.exceptions import ConfigurationException

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def _enable_sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine, enabling WAL and foreign keys on SQLite"""
    engine = create_async_engine(database_url, echo=echo)

    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_pragmas)

    return engine


def dialect_insert(session: AsyncSession, model):
    """
    INSERT construct supporting ON CONFLICT clauses for the session's dialect.
    """
    dialect = session.bind.dialect.name
    if dialect == "sqlite":
        return sqlite_insert(model)
    if dialect == "postgresql":
        return postgresql_insert(model)
    raise ConfigurationException(f"Unsupported database dialect for conflict-safe inserts: {dialect}")


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


_settings = get_settings()
engine = create_engine(_settings.DATABASE_URL, echo=_settings.DATABASE_ECHO)
AsyncSessionLocal = create_session_factory(engine)


async def init_db(target_engine: Optional[AsyncEngine] = None):
    """Create all tables if they do not exist"""
    from app.models import api_usage, flight, status_change, subscription  # noqa: F401

    target_engine = target_engine or engine
    async with target_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready")


async def close_db(target_engine: Optional[AsyncEngine] = None):
    """Dispose engine connections"""
    await (target_engine or engine).dispose()
