# ==============================================================================
# == backend/accesshub/database.py - Engine & session factory               ==
# ==============================================================================

import logging

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool

from .config import Settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def _enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """
    The sqlite3 driver opens transactions on its own and breaks SAVEPOINT.
    Hand transaction control back to SQLAlchemy so nested transactions work.
    """
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_optimized_engine(settings: Settings) -> AsyncEngine:
    database_url = settings.DATABASE_URL
    if database_url.startswith("sqlite"):
        logger.info("Using SQLite with NullPool (no connection pooling)")
        engine = create_async_engine(
            database_url, echo=settings.DB_ECHO, poolclass=NullPool,
            connect_args={"check_same_thread": False}
        )
        _enable_sqlite_savepoints(engine)
        return engine

    logger.info(f"Using connection pool: size={settings.DB_POOL_SIZE}, max_overflow={settings.DB_MAX_OVERFLOW}")
    return create_async_engine(
        database_url, echo=settings.DB_ECHO, poolclass=AsyncAdaptedQueuePool,
        pool_size=settings.DB_POOL_SIZE, max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT, pool_recycle=settings.DB_POOL_RECYCLE,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def init_models(engine: AsyncEngine) -> None:
    # Import so every table is registered on Base.metadata
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
