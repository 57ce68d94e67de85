from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy import event, text
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool
import contextlib
from typing import AsyncIterator
from mailsync.config import settings
from mailsync.utils.logging import get_logger

logger = get_logger("database")

Base = declarative_base()


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def create_optimized_async_engine(database_url: str = None):
    """Create the async engine for the configured database."""
    url = database_url or settings.database_url

    engine_kwargs = {
        "url": url,
        "echo": settings.database_echo,
        "future": True,
    }

    if _is_sqlite(url):
        # One connection per session; lets concurrent lease attempts contend for real
        engine_kwargs["poolclass"] = NullPool
        engine_kwargs["connect_args"] = {"timeout": 30}
    else:
        engine_kwargs.update({
            "connect_args": {
                "server_settings": {"application_name": f"{settings.app_name}_sync"},
                "command_timeout": 60,
            },
            "pool_size": 10,
            "max_overflow": 15,
            "pool_timeout": 30,
            "pool_recycle": 1800,
            "pool_pre_ping": True,
        })

    engine = create_async_engine(**engine_kwargs)

    if _is_sqlite(url):
        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


engine = create_optimized_async_engine()

session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    autoflush=False,
    expire_on_commit=False,
)


@contextlib.asynccontextmanager
async def get_session_context() -> AsyncIterator[AsyncSession]:
    """
    Session for services that manage their own transactions.

    Callers commit explicitly; anything left uncommitted is rolled back.
    """
    session = session_factory()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def check_database_health() -> bool:
    try:
        async with get_session_context() as session:
            await session.execute(text("SELECT 1"))
            return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


async def create_tables():
    """Create all tables."""
    from mailsync.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_tables():
    """Drop all tables."""
    from mailsync.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
