import logging

from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine
from contextlib import asynccontextmanager
from .config import settings

logger = logging.getLogger(__name__)

# Ensure the DATABASE_URL uses an async driver (asyncpg) for SQLAlchemy asyncio
if settings.DATABASE_URL.startswith("postgresql://") and "+asyncpg" not in settings.DATABASE_URL:
    raise RuntimeError(
        "DATABASE_URL must use an async driver for async SQLAlchemy (e.g. postgresql+asyncpg://...). "
        "Update your DATABASE_URL or set the DATABASE_URL environment variable accordingly."
    )


def make_engine(url: str, **kwargs) -> AsyncEngine:
    """Build an async engine; SQLite connections get foreign keys switched on."""
    if url.startswith("sqlite"):
        eng = create_async_engine(url, echo=settings.DB_ECHO, **kwargs)

        # ride cancel relies on ON DELETE CASCADE
        @event.listens_for(eng.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return eng
    return create_async_engine(
        url,
        echo=settings.DB_ECHO,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        **kwargs,
    )


engine: AsyncEngine = make_engine(settings.DATABASE_URL)


@asynccontextmanager
async def get_conn():
    async with engine.connect() as conn:
        yield conn


async def init_db(target: AsyncEngine | None = None):
    from .models import metadata as models_metadata
    async with (target or engine).begin() as conn:
        await conn.run_sync(models_metadata.create_all)


async def ping(conn) -> bool:
    """Run a trivial query on `conn`; False if the database is unreachable."""
    try:
        await conn.exec_driver_sql("SELECT 1")
        await conn.rollback()
        return True
    except Exception as e:
        logger.warning("database_ping_failed: %s", e)
        return False
