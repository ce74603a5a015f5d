from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy import event, text
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool
from typing import Optional
from mailsync.config import settings
from mailsync.utils.logging import get_logger

logger = get_logger("database")

Base = declarative_base()


def create_optimized_async_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create an async engine suited to the configured backend."""
    url = database_url or settings.database_url

    engine_kwargs = {
        "url": url,
        "echo": settings.debug,
        "future": True,
    }

    if url.startswith("sqlite"):
        # One shared connection keeps in-memory databases alive across sessions
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url:
            engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs.update({
            "pool_size": 10,
            "max_overflow": 15,
            "pool_timeout": 30,
            "pool_recycle": 1800,
            "pool_pre_ping": True,
        })

    engine = create_async_engine(**engine_kwargs)

    if url.startswith("sqlite"):
        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_optimized_async_engine()
    return _engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)


def session_factory() -> AsyncSession:
    """Create a session bound to the application engine."""
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory()


async def init_models(engine: Optional[AsyncEngine] = None) -> None:
    """Create tables that do not exist yet."""
    # Import models so they register on Base.metadata
    from mailsync.db import models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def check_database_health(engine: Optional[AsyncEngine] = None) -> bool:
    """Check database connectivity and health."""
    try:
        async with (engine or get_engine()).connect() as conn:
            await conn.execute(text("SELECT 1"))
            return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
