
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
import structlog

from .config import settings

logger = structlog.get_logger(__name__)

# Lazy initialization - the engine is created on first use
_engine = None
_SessionLocal = None

def get_engine():
    """Return the engine, creating it on first use (None when SKIP_DB is set)."""
    global _engine
    if _engine is None and not settings.SKIP_DB:
        DATABASE_URL = f"postgresql+asyncpg://{settings.DB_USER}:{settings.DB_PASSWORD}@{settings.DB_HOST}:{settings.DB_PORT}/{settings.DB_NAME}"
        _engine = create_async_engine(DATABASE_URL, echo=False, pool_pre_ping=True)
    return _engine

def get_session_local() -> async_sessionmaker[AsyncSession] | None:
    """Return the session factory, creating it on first use."""
    global _SessionLocal
    if _SessionLocal is None:
        engine = get_engine()
        if engine is not None:
            _SessionLocal = async_sessionmaker(engine, expire_on_commit=False)
    return _SessionLocal

async def init_db() -> None:
    """Create the pgvector extension and all tables if they do not exist yet."""
    engine = get_engine()
    if engine is None:
        return
    from . import models  # noqa: F401  registers tables on Base.metadata

    async with engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", host=settings.DB_HOST, database=settings.DB_NAME)

async def dispose_engine() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _SessionLocal = None

class Base(DeclarativeBase):
    pass
