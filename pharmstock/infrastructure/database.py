from datetime import datetime, timezone
from contextlib import asynccontextmanager
from typing import AsyncGenerator
import uuid

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from pharmstock.core.config import settings
from pharmstock.core.exceptions import handle_database_error

# Check if using SQLite
is_sqlite = "sqlite" in settings.DATABASE_URL.lower()


def build_engine(database_url: str, echo: bool = False):
    """Create the async engine for a database URL"""
    if "sqlite" in database_url.lower():
        # aiosqlite: one shared connection so in-memory databases survive
        return create_async_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(
        database_url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,
        pool_recycle=3600,
        echo=echo
    )


def build_sessionmaker(bind) -> async_sessionmaker:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
AsyncSessionLocal = build_sessionmaker(engine)

# Base model
Base = declarative_base()


def gen_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def unit_of_work(db: AsyncSession, operation: str = "database operation"):
    """Commit when the block succeeds, roll back on any error"""
    try:
        yield db
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise handle_database_error(e, operation)
    except BaseException:
        await db.rollback()
        raise


async def init_db():
    """Initialize database tables"""
    # Register every mapped table on Base.metadata
    from pharmstock.domain.stock import models as _stock_models  # noqa: F401
    from pharmstock.domain.requisitions import models as _requisition_models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    """Close database connections"""
    await engine.dispose()
