import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from orderflow.config import settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with pool settings appropriate for the backend."""
    # SQLite doesn't support pool settings
    if database_url.startswith("sqlite"):
        return create_async_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    # Convert database URL for proper driver
    if database_url.startswith("postgresql+asyncpg://"):
        database_url = database_url.replace("postgresql+asyncpg://", "postgresql+psycopg://")
    elif database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+psycopg://")

    return create_async_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,  # Check connection health before use
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        connect_args={"connect_timeout": 30},
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)

# Create async session factory
async_session_factory = build_session_factory(engine)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


async def init_db(bind: AsyncEngine = engine) -> None:
    """Initialize database tables."""
    # Import all models to register them with Base.metadata
    from orderflow import models  # noqa: F401

    logger.info(f"Registered {len(Base.metadata.tables)} tables")

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")
