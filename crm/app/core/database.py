"""
Wealth CRM Database Configuration
SQLAlchemy setup for PostgreSQL (SQLite in tests)
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase
from typing import Any, AsyncGenerator, Dict
import structlog

from .config import settings

logger = structlog.get_logger()


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def engine_options(database_url: str) -> Dict[str, Any]:
    """Engine keyword arguments; SQLite pools take no sizing options"""
    options: Dict[str, Any] = {"echo": settings.debug}
    if make_url(database_url).get_backend_name() != "sqlite":
        options.update(
            pool_pre_ping=True,
            pool_recycle=300,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )
    return options


# Create async engine
engine = create_async_engine(settings.database_url, **engine_options(settings.database_url))

# Create session maker
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception as e:
            logger.error("Database session error", error=str(e))
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db():
    """Initialize database tables"""
    async with engine.begin() as conn:
        # Import all models to register them
        from .. import models  # noqa: F401

        # Create all tables
        await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created/verified")


async def close_db():
    """Close database connections"""
    await engine.dispose()
    logger.info("Database connections closed")
