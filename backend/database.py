# database.py - Async database setup for Kanban Tracker
import logging

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from config import get_settings

logger = logging.getLogger("kanban-tracker.database")


def build_engine(database_url: str, echo: bool = False):
    """Create the async engine; pooling options only apply to server databases"""
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo, future=True)

    return create_async_engine(
        database_url,
        echo=echo,
        future=True,
        pool_size=20,
        max_overflow=0,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


_settings = get_settings()
engine = build_engine(_settings.database_url, echo=_settings.sql_echo)

# Create async session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db_session():
    """Dependency for getting database session (FastAPI Depends)"""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db():
    """Initialize database and create tables"""
    from models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database initialized")


async def close_db():
    """Close database connection pool"""
    await engine.dispose()

