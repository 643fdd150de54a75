"""Async database engine and session factory."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from sync_engine.config import settings


def create_session_factory(database_url: str, echo: bool = False):
    """Build an engine and a matching session factory."""
    engine = create_async_engine(database_url, echo=echo, pool_pre_ping=True)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine, AsyncSessionLocal = create_session_factory(settings.database_url, echo=settings.debug)


async def get_db():
    """Yield a session; used by API dependencies."""
    async with AsyncSessionLocal() as session:
        yield session
