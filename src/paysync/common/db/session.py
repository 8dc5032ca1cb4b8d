from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncGenerator, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker

from paysync.common.config import get_settings
from paysync.common.db.models import Base

engine: Optional[AsyncEngine] = None
async_session_factory: Optional[async_sessionmaker[AsyncSession]] = None

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


def configure_database(database_url: Optional[str] = None, **engine_kwargs) -> AsyncEngine:
    """
    (Re)build the engine and session factory.
    Called lazily on first use with POSTGRES_DSN, or explicitly by tests.
    """
    global engine, async_session_factory

    database_url = database_url or get_settings().database_url
    if database_url.startswith("postgresql"):
        engine_kwargs.setdefault("pool_pre_ping", True)
        engine_kwargs.setdefault("pool_size", 10)
        engine_kwargs.setdefault("max_overflow", 20)

    engine = create_async_engine(
        database_url,
        echo=False, # Set to True for SQL query logging
        **engine_kwargs,
    )
    async_session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False # We want explicit flushes usually
    )
    return engine


async def create_schema() -> None:
    if engine is None:
        configure_database()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_database() -> None:
    global engine, async_session_factory
    if engine is not None:
        await engine.dispose()
    engine = None
    async_session_factory = None


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a transactional scope around a series of operations.
    """
    if async_session_factory is None:
        configure_database()

    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
