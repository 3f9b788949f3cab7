from typing import AsyncGenerator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from groupbuy.config.settings import settings


def _driver_timeouts(driver: str) -> dict:
    """connect_args bounding connects and statements for the Postgres driver."""
    if driver == "asyncpg":
        return {
            "timeout": settings.DB_CONNECT_TIMEOUT_SECONDS,
            "command_timeout": settings.DB_OPERATION_TIMEOUT_SECONDS,
        }
    return {}


def _engine_options(database_url: str) -> dict:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        # sqlite only blocks on locks; the busy timeout bounds each statement
        return {"connect_args": {"timeout": settings.DB_OPERATION_TIMEOUT_SECONDS}}
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
        "pool_timeout": settings.DB_CONNECT_TIMEOUT_SECONDS,
        "connect_args": _driver_timeouts(url.get_driver_name()),
    }


engine = create_async_engine(
    str(settings.DATABASE_URL),
    echo=False,
    **_engine_options(str(settings.DATABASE_URL)),
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False
)


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get async database session"""
    async with AsyncSessionLocal() as db:
        try:
            yield db
        except Exception:
            await db.rollback()
            raise
