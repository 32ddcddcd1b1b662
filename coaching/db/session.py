from typing import Any, AsyncGenerator, Dict

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from coaching.core.config import settings


def _engine_options(database_url: str) -> Dict[str, Any]:
    options: Dict[str, Any] = {"echo": settings.sql_echo, "future": True}
    if make_url(database_url).get_backend_name() == "sqlite":
        # Local runs: aiosqlite hands the connection to a worker thread
        options["connect_args"] = {"check_same_thread": False}
    else:
        # Idle connections dropped by the server are replaced before use
        options.update(pool_pre_ping=True, pool_recycle=300)
    return options


engine = create_async_engine(settings.database_url, **_engine_options(settings.database_url))

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session
