import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from knowledge_pipeline.entities import CollectionRun, CollectionTimestamp, Job, WorkItem

logger = logging.getLogger(__name__)


def current_timestamp() -> int:
    return int(time.time())


def create_session_maker(database_url: str) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    url = make_url(database_url)
    is_sqlite = url.get_backend_name() == "sqlite"
    engine_kwargs: dict[str, Any] = {"echo": False}
    if is_sqlite:
        engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 20}
    else:
        engine_kwargs.update(pool_size=10, max_overflow=20, pool_timeout=30, pool_recycle=3600)

    engine = create_async_engine(database_url, **engine_kwargs)

    if is_sqlite:

        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn: Any, _connection_record: Any) -> None:
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    logger.debug(f"Created session maker for {url.render_as_string(hide_password=True)}")
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def get_session(
    session_maker: async_sessionmaker[AsyncSession],
    read_only: bool = False,
) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        try:
            yield session
            if not read_only:
                await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def sync_database_url(database_url: str) -> str:
    """Driver-less URL for Alembic, which migrates over a synchronous connection."""
    url = make_url(database_url)
    backend = url.get_backend_name()
    return url.set(drivername=backend).render_as_string(hide_password=False)


__all__ = [
    "create_session_maker",
    "current_timestamp",
    "get_session",
    "sync_database_url",
    "CollectionRun",
    "CollectionTimestamp",
    "Job",
    "WorkItem",
]
