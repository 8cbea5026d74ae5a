# attendance_monitor/db/session.py
import os

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from attendance_monitor.core.config import get_settings
from attendance_monitor.db.base import Base

# Import ORM models so that Base.metadata is aware of them
from attendance_monitor.models.store_entry import StoreEntry  # noqa: F401

settings = get_settings()

# Detect if we're running under pytest
IS_TEST = "PYTEST_CURRENT_TEST" in os.environ


def build_engine(db_url: str) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    Under pytest a NullPool is used so connections are never reused across
    event loops.
    """
    kwargs = {"echo": False, "future": True}
    if IS_TEST:
        kwargs["poolclass"] = NullPool
    return create_async_engine(db_url, **kwargs)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        autoflush=False,
        expire_on_commit=False,
        class_=AsyncSession,
    )


# ---------------------------------------------------------------------------
# Main application engine + session
# ---------------------------------------------------------------------------
engine = build_engine(settings.DB_URL)
AsyncSessionLocal = build_session_factory(engine)


async def init_db(bind: AsyncEngine | None = None) -> None:
    """
    Create the schema if it does not exist yet.

    Safe to call on every application startup.
    """
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def reset_db(bind: AsyncEngine | None = None) -> None:
    """
    TEST-ONLY: drop all tables and recreate them.
    """
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
