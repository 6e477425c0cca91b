"""Async engine and session factory for the reminder database."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from nudge.config import Settings, get_settings


class Base(DeclarativeBase):
    """Declarative base for reminder, preset and push-subscription rows."""


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def create_engine(settings: Settings | None = None) -> AsyncEngine:
    settings = settings or get_settings()
    return create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        # MySQL drops idle connections after wait_timeout
        pool_recycle=settings.db_pool_recycle_s,
    )


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_engine()
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


def reset_engine() -> None:
    """Forget the engine and session factory.

    Celery tasks run each invocation in a fresh ``asyncio.run`` loop, and pooled
    connections cannot cross event loops.
    """
    global _engine, _session_factory
    _engine = None
    _session_factory = None
