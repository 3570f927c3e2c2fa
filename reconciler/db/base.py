"""Async engine, session factory and declarative base."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from reconciler.core.config import get_settings

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./reconciler.db"


def get_database_url() -> str:
    """Return the configured database URL, falling back to local SQLite."""
    return get_settings().DATABASE_URL or DEFAULT_DATABASE_URL


engine = create_async_engine(get_database_url(), echo=False, pool_pre_ping=True)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    pass
