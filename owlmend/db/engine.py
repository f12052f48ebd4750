"""Async engine and session factory for the knowledge store database."""

import os

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from owlmend.errors import ConfigurationError

DATABASE_URL_ENV = "OWLMEND_DATABASE_URL"


def _normalize_url(url: str) -> str:
    """Force the asyncpg driver; only PostgreSQL is supported (pgvector)."""
    u = url.strip()
    for prefix in ("postgres://", "postgresql://"):
        if u.startswith(prefix):
            return "postgresql+asyncpg://" + u[len(prefix) :]
    if u.startswith("postgresql+asyncpg://"):
        return u
    raise ConfigurationError("knowledge store URL must be postgresql:// or postgresql+asyncpg://")


def resolve_database_url(database_url: str | None = None) -> str:
    """The given URL, else OWLMEND_DATABASE_URL, normalized to asyncpg."""
    url = database_url or os.environ.get(DATABASE_URL_ENV, "")
    if not url.strip():
        raise ConfigurationError(f"knowledge store URL not set; set {DATABASE_URL_ENV} or knowledge.database_url")
    return _normalize_url(url)


def create_engine(database_url: str | None = None, *, pool_size: int = 10, echo: bool = False) -> AsyncEngine:
    """Pooled async engine; connections are pinged before use and recycled every 30 minutes."""
    return create_async_engine(
        resolve_database_url(database_url),
        pool_size=pool_size,
        max_overflow=pool_size,
        pool_recycle=1800,
        pool_pre_ping=True,
        echo=echo,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
