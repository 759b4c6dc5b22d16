"""Async SQLAlchemy engine, declarative base and session factory.

Provides:
- Base: Declarative base for every persisted model
- get_engine(): Lazily created engine singleton
- get_session(): Async generator yielding an AsyncSession (the
  ``session_factory`` handed to every repository)
- init_db() / close_db(): Lifespan hooks
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.dealsmart.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def _engine_options(url: str) -> dict:
    """Pool sizing applies to server databases; SQLite (local dev) uses the defaults."""
    settings = get_settings()
    options: dict = {"echo": settings.DATABASE_ECHO}
    if not url.startswith("sqlite"):
        options.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_pre_ping=True,
        )
    return options


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        url = get_settings().DATABASE_URL
        _engine = create_async_engine(url, **_engine_options(url))
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for all DealSmart models."""


# ── Session Factory ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the application engine."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db() -> None:
    """Create tables that do not exist yet.

    Model modules are imported here so their tables register on Base.metadata.
    """
    from src.dealsmart.assistance import models as _assistance_models  # noqa: F401
    from src.dealsmart.audit import models as _audit_models  # noqa: F401
    from src.dealsmart.billing import models as _billing_models  # noqa: F401
    from src.dealsmart.conversations import models as _conversation_models  # noqa: F401
    from src.dealsmart.idempotency import models as _idempotency_models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
