"""Shared test fixtures.

Provides:
- A fresh SQLite database (aiosqlite) per test with every table created
- A ``session_factory`` matching the repositories' session-factory contract
- A RetryExecutor whose backoff sleeps are recorded instead of awaited
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from src.dealsmart.assistance import models as _assistance_models  # noqa: F401
from src.dealsmart.audit import models as _audit_models  # noqa: F401
from src.dealsmart.billing import models as _billing_models  # noqa: F401
from src.dealsmart.conversations import models as _conversation_models  # noqa: F401
from src.dealsmart.core.database import Base
from src.dealsmart.core.retry import RetryExecutor, RetryPolicy
from src.dealsmart.idempotency import models as _idempotency_models  # noqa: F401


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite engine so concurrent sessions see each other's commits."""
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'hub.db'}")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Async generator factory yielding sessions, as the repositories expect."""

    async def _factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return _factory


class RecordingSleep:
    """Awaitable sleep stand-in that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(
        timeout_seconds=5,
        max_attempts=3,
        base_delay_seconds=0.5,
        backoff_multiplier=2.0,
        jitter_seconds=0.0,
    )


@pytest.fixture
def executor(retry_policy, fake_sleep) -> RetryExecutor:
    return RetryExecutor(default_policy=retry_policy, sleep=fake_sleep)
