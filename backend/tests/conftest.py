"""
Shared fixtures.

The durable store is a real SQLite file (aiosqlite) so concurrent
sessions genuinely contend on the same rows; Redis is fakeredis.
"""

import datetime
import os

# Settings are read at import time; DATABASE_URL is required.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("USAGE_RESET_ENABLED", "false")

import fakeredis
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

import app.models.api_key  # noqa: F401
import app.models.api_request_log  # noqa: F401
import app.models.api_usage  # noqa: F401
from app.core.database import Base, build_session_factory
from app.services.api_keys import ApiKeyService
from app.services.key_directory import KeyDirectory
from app.services.quota import QuotaTracker

UTC = datetime.timezone.utc


class FrozenClock:
    """Callable clock returning an aware UTC datetime that tests move by hand."""

    def __init__(self, now: datetime.datetime) -> None:
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += datetime.timedelta(**kwargs)

    def timestamp(self) -> float:
        return self.now.timestamp()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime.datetime(2026, 3, 10, 12, 0, tzinfo=UTC))


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'gateway.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def cache():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def key_directory(session_factory, cache) -> KeyDirectory:
    return KeyDirectory(session_factory, cache)


@pytest.fixture
def quota(session_factory, clock) -> QuotaTracker:
    return QuotaTracker(session_factory, clock=clock, store_timeout=30, store_attempts=3)


@pytest.fixture
def key_service(session_factory, key_directory, quota) -> ApiKeyService:
    return ApiKeyService(session_factory, key_directory, quota)
