"""
Centralized Test Configuration.
"""

import time

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import Pool, StaticPool

from payout_backend.app.main import app
from payout_backend.app.core.config import settings
from payout_backend.app.core.redis_client import get_redis
from payout_backend.app.db.session import get_db, Base
from payout_backend.app.models.wallet_enums import TransferOutcome
from payout_backend.app.services.bank_transfer import get_bank_client

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)).lower():
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


# Mock Redis for reliability in CI/CD
class MockRedis:
    """In-process Redis double supporting SET NX/EX with expiry."""

    def __init__(self):
        self.store = {}
        self.expiry = {}
        self.offset = 0.0
        self._closed = False

    def _now(self):
        return time.monotonic() + self.offset

    def _evict(self, key):
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= self._now():
            self.store.pop(key, None)
            self.expiry.pop(key, None)

    def advance(self, seconds: float):
        """Move the clock forward so TTLs elapse without sleeping."""
        self.offset += seconds

    async def ping(self):
        return not self._closed

    async def get(self, key):
        self._evict(key)
        return self.store.get(key)

    async def set(self, key, value, ex=None, px=None, nx=False):
        self._evict(key)
        if nx and key in self.store:
            return None
        self.store[key] = value
        if ex is not None:
            self.expiry[key] = self._now() + ex
        elif px is not None:
            self.expiry[key] = self._now() + px / 1000
        else:
            self.expiry.pop(key, None)
        return True

    async def delete(self, key):
        self._evict(key)
        self.expiry.pop(key, None)
        if key in self.store:
            del self.store[key]
            return 1
        return 0

    async def exists(self, key):
        self._evict(key)
        return 1 if key in self.store else 0

    async def flushdb(self):
        self.store = {}
        self.expiry = {}

    async def aclose(self):
        self._closed = True
        self.store = {}


class FakeBankClient:
    """
    Scriptable bank-transfer collaborator.

    initiate_errors are raised one per call before a send succeeds.
    """

    def __init__(self):
        self.initiate_errors = []
        self.outcome = TransferOutcome.SUCCESS
        self.poll_error = None
        self.resolved_name = "Ada Vendor"
        self.sent = []
        self.initiate_calls = 0
        self.poll_calls = 0

    async def initiate_transfer(self, bank, amount_minor, currency, reference):
        self.initiate_calls += 1
        if self.initiate_errors:
            raise self.initiate_errors.pop(0)
        self.sent.append({"reference": reference, "amount_minor": amount_minor, "currency": currency})
        return f"TRF_{reference}"

    async def poll_status(self, reference):
        self.poll_calls += 1
        if self.poll_error is not None:
            raise self.poll_error
        return self.outcome

    async def resolve_account(self, account_number, bank_code):
        return self.resolved_name


@pytest.fixture
async def engine():
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# Shared session for fixture data creation
@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def redis():
    return MockRedis()


@pytest.fixture
def bank():
    return FakeBankClient()


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """No real backoff sleeps in tests."""
    monkeypatch.setattr(settings, "transfer_backoff_seconds", 0.0)
    monkeypatch.setattr(settings, "transfer_max_retries", 2)
    monkeypatch.setattr(settings, "transfer_timeout_seconds", 1.0)


@pytest.fixture
async def client(session_factory, redis, bank):
    """Async client for testing."""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    async def override_get_redis():
        return redis

    async def override_get_bank_client():
        return bank

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_bank_client] = override_get_bank_client

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides = {}
