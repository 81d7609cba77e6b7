import os
import tempfile

from cryptography.fernet import Fernet

# Must be set before any upsync imports that read settings
os.environ["DATA_DIR"] = tempfile.mkdtemp()
os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["SCHEDULER_ENABLED"] = "false"

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from upsync.budget.tracker import BudgetTracker
from upsync.core.clock import Clock
from upsync.database import Base
from upsync.models import CachedTransaction
from upsync.remote.models import RemoteTransaction, TransactionPage
from upsync.security.tokens import TokenProvider
from upsync.sync.store import TransactionStore


class FrozenClock(Clock):
    """Clock that only moves when told to. sleep() advances it instantly."""

    def __init__(self, start: datetime = None):
        self.current = start or datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)


def _remote_txn(
    remote_id: str,
    category: str | None = None,
    tags: list[str] = None,
    created_at: datetime = None,
    updated_at: datetime = None,
    with_update_field: bool = True,
    amount: str = "-12.50",
    description: str = "Coffee",
) -> RemoteTransaction:
    created_at = created_at or datetime(2026, 1, 1, tzinfo=timezone.utc)
    return RemoteTransaction(
        id=remote_id,
        account_id="acc-1",
        amount=amount,
        description=description,
        category=category,
        tags=tags or [],
        created_at=created_at,
        updated_at=updated_at,
        has_update_field=with_update_field,
    )


class FakeGateway:
    """In-memory stand-in for UpBankGateway that records every call."""

    def __init__(self, transactions: dict = None, pages: dict = None):
        self.transactions: dict[str, RemoteTransaction] = transactions or {}
        # cursor -> TransactionPage; None is the first page
        self.pages: dict[str | None, TransactionPage] = pages or {}
        self.calls: list[tuple] = []
        self.errors: dict[str, Exception] = {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        pass

    def _maybe_fail(self, name: str):
        if name in self.errors:
            raise self.errors[name]

    async def get_transaction(self, remote_id: str) -> RemoteTransaction:
        self.calls.append(("get_transaction", remote_id))
        self._maybe_fail("get_transaction")
        return self.transactions[remote_id]

    async def update_category(self, remote_id: str, category_id: str | None):
        self.calls.append(("update_category", remote_id, category_id))
        self._maybe_fail("update_category")
        self.transactions[remote_id].category = category_id

    async def add_tags(self, remote_id: str, tag_ids: list[str]):
        self.calls.append(("add_tags", remote_id, list(tag_ids)))
        self._maybe_fail("add_tags")
        self.transactions[remote_id].tags.extend(tag_ids)

    async def remove_tags(self, remote_id: str, tag_ids: list[str]):
        self.calls.append(("remove_tags", remote_id, list(tag_ids)))
        self._maybe_fail("remove_tags")
        txn = self.transactions[remote_id]
        txn.tags = [t for t in txn.tags if t not in tag_ids]

    async def list_transactions(self, page_size: int = None, page_after: str = None, since=None, **kwargs):
        self.calls.append(("list_transactions", page_after, since))
        self._maybe_fail("list_transactions")
        return self.pages[page_after]


@pytest_asyncio.fixture
async def session_factory():
    """Return a session factory backed by a fresh in-memory database."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield factory
    await engine.dispose()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def budget(session_factory, clock):
    return BudgetTracker(session_factory, clock=clock)


@pytest.fixture
def store(session_factory, clock):
    return TransactionStore(session_factory, clock=clock)


@pytest_asyncio.fixture
async def tokens(session_factory):
    provider = TokenProvider(session_factory)
    await provider.store_token("up:yeah:test-token")
    return provider


@pytest.fixture
def remote_txn():
    """Factory for remote transaction records."""
    return _remote_txn


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_cached(session_factory, clock):
    """Insert a cached transaction and return its local id."""

    async def _make(remote_id: str | None = "txn-1", category: str | None = None, tags: str = ""):
        async with session_factory() as session:
            row = CachedTransaction(
                remote_id=remote_id,
                account_id="acc-1",
                amount=Decimal("-12.50"),
                description="Coffee",
                category=category,
                tags=tags,
                occurred_at=clock.now() - timedelta(days=30),
                created_at=clock.now(),
                updated_at=clock.now(),
            )
            session.add(row)
            await session.commit()
            return row.id

    return _make


@pytest.fixture
def data_dir():
    """Return the temporary data directory."""
    return os.environ["DATA_DIR"]
