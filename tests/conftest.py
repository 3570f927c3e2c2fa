import os
import sys
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Ensure project root is on sys.path so `import reconciler` works when running pytest from root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Force test database URL before any reconciler imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

from reconciler.db import base as db_base  # noqa: E402
from reconciler.db.models import Transaction, TransactionStatus, Wallet  # noqa: E402
from reconciler.db.repositories import (  # noqa: E402
    TransactionRepository,
    WalletRepository,
)
from reconciler.db.unit_of_work import UnitOfWork  # noqa: E402
from reconciler.reconciliation.clients.mock_client import MockChainClient  # noqa: E402
from reconciler.reconciliation.config import (  # noqa: E402
    FailureBackoffConfig,
    ReconcilerConfig,
    RetryConfig,
)
from reconciler.reconciliation.job import ReconciliationJob  # noqa: E402


@pytest_asyncio.fixture
async def session_factory(tmp_path, monkeypatch):
    """
    Provide a session factory bound to a fresh SQLite file for each test.

    The app-wide AsyncSessionLocal is pointed at it too, so code paths that
    open a UnitOfWork without an explicit factory hit the same database.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'reconciler.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(db_base.Base.metadata.create_all)

    factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    monkeypatch.setattr(db_base, "AsyncSessionLocal", factory)

    yield factory

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Get a database session for a test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def make_config():
    """Build a ReconcilerConfig tuned for fast tests."""

    def _make(**overrides) -> ReconcilerConfig:
        values: Dict[str, Any] = dict(
            interval_ms=50,
            resolver_timeout_seconds=1.0,
            shutdown_grace_seconds=1.0,
            retry=RetryConfig(
                max_attempts=1, initial_delay=0.01, max_delay=0.01, jitter=False
            ),
            failure_backoff=FailureBackoffConfig(
                initial_delay_seconds=0, max_poll_failures=None
            ),
        )
        values.update(overrides)
        return ReconcilerConfig(**values)

    return _make


@pytest.fixture
def chain_client():
    return MockChainClient()


@pytest.fixture
def make_job(session_factory, make_config, chain_client):
    """Build a ReconciliationJob wired to the test database."""

    def _make(client: Optional[MockChainClient] = None, **config_overrides):
        return ReconciliationJob(
            client=client or chain_client,
            config=make_config(**config_overrides),
            session_factory=session_factory,
            instance_id="test-instance",
        )

    return _make


@pytest.fixture
def create_wallet(session_factory):
    async def _create(
        chain: str = "ethereum",
        address: Optional[str] = None,
        balance: Optional[Dict[str, str]] = None,
    ) -> Wallet:
        async with UnitOfWork(session_factory=session_factory) as uow:
            wallet = await uow.wallets.create(
                chain=chain,
                address=address or f"0x{uuid.uuid4().hex}",
                balance=balance if balance is not None else {"native": "0"},
            )
            await uow.commit()
            return wallet

    return _create


@pytest.fixture
def create_transaction(session_factory):
    async def _create(
        wallet: Wallet,
        tx_hash: Optional[str] = "auto",
        status: TransactionStatus = TransactionStatus.PENDING,
        metadata: Any = "auto",
        **fields,
    ) -> Transaction:
        if tx_hash == "auto":
            tx_hash = f"0x{uuid.uuid4().hex}"
        if metadata == "auto":
            metadata = {"chain": wallet.chain}
        async with UnitOfWork(session_factory=session_factory) as uow:
            transaction = await uow.transactions.create(
                wallet_id=wallet.id,
                tx_hash=tx_hash,
                status=status.value,
                tx_metadata=metadata,
                **fields,
            )
            await uow.commit()
            return transaction

    return _create


@pytest.fixture
def get_transaction(session_factory):
    async def _get(transaction_id: str) -> Optional[Transaction]:
        async with UnitOfWork(session_factory=session_factory) as uow:
            return await uow.transactions.get_by_id(transaction_id)

    return _get


@pytest.fixture
def get_wallet(session_factory):
    async def _get(wallet_id: str) -> Optional[Wallet]:
        async with UnitOfWork(session_factory=session_factory) as uow:
            return await uow.wallets.get_by_id(wallet_id)

    return _get


@pytest.fixture
def write_spy(monkeypatch):
    """
    Record every status, balance and failure write issued to the stores.

    Returns a dict of call lists keyed by method name.
    """
    calls: Dict[str, List[tuple]] = {
        "update_status": [],
        "update_balance": [],
        "record_poll_failure": [],
    }

    def wrap(cls, name):
        original = getattr(cls, name)

        async def spy(self, *args, **kwargs):
            calls[name].append(args)
            return await original(self, *args, **kwargs)

        monkeypatch.setattr(cls, name, spy)

    wrap(TransactionRepository, "update_status")
    wrap(TransactionRepository, "record_poll_failure")
    wrap(WalletRepository, "update_balance")
    return calls
