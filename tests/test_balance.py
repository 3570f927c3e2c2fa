"""Tests for the wallet balance refresh step."""

import pytest

from reconciler.db.models import TransactionStatus
from reconciler.db.unit_of_work import UnitOfWork
from reconciler.reconciliation.balance import BalanceReconciler
from reconciler.reconciliation.clients.base import UnsupportedChainError
from reconciler.reconciliation.clients.mock_client import MockChainClient
from reconciler.reconciliation.errors import (
    ReconciliationError,
    TransactionNotFoundError,
    WalletNotFoundError,
)
from reconciler.reconciliation.metrics import ReconcilerMetrics


@pytest.fixture
def balances(make_config, chain_client, session_factory):
    return BalanceReconciler(
        chain_client, make_config(), session_factory, ReconcilerMetrics()
    )


class TestSyncForTransaction:
    @pytest.mark.asyncio
    async def test_merges_native_balance(
        self,
        balances,
        chain_client,
        create_wallet,
        create_transaction,
        get_transaction,
        get_wallet,
    ):
        """Only the native entry changes; the flag is set with the write."""
        wallet = await create_wallet(balance={"native": "1", "dai": "20", "weth": "0.3"})
        tx = await create_transaction(wallet, status=TransactionStatus.CONFIRMED)
        chain_client.set_balance("ethereum", wallet.address, "0.75")

        native = await balances.sync_for_transaction(tx.id)

        assert native == "0.75"
        assert (await get_wallet(wallet.id)).balance == {
            "native": "0.75",
            "dai": "20",
            "weth": "0.3",
        }
        assert (await get_transaction(tx.id)).balance_synced is True
        assert chain_client.balance_calls == [("ethereum", wallet.address)]

    @pytest.mark.asyncio
    async def test_rejects_unconfirmed_transaction(
        self, balances, chain_client, create_wallet, create_transaction
    ):
        """A transaction that is not CONFIRMED is refused before any chain call."""
        wallet = await create_wallet()
        tx = await create_transaction(wallet)

        with pytest.raises(ReconciliationError):
            await balances.sync_for_transaction(tx.id)
        assert chain_client.balance_calls == []

    @pytest.mark.asyncio
    async def test_missing_transaction(self, balances):
        with pytest.raises(TransactionNotFoundError):
            await balances.sync_for_transaction("does-not-exist")

    @pytest.mark.asyncio
    async def test_missing_wallet(
        self, balances, create_wallet, create_transaction, session_factory
    ):
        """A confirmed transaction whose wallet row is gone raises."""
        wallet = await create_wallet()
        tx = await create_transaction(wallet, status=TransactionStatus.CONFIRMED)

        async with UnitOfWork(session_factory=session_factory) as uow:
            await uow.wallets.delete(wallet.id)
            await uow.commit()

        with pytest.raises(WalletNotFoundError):
            await balances.sync_for_transaction(tx.id)

    @pytest.mark.asyncio
    async def test_chain_failure_leaves_wallet_untouched(
        self,
        make_config,
        session_factory,
        create_wallet,
        create_transaction,
        get_transaction,
        get_wallet,
    ):
        """An unsupported chain propagates and nothing is written."""
        client = MockChainClient(supported_chains=["polygon"])
        balances = BalanceReconciler(client, make_config(), session_factory)
        wallet = await create_wallet(balance={"native": "4"})
        tx = await create_transaction(wallet, status=TransactionStatus.CONFIRMED)

        with pytest.raises(UnsupportedChainError):
            await balances.sync_for_transaction(tx.id)

        assert (await get_wallet(wallet.id)).balance == {"native": "4"}
        assert (await get_transaction(tx.id)).balance_synced is False


class TestSweep:
    @pytest.mark.asyncio
    async def test_sync_unsynced_counts(
        self, balances, chain_client, create_wallet, create_transaction, get_transaction
    ):
        """Each unsynced confirmation is attempted on its own."""
        good_wallet = await create_wallet()
        bad_wallet = await create_wallet()
        good = await create_transaction(good_wallet, status=TransactionStatus.CONFIRMED)
        bad = await create_transaction(bad_wallet, status=TransactionStatus.CONFIRMED)
        await create_transaction(good_wallet, status=TransactionStatus.FAILED)
        chain_client.fail_address(bad_wallet.address)

        synced, failed = await balances.sync_unsynced()

        assert (synced, failed) == (1, 1)
        assert (await get_transaction(good.id)).balance_synced is True
        assert (await get_transaction(bad.id)).balance_synced is False

    @pytest.mark.asyncio
    async def test_sync_unsynced_honours_exclude(
        self, balances, chain_client, create_wallet, create_transaction
    ):
        wallet = await create_wallet()
        tx = await create_transaction(wallet, status=TransactionStatus.CONFIRMED)

        assert await balances.sync_unsynced(exclude=[tx.id]) == (0, 0)
        assert chain_client.balance_calls == []

    @pytest.mark.asyncio
    async def test_nothing_to_sweep(self, balances):
        assert await balances.sync_unsynced() == (0, 0)
