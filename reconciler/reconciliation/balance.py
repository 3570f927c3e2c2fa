"""
Wallet balance refresh after a confirmation.

A confirmed transaction moved funds, so the owning wallet's native balance
is re-read from the chain and written back with every other asset entry
left as it was. The transaction is flagged balance_synced in the same
commit as the wallet write; anything left unflagged is picked up again by
the sweep.
"""

import time
from typing import Iterable, Optional, Tuple

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from reconciler.db.models.transaction import TransactionStatus
from reconciler.db.unit_of_work import UnitOfWork
from reconciler.reconciliation.clients.base import BaseChainClient, UnsupportedChainError
from reconciler.reconciliation.config import ReconcilerConfig
from reconciler.reconciliation.errors import (
    ReconciliationError,
    TransactionNotFoundError,
    WalletNotFoundError,
)
from reconciler.reconciliation.metrics import ReconcilerMetrics
from reconciler.reconciliation.retry import call_with_timeout, retry_with_backoff

logger = structlog.get_logger()


class BalanceReconciler:
    """Refreshes wallet balances for confirmed transactions."""

    def __init__(
        self,
        client: BaseChainClient,
        config: ReconcilerConfig,
        session_factory: Optional[async_sessionmaker] = None,
        metrics: Optional[ReconcilerMetrics] = None,
    ):
        self.client = client
        self.config = config
        self.metrics = metrics
        self._session_factory = session_factory

    async def sync_for_transaction(self, transaction_id: str) -> str:
        """
        Refresh the native balance of the wallet owning a confirmed transaction.

        The transaction is read again here rather than trusting values from
        selection time, since another pass may have advanced it meanwhile.

        Args:
            transaction_id: ID of a CONFIRMED transaction

        Returns:
            The native balance written to the wallet

        Raises:
            TransactionNotFoundError: If the transaction is gone
            WalletNotFoundError: If its wallet is gone
            ReconciliationError: If the transaction is not CONFIRMED
            ChainClientError: If the chain balance cannot be fetched
        """
        async with UnitOfWork(session_factory=self._session_factory) as uow:
            transaction = await uow.transactions.get_by_id(transaction_id)
            if transaction is None:
                raise TransactionNotFoundError(f"Transaction not found: {transaction_id}")
            if transaction.status != TransactionStatus.CONFIRMED.value:
                raise ReconciliationError(
                    f"Transaction {transaction_id} is {transaction.status}, not confirmed"
                )

            wallet = await uow.wallets.get_by_id(transaction.wallet_id)
            if wallet is None:
                raise WalletNotFoundError(f"Wallet not found: {transaction.wallet_id}")
            wallet_id, chain, address = wallet.id, wallet.chain, wallet.address

        native = await self._fetch_native_balance(chain, address)

        async with UnitOfWork(session_factory=self._session_factory) as uow:
            # Merge into the record as it is now, not as it was before the chain call
            wallet = await uow.wallets.get_by_id(wallet_id)
            if wallet is None:
                raise WalletNotFoundError(f"Wallet not found: {wallet_id}")

            balance = dict(wallet.balance or {})
            balance["native"] = native
            await uow.wallets.update_balance(wallet_id, balance)
            await uow.transactions.mark_balance_synced(transaction_id)
            await uow.commit()

        logger.info(
            "balance.synced",
            transaction_id=transaction_id,
            wallet_id=wallet_id,
            chain=chain,
            native=native,
        )
        if self.metrics:
            self.metrics.record_balance_sync(True)
        return native

    async def sync_unsynced(
        self, limit: int = 100, exclude: Iterable[str] = ()
    ) -> Tuple[int, int]:
        """
        Retry the balance refresh for confirmed transactions still unflagged.

        Each transaction is handled on its own; one failure does not stop
        the sweep.

        Args:
            limit: Maximum transactions to look at
            exclude: IDs already attempted by the caller in this pass

        Returns:
            (synced, failed) counts
        """
        skip = set(exclude)
        async with UnitOfWork(session_factory=self._session_factory) as uow:
            pending = await uow.transactions.get_unsynced_confirmed(limit=limit)
            transaction_ids = [tx.id for tx in pending if tx.id not in skip]

        if not transaction_ids:
            return 0, 0

        logger.info("balance.sweep_started", count=len(transaction_ids))

        synced = failed = 0
        for transaction_id in transaction_ids:
            try:
                await self.sync_for_transaction(transaction_id)
                synced += 1
            except Exception as e:
                failed += 1
                self.record_failure(transaction_id, e)

        logger.info("balance.sweep_completed", synced=synced, failed=failed)
        return synced, failed

    def record_failure(self, transaction_id: str, error: Exception) -> None:
        logger.error(
            "balance.sync_failed",
            transaction_id=transaction_id,
            error=str(error),
            error_type=type(error).__name__,
        )
        if self.metrics:
            self.metrics.record_balance_sync(False)
            self.metrics.record_error(f"Balance sync {transaction_id}: {error}")

    async def _fetch_native_balance(self, chain: str, address: str) -> str:
        async def fetch() -> str:
            started = time.monotonic()
            try:
                return await call_with_timeout(
                    lambda: self.client.get_native_balance(chain, address),
                    self.config.resolver_timeout_seconds,
                    operation_name="get_native_balance",
                )
            finally:
                if self.metrics:
                    self.metrics.record_chain_call(time.monotonic() - started)

        return await retry_with_backoff(
            fetch,
            self.config.retry,
            operation_name="get_native_balance",
            give_up_on=(UnsupportedChainError,),
        )
