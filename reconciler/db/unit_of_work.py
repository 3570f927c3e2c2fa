"""Unit of Work pattern for managing database transactions."""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.db import base as db_base
from reconciler.db.models import JobLease, Transaction, Wallet
from reconciler.db.repositories import (
    LeaseRepository,
    TransactionRepository,
    WalletRepository,
)


class UnitOfWork:
    """
    Unit of Work pattern implementation for managing database transactions.

    All repositories inside one context share a session, so the writes made
    through them commit (or roll back) together.

    Usage:
        async with UnitOfWork() as uow:
            tx = await uow.transactions.get_by_id(tx_id)
            wallet = await uow.wallets.get_by_id(tx.wallet_id)
            await uow.wallets.update_balance(wallet.id, {...})
            await uow.commit()
    """

    def __init__(
        self,
        session: Optional[AsyncSession] = None,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        """
        Initialize Unit of Work.

        Args:
            session: Optional existing session (caller keeps ownership)
            session_factory: Factory for an owned session (defaults to the app's)
        """
        self._session = session
        self._owned_session = session is None
        self._session_factory = session_factory

        # Repositories (initialized in __aenter__)
        self.transactions: TransactionRepository = None  # type: ignore
        self.wallets: WalletRepository = None  # type: ignore
        self.leases: LeaseRepository = None  # type: ignore

    async def __aenter__(self):
        """Enter async context manager."""
        if self._owned_session:
            factory = self._session_factory or db_base.AsyncSessionLocal
            self._session = factory()

        assert self._session is not None, "Session must be initialized"
        self.transactions = TransactionRepository(Transaction, self._session)
        self.wallets = WalletRepository(Wallet, self._session)
        self.leases = LeaseRepository(JobLease, self._session)

        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit async context manager."""
        try:
            if exc_type is not None:
                await self.rollback()
            elif self._owned_session:
                await self.commit()
        finally:
            if self._owned_session and self._session:
                await self._session.close()

    async def commit(self):
        """Commit the current transaction."""
        if self._session:
            await self._session.commit()

    async def rollback(self):
        """Rollback the current transaction."""
        if self._session:
            await self._session.rollback()

    async def flush(self):
        """Flush pending changes to the database without committing."""
        if self._session:
            await self._session.flush()
