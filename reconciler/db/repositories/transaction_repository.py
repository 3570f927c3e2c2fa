"""Transaction repository with reconciliation queries."""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func, or_, select, update

from reconciler.db.models.transaction import Transaction, TransactionStatus
from reconciler.db.repository import BaseRepository


class TransactionRepository(BaseRepository[Transaction]):
    """Repository for Transaction model with reconciliation queries."""

    async def get_pollable(
        self, limit: int = 100, now: Optional[datetime] = None
    ) -> List[Transaction]:
        """
        Get transactions the reconciliation job should look up.

        Eligible means PENDING, with a hash, and not inside a failure
        backoff window. No ORDER BY: rows come back in store order.

        Args:
            limit: Maximum number of transactions to return
            now: Reference time for the backoff window (defaults to now)

        Returns:
            List of eligible transactions
        """
        if now is None:
            now = datetime.now(timezone.utc)

        query = (
            select(self.model)
            .where(self.model.status == TransactionStatus.PENDING.value)
            .where(self.model.tx_hash.isnot(None))
            .where(
                or_(self.model.next_poll_at.is_(None), self.model.next_poll_at <= now)
            )
            .limit(limit)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def update_status(
        self, transaction_id: str, status: TransactionStatus, tx_hash: Optional[str] = None
    ) -> Optional[Transaction]:
        """
        Move a transaction to a new status.

        The write only applies while the row is still PENDING or already
        holds the target status, so a transaction never leaves a terminal
        state and rewriting the same outcome is harmless.

        Args:
            transaction_id: Transaction ID
            status: Target status
            tx_hash: Hash to store alongside the status (unchanged if None)

        Returns:
            Updated transaction, or None if missing or the transition was rejected
        """
        now = datetime.now(timezone.utc)
        values = {"status": status.value, "next_poll_at": None}
        if tx_hash is not None:
            values["tx_hash"] = tx_hash
        if status == TransactionStatus.CONFIRMED:
            values["confirmed_at"] = func.coalesce(self.model.confirmed_at, now)

        result = await self.session.execute(
            update(self.model)
            .where(self.model.id == transaction_id)
            .where(
                self.model.status.in_([TransactionStatus.PENDING.value, status.value])
            )
            .values(**values)
        )
        await self.session.flush()
        if not result.rowcount:  # type: ignore
            return None
        return await self.get_by_id(transaction_id)

    async def record_poll_failure(
        self,
        transaction_id: str,
        error: str,
        next_poll_at: Optional[datetime],
        max_failures: Optional[int] = None,
    ) -> Optional[Transaction]:
        """
        Count a failed lookup and push the next attempt out.

        Once the failure count reaches max_failures the transaction is
        parked in STUCK and no longer selected for polling.

        Args:
            transaction_id: Transaction ID
            error: Error description (truncated to 1000 chars)
            next_poll_at: Earliest time of the next lookup
            max_failures: Failure ceiling (None = poll forever)

        Returns:
            Updated transaction, or None if it is no longer PENDING
        """
        result = await self.session.execute(
            update(self.model)
            .where(self.model.id == transaction_id)
            .where(self.model.status == TransactionStatus.PENDING.value)
            .values(
                poll_failures=self.model.poll_failures + 1,
                last_error=error[:1000],
                last_polled_at=datetime.now(timezone.utc),
                next_poll_at=next_poll_at,
            )
        )
        await self.session.flush()
        if not result.rowcount:  # type: ignore
            return None

        transaction = await self.get_by_id(transaction_id)
        if (
            transaction is not None
            and max_failures is not None
            and transaction.poll_failures >= max_failures
        ):
            transaction = await self.update(
                transaction_id, status=TransactionStatus.STUCK.value, next_poll_at=None
            )
        return transaction

    async def get_unsynced_confirmed(self, limit: int = 100) -> List[Transaction]:
        """Get CONFIRMED transactions whose wallet balance was not refreshed."""
        query = (
            select(self.model)
            .where(self.model.status == TransactionStatus.CONFIRMED.value)
            .where(self.model.balance_synced.is_(False))
            .limit(limit)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def mark_balance_synced(self, transaction_id: str) -> Optional[Transaction]:
        """Flag that the owning wallet reflects this confirmation."""
        return await self.update(transaction_id, balance_synced=True)

    async def requeue(self, transaction_id: str) -> Optional[Transaction]:
        """
        Put a STUCK transaction back into polling.

        Resets the failure counter and backoff. Terminal transactions are
        left alone.

        Returns:
            Updated transaction, or None if it was not STUCK
        """
        result = await self.session.execute(
            update(self.model)
            .where(self.model.id == transaction_id)
            .where(self.model.status == TransactionStatus.STUCK.value)
            .values(
                status=TransactionStatus.PENDING.value,
                poll_failures=0,
                last_error=None,
                next_poll_at=None,
            )
        )
        await self.session.flush()
        if not result.rowcount:  # type: ignore
            return None
        return await self.get_by_id(transaction_id)

    async def get_by_hash(self, tx_hash: str) -> Optional[Transaction]:
        """Get a transaction by its chain hash."""
        return await self.get_by_field("tx_hash", tx_hash)

    async def count_by_status(self, status: TransactionStatus) -> int:
        """Get count of transactions with specific status."""
        return await self.count(status=status.value)
