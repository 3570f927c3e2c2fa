"""Job lease repository."""

from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, or_, update
from sqlalchemy.exc import IntegrityError

from reconciler.db.models.job_lease import JobLease
from reconciler.db.repository import BaseRepository


class LeaseRepository(BaseRepository[JobLease]):
    """Repository for JobLease with atomic acquire/release."""

    async def try_acquire(self, name: str, holder: str, ttl_seconds: float) -> bool:
        """
        Take the named lease if it is free, expired, or already ours.

        Args:
            name: Job name
            holder: Identity of the caller
            ttl_seconds: Lease lifetime

        Returns:
            True if the caller now holds the lease
        """
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=ttl_seconds)

        result = await self.session.execute(
            update(self.model)
            .where(self.model.name == name)
            .where(or_(self.model.expires_at <= now, self.model.holder == holder))
            .values(holder=holder, acquired_at=now, expires_at=expires_at)
        )
        await self.session.flush()
        if result.rowcount:  # type: ignore
            return True

        if await self.exists(name=name):
            return False

        # No row yet: whoever inserts first wins
        try:
            self.session.add(
                self.model(
                    name=name, holder=holder, acquired_at=now, expires_at=expires_at
                )
            )
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            return False
        return True

    async def release(self, name: str, holder: str) -> bool:
        """
        Drop the lease if the caller still holds it.

        Returns:
            True if a lease row was removed
        """
        result = await self.session.execute(
            delete(self.model)
            .where(self.model.name == name)
            .where(self.model.holder == holder)
        )
        await self.session.flush()
        return (result.rowcount or 0) > 0  # type: ignore
