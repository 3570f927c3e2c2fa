"""Lease rows used to serialize background jobs across processes."""

from datetime import datetime, timezone

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from reconciler.db.base import Base


class JobLease(Base):
    """
    A named, expiring lock.

    Whoever holds an unexpired row for a job name owns the next pass of
    that job. A crashed holder loses the lease once expires_at passes.
    """

    __tablename__ = "job_leases"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    holder: Mapped[str] = mapped_column(String(255), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<JobLease(name={self.name}, holder={self.holder})>"
