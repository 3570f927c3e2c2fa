"""Transaction model for blockchain transactions awaiting reconciliation."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from reconciler.db.base import Base


class TransactionStatus(str, Enum):
    """Lifecycle states of a submitted transaction."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    STUCK = "stuck"  # Gave up polling, needs operator review


class Transaction(Base):
    """
    A transaction submitted to a blockchain.

    Created in PENDING by the submission path (tx_hash may still be null),
    then advanced exclusively by the reconciliation job once it has a hash.
    """

    __tablename__ = "transactions"

    # Primary key (opaque, store-assigned)
    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    wallet_id: Mapped[str] = mapped_column(
        String(36), nullable=False, index=True, comment="Owning wallet"
    )

    # Chain identification
    tx_hash: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
        comment="Chain-native hash, set once the transaction is broadcast",
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=TransactionStatus.PENDING.value,
        index=True,
        comment="pending, confirmed, failed or stuck",
    )
    tx_metadata: Mapped[Dict[str, Any]] = mapped_column(
        "metadata",
        JSON,
        nullable=False,
        default=dict,
        comment="Free-form metadata; carries the chain identifier",
    )

    # Transfer details
    type: Mapped[str] = mapped_column(String(50), nullable=False, default="transfer")
    amount: Mapped[str] = mapped_column(String(255), nullable=False, default="0")
    currency: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    from_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    to_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    fee: Mapped[str] = mapped_column(String(255), nullable=False, default="0")

    # Reconciliation bookkeeping
    poll_failures: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Consecutive lookup failures since the last requeue",
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_polled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    next_poll_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
        comment="Not polled again before this time (failure backoff)",
    )
    balance_synced: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Wallet balance refreshed after confirmation",
    )
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Audit fields
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("idx_transaction_status_hash", "status", "tx_hash"),
        Index("idx_transaction_status_synced", "status", "balance_synced"),
    )

    @property
    def chain(self) -> Optional[str]:
        metadata = self.tx_metadata
        if isinstance(metadata, dict):
            return metadata.get("chain")
        return None

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, tx_hash={self.tx_hash}, "
            f"status={self.status}, wallet_id={self.wallet_id})>"
        )
