"""Wallet model holding the last reconciled on-chain balances."""

import uuid
from datetime import datetime, timezone
from typing import Dict

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from reconciler.db.base import Base


def _default_balance() -> Dict[str, str]:
    return {"native": "0"}


class Wallet(Base):
    """
    A chain address whose balances are tracked locally.

    The balance column maps asset symbol to a decimal string and always
    carries a "native" entry.
    """

    __tablename__ = "wallets"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    address: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    chain: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    balance: Mapped[Dict[str, str]] = mapped_column(
        JSON, nullable=False, default=_default_balance
    )

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

    def __repr__(self) -> str:
        return f"<Wallet(id={self.id}, chain={self.chain}, address={self.address})>"
