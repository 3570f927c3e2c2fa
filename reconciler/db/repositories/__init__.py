"""Repository exports."""

from .transaction_repository import TransactionRepository
from .wallet_repository import WalletRepository
from .lease_repository import LeaseRepository

__all__ = [
    "TransactionRepository",
    "WalletRepository",
    "LeaseRepository",
]
