"""Database models for the transaction reconciler."""

from .transaction import Transaction, TransactionStatus
from .wallet import Wallet
from .job_lease import JobLease

__all__ = ["Transaction", "TransactionStatus", "Wallet", "JobLease"]
