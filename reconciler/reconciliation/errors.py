"""Errors raised while reconciling a single transaction."""


class ReconciliationError(Exception):
    """Base exception for transaction-local reconciliation failures."""

    pass


class MalformedTransactionError(ReconciliationError):
    """Raised when a transaction record cannot be resolved as stored."""

    pass


class TransactionNotFoundError(ReconciliationError):
    """Raised when a transaction disappears between selection and update."""

    pass


class WalletNotFoundError(ReconciliationError):
    """Raised when a confirmed transaction points at a missing wallet."""

    pass
