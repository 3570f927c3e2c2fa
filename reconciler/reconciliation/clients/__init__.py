"""Chain client implementations."""

from reconciler.reconciliation.clients.base import (
    BaseChainClient,
    ChainClientError,
    Receipt,
    ReceiptStatus,
)
from reconciler.reconciliation.clients.mock_client import MockChainClient

__all__ = [
    "BaseChainClient",
    "ChainClientError",
    "Receipt",
    "ReceiptStatus",
    "MockChainClient",
]
