"""
Base chain client interface.

Defines the contract every receipt resolver / balance source must implement.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class ReceiptStatus(str, Enum):
    """On-chain outcome of a submitted transaction."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class Receipt(BaseModel):
    """Classification of a transaction's current on-chain outcome."""

    chain: str
    tx_hash: str
    status: ReceiptStatus
    block_number: Optional[int] = None
    block_hash: Optional[str] = None
    confirmations: Optional[int] = None


class BaseChainClient(ABC):
    """
    Abstract base class for chain clients.

    Implementations resolve a (chain, hash) pair to a Receipt and report the
    native balance of an address. A transaction that is merely not mined yet
    is a PENDING receipt, never an exception; exceptions are reserved for
    failing to find out.
    """

    def __init__(self, timeout: float = 10.0):
        """
        Initialize the client.

        Args:
            timeout: Request timeout in seconds
        """
        self.timeout = timeout

    @abstractmethod
    async def get_transaction_receipt(self, chain: str, tx_hash: str) -> Receipt:
        """
        Resolve a transaction hash to a receipt.

        Args:
            chain: Chain identifier (e.g. 'ethereum', 'bsc')
            tx_hash: Chain-native transaction hash

        Returns:
            Receipt classified as pending, confirmed or failed

        Raises:
            ChainConnectionError: If the chain node cannot be reached
            ChainTimeoutError: If the node does not answer in time
            UnsupportedChainError: If the chain is not served by this client
            ChainResponseError: If the node answers with something unusable
        """
        pass

    @abstractmethod
    async def get_native_balance(self, chain: str, address: str) -> str:
        """
        Fetch the native-asset balance of an address.

        Args:
            chain: Chain identifier
            address: On-chain address

        Returns:
            Balance as a decimal string in whole units (e.g. "1.25")
        """
        pass

    @abstractmethod
    def get_source_name(self) -> str:
        """
        Get the name of this chain client.

        Returns:
            Source identifier (e.g., 'mock', 'evm-rpc')
        """
        pass


class ChainClientError(Exception):
    """Base exception for chain client errors."""

    pass


class ChainConnectionError(ChainClientError):
    """Raised when connection to a chain node fails."""

    pass


class ChainTimeoutError(ChainClientError):
    """Raised when a chain call exceeds its timeout."""

    pass


class UnsupportedChainError(ChainClientError):
    """Raised when the client does not serve the requested chain."""

    pass


class ChainResponseError(ChainClientError):
    """Raised when a chain node returns invalid data."""

    pass
