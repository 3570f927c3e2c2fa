"""
Mock chain client for testing and development.

Serves receipts and balances from in-memory tables so the reconciliation
job can run without RPC endpoints. Outcomes can be scripted per hash, and
failures injected per hash, per address, or at random.
"""

import asyncio
import random
from typing import Dict, Iterable, List, Optional, Tuple

from reconciler.reconciliation.clients.base import (
    BaseChainClient,
    ChainConnectionError,
    ChainResponseError,
    Receipt,
    ReceiptStatus,
    UnsupportedChainError,
)


class MockChainClient(BaseChainClient):
    """
    In-memory chain client.

    Unknown hashes resolve as PENDING and unknown addresses hold "0",
    unless auto_confirm_after is set, in which case every hash confirms
    after that many lookups.
    """

    def __init__(
        self,
        timeout: float = 10.0,
        failure_rate: float = 0.0,
        latency_ms: int = 0,
        auto_confirm_after: Optional[int] = None,
        supported_chains: Optional[Iterable[str]] = None,
    ):
        """
        Initialize mock client.

        Args:
            timeout: Kept for interface parity; the mock never times out itself
            failure_rate: Probability of a simulated connection failure (0.0 to 1.0)
            latency_ms: Simulated network latency in milliseconds
            auto_confirm_after: Confirm any hash after this many lookups
            supported_chains: Chains served (None = any chain)
        """
        super().__init__(timeout)
        self.failure_rate = failure_rate
        self.latency_ms = latency_ms
        self.auto_confirm_after = auto_confirm_after
        self.supported_chains = set(supported_chains) if supported_chains else None

        self._receipts: Dict[Tuple[str, str], ReceiptStatus] = {}
        self._balances: Dict[Tuple[str, str], str] = {}
        self._failing_hashes: Dict[str, Exception] = {}
        self._failing_addresses: Dict[str, Exception] = {}
        self._lookups: Dict[str, int] = {}

        self.receipt_calls: List[Tuple[str, str]] = []
        self.balance_calls: List[Tuple[str, str]] = []

    def get_source_name(self) -> str:
        """Return source identifier."""
        return "mock"

    def set_receipt(self, chain: str, tx_hash: str, status: ReceiptStatus) -> None:
        """Script the outcome of a hash."""
        self._receipts[(chain, tx_hash)] = status

    def set_balance(self, chain: str, address: str, balance: str) -> None:
        """Script the native balance of an address."""
        self._balances[(chain, address)] = balance

    def fail_hash(self, tx_hash: str, error: Optional[Exception] = None) -> None:
        """Make every receipt lookup for a hash raise (a node error by default)."""
        self._failing_hashes[tx_hash] = error or ChainResponseError(
            f"Simulated RPC error for {tx_hash}"
        )

    def fail_address(self, address: str, error: Optional[Exception] = None) -> None:
        """Make every balance lookup for an address raise."""
        self._failing_addresses[address] = error or ChainConnectionError(
            f"Simulated RPC failure for {address}"
        )

    def clear_failures(self) -> None:
        """Remove all injected failures."""
        self._failing_hashes.clear()
        self._failing_addresses.clear()

    async def get_transaction_receipt(self, chain: str, tx_hash: str) -> Receipt:
        """Resolve a hash from the scripted receipts."""
        await self._simulate_latency()
        self.receipt_calls.append((chain, tx_hash))
        self._check_chain(chain)

        if tx_hash in self._failing_hashes:
            raise self._failing_hashes[tx_hash]
        self._maybe_fail()

        self._lookups[tx_hash] = self._lookups.get(tx_hash, 0) + 1
        status = self._receipts.get((chain, tx_hash))
        if status is None:
            if (
                self.auto_confirm_after is not None
                and self._lookups[tx_hash] >= self.auto_confirm_after
            ):
                status = ReceiptStatus.CONFIRMED
            else:
                status = ReceiptStatus.PENDING

        if status == ReceiptStatus.PENDING:
            return Receipt(chain=chain, tx_hash=tx_hash, status=status)

        block_number = 1_000_000 + len(self.receipt_calls)
        return Receipt(
            chain=chain,
            tx_hash=tx_hash,
            status=status,
            block_number=block_number,
            block_hash=f"0x{block_number:064x}",
            confirmations=self._lookups[tx_hash],
        )

    async def get_native_balance(self, chain: str, address: str) -> str:
        """Return the scripted balance of an address."""
        await self._simulate_latency()
        self.balance_calls.append((chain, address))
        self._check_chain(chain)

        if address in self._failing_addresses:
            raise self._failing_addresses[address]
        self._maybe_fail()

        return self._balances.get((chain, address), "0")

    def _check_chain(self, chain: str) -> None:
        if self.supported_chains is not None and chain not in self.supported_chains:
            raise UnsupportedChainError(f"Chain not supported: {chain}")

    def _maybe_fail(self) -> None:
        if self.failure_rate and random.random() < self.failure_rate:
            raise ChainConnectionError("Simulated chain connection failure")

    async def _simulate_latency(self):
        """Simulate network latency."""
        if self.latency_ms > 0:
            await asyncio.sleep(self.latency_ms / 1000.0)
