"""Wallet repository."""

from typing import Dict, List, Optional

from reconciler.db.models.wallet import Wallet
from reconciler.db.repository import BaseRepository


class WalletRepository(BaseRepository[Wallet]):
    """Repository for Wallet model."""

    async def update_balance(
        self, wallet_id: str, balance: Dict[str, str]
    ) -> Optional[Wallet]:
        """
        Replace a wallet's whole balance record.

        Callers merge entries before calling; nothing is merged here.

        Args:
            wallet_id: Wallet ID
            balance: Complete asset -> amount mapping

        Returns:
            Updated wallet or None if not found
        """
        return await self.update(wallet_id, balance=dict(balance))

    async def get_by_address(self, chain: str, address: str) -> Optional[Wallet]:
        """Get the wallet for an address on a chain."""
        wallets = await self.filter(chain=chain, address=address)
        return wallets[0] if wallets else None

    async def get_by_chain(self, chain: str) -> List[Wallet]:
        """Get all wallets on a chain."""
        return await self.filter(chain=chain)
