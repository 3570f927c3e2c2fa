"""
Seed the database with demo wallets and pending transactions.

Gives the mock chain client something to reconcile in development.
"""

import uuid
from typing import Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from reconciler.db.models.transaction import TransactionStatus
from reconciler.db.unit_of_work import UnitOfWork

logger = structlog.get_logger(__name__)

DEMO_WALLETS: List[Dict[str, str]] = [
    {"chain": "ethereum", "address": "0x9f1c3b2a7d4e5f60718293a4b5c6d7e8f9012345"},
    {"chain": "polygon", "address": "0x2b7e151628aed2a6abf7158809cf4f3c762e7160"},
    {"chain": "bitcoin", "address": "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq"},
]


async def seed_demo_data(
    transactions_per_wallet: int = 3,
    session_factory: Optional[async_sessionmaker] = None,
) -> Dict[str, int]:
    """
    Insert demo wallets, each with a few PENDING transactions.

    Wallets already present (same chain and address) are reused.

    Returns:
        Counts of wallets and transactions created
    """
    wallets_created = transactions_created = 0

    async with UnitOfWork(session_factory=session_factory) as uow:
        for entry in DEMO_WALLETS:
            wallet = await uow.wallets.get_by_address(entry["chain"], entry["address"])
            if wallet is None:
                wallet = await uow.wallets.create(
                    chain=entry["chain"],
                    address=entry["address"],
                    balance={"native": "0"},
                )
                wallets_created += 1

            for _ in range(transactions_per_wallet):
                await uow.transactions.create(
                    wallet_id=wallet.id,
                    tx_hash=f"0x{uuid.uuid4().hex}{uuid.uuid4().hex}",
                    status=TransactionStatus.PENDING.value,
                    tx_metadata={"chain": entry["chain"]},
                    type="transfer",
                    amount="0.01",
                    currency=entry["chain"],
                    from_address=entry["address"],
                )
                transactions_created += 1

        await uow.commit()

    logger.info(
        "db.seeded",
        wallets_created=wallets_created,
        transactions_created=transactions_created,
    )
    return {"wallets": wallets_created, "transactions": transactions_created}
