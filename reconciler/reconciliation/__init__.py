"""
Transaction reconciliation module.

This module advances pending blockchain transactions to their final
status by looking up receipts on the chain, and refreshes the owning
wallet's native balance after each confirmation.
"""

from reconciler.reconciliation.job import ReconciliationJob
from reconciler.reconciliation.scheduler import ReconciliationScheduler
from reconciler.reconciliation.balance import BalanceReconciler
from reconciler.reconciliation.clients.base import BaseChainClient
from reconciler.reconciliation.clients.mock_client import MockChainClient
from reconciler.reconciliation.metrics import ReconcilerMetrics

__all__ = [
    "ReconciliationJob",
    "ReconciliationScheduler",
    "BalanceReconciler",
    "BaseChainClient",
    "MockChainClient",
    "ReconcilerMetrics",
]
