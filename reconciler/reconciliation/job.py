"""
Transaction reconciliation job.

One pass selects PENDING transactions that already have a hash, asks the
chain client for each receipt, and moves confirmed or failed transactions
to their terminal status. Confirmations also refresh the owning wallet's
native balance. Every failure is contained: a bad transaction never stops
the batch, and a pass never raises to the scheduler.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from reconciler.core.config import get_settings
from reconciler.db.models.transaction import TransactionStatus
from reconciler.db.unit_of_work import UnitOfWork
from reconciler.reconciliation.balance import BalanceReconciler
from reconciler.reconciliation.clients.base import (
    BaseChainClient,
    ChainConnectionError,
    ChainTimeoutError,
    Receipt,
    ReceiptStatus,
    UnsupportedChainError,
)
from reconciler.reconciliation.clients.mock_client import MockChainClient
from reconciler.reconciliation.config import (
    ReconcilerConfig,
    default_instance_id,
    get_reconciler_config,
)
from reconciler.reconciliation.errors import MalformedTransactionError
from reconciler.reconciliation.metrics import PassStatus, ReconcilerMetrics
from reconciler.reconciliation.retry import (
    CircuitBreaker,
    CircuitOpenError,
    call_with_timeout,
    compute_backoff_delay,
    retry_with_backoff,
)

logger = structlog.get_logger()


class TransactionOutcome(str, Enum):
    """What a pass did with one transaction."""

    CONFIRMED = "confirmed"
    FAILED = "failed"
    PENDING = "pending"  # Receipt not final yet, left untouched
    ERRORED = "errored"  # Lookup or write failed, retried later
    DEFERRED = "deferred"  # Chain circuit open or row moved by someone else


@dataclass(frozen=True)
class _Candidate:
    """Snapshot of a selected transaction, detached from its session."""

    id: str
    tx_hash: str
    metadata: Any
    poll_failures: int


class ReconciliationJob:
    """
    Reconciles locally recorded transactions against the chain.

    Stores are reached through the injected session factory and the chain
    through the injected client, so tests can run a pass against a scratch
    database and a scripted client.
    """

    def __init__(
        self,
        client: Optional[BaseChainClient] = None,
        config: Optional[ReconcilerConfig] = None,
        session_factory: Optional[async_sessionmaker] = None,
        instance_id: Optional[str] = None,
    ):
        """
        Initialize the job.

        Args:
            client: Chain client (defaults to one built from config)
            config: Job configuration (defaults to loaded config)
            session_factory: Async session factory (defaults to the app's)
            instance_id: Lease holder identity (defaults to hostname-pid)
        """
        self.config = config or get_reconciler_config()
        self.client = client or self._create_default_client()
        self.metrics = ReconcilerMetrics()
        self.instance_id = (
            instance_id or get_settings().RECONCILER_INSTANCE_ID or default_instance_id()
        )
        self._session_factory = session_factory
        self.balances = BalanceReconciler(
            self.client, self.config, session_factory, self.metrics
        )

        self._breakers: Dict[str, CircuitBreaker] = {}
        self._pass_lock = asyncio.Lock()
        self._last_pass_time: Optional[datetime] = None
        self._lease_renewed_at = 0.0

        logger.info(
            "reconciler.initialized",
            client_type=self.client.get_source_name(),
            interval_ms=self.config.interval_ms,
            batch_size=self.config.batch_size,
            concurrency=self.config.concurrency,
            instance_id=self.instance_id,
        )

    def _create_default_client(self) -> BaseChainClient:
        """Create default chain client based on config."""
        if self.config.chain_client_type == "mock":
            return MockChainClient(
                timeout=self.config.resolver_timeout_seconds, auto_confirm_after=2
            )
        logger.warning(
            "unknown_chain_client_type",
            type=self.config.chain_client_type,
            falling_back="mock",
        )
        return MockChainClient(timeout=self.config.resolver_timeout_seconds)

    @property
    def is_running_pass(self) -> bool:
        return self._pass_lock.locked()

    async def run_once(self) -> None:
        """
        Execute a single reconciliation pass.

        Never raises: every error is logged and contained. A pass is skipped
        when one is already running in this process or when another process
        holds the job lease.
        """
        source = self.client.get_source_name()

        if self._pass_lock.locked():
            logger.info("reconcile.pass_skipped", reason="pass_in_progress")
            self.metrics.record_skip(source, "pass_in_progress")
            return

        async with self._pass_lock:
            try:
                acquired = await self._acquire_lease()
            except Exception as e:
                logger.error(
                    "reconcile.lease_error",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self.metrics.record_skip(source, "lease_error")
                return

            if not acquired:
                logger.info(
                    "reconcile.pass_skipped",
                    reason="lease_held",
                    lease=self.config.lease_name,
                )
                self.metrics.record_skip(source, "lease_held")
                return

            try:
                await self._run_pass()
            finally:
                await self._release_lease()

    async def _run_pass(self) -> None:
        run_id = self.metrics.start_run(source=self.client.get_source_name())
        status = PassStatus.SUCCESS

        logger.info(
            "reconcile.pass_started",
            run_id=run_id,
            batch_size=self.config.batch_size,
        )

        try:
            try:
                candidates = await self._select_candidates()
            except Exception as e:
                logger.error(
                    "reconcile.selection_failed",
                    run_id=run_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                self.metrics.record_error(f"Selection failed: {e}")
                status = PassStatus.FAILED
                return

            self.metrics.record_selected(len(candidates))
            confirmed_ids: List[str] = []
            lease_lost = False

            if not candidates:
                logger.debug("reconcile.no_pending_transactions", run_id=run_id)
            else:
                logger.info(
                    "reconcile.batch_selected", run_id=run_id, count=len(candidates)
                )
                outcomes = await self._process_batch(candidates, run_id)
                processed = [o for o in outcomes if o is not None]
                lease_lost = len(processed) < len(candidates)
                if lease_lost or TransactionOutcome.ERRORED in processed:
                    status = PassStatus.PARTIAL
                confirmed_ids = [
                    c.id
                    for c, outcome in zip(candidates, outcomes)
                    if outcome == TransactionOutcome.CONFIRMED
                ]

            if self.config.balance_sweep_enabled and not lease_lost:
                try:
                    _, failed = await self.balances.sync_unsynced(
                        limit=self.config.batch_size, exclude=confirmed_ids
                    )
                    if failed:
                        status = PassStatus.PARTIAL
                except Exception as e:
                    logger.error(
                        "reconcile.balance_sweep_failed",
                        run_id=run_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    self.metrics.record_error(f"Balance sweep failed: {e}")
                    status = PassStatus.PARTIAL

        except Exception as e:
            logger.error(
                "reconcile.pass_failed",
                run_id=run_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            self.metrics.record_error(str(e))
            status = PassStatus.FAILED

        finally:
            self.metrics.end_run(status)
            self._last_pass_time = datetime.now(timezone.utc)
            last_run = self.metrics.get_last_run()
            if last_run is not None:
                logger.info(
                    "reconcile.pass_completed",
                    run_id=run_id,
                    status=status.value,
                    selected=last_run.transactions_selected,
                    confirmed=last_run.transactions_confirmed,
                    failed=last_run.transactions_failed,
                    pending=last_run.transactions_pending,
                    errored=last_run.transactions_errored,
                    balances_synced=last_run.balances_synced,
                    duration_seconds=last_run.duration_seconds,
                )

    async def _select_candidates(self) -> List[_Candidate]:
        async with UnitOfWork(session_factory=self._session_factory) as uow:
            rows = await uow.transactions.get_pollable(limit=self.config.batch_size)
            return [
                _Candidate(
                    id=row.id,
                    tx_hash=row.tx_hash or "",
                    metadata=row.tx_metadata,
                    poll_failures=row.poll_failures or 0,
                )
                for row in rows
            ]

    async def _process_batch(
        self, candidates: List[_Candidate], run_id: str
    ) -> List[Optional[TransactionOutcome]]:
        """
        Resolve every candidate, sequentially or with bounded parallelism.

        The lease is renewed before each transaction. Once it is lost the
        remaining candidates are left alone (outcome None, or cut short).
        """
        if self.config.concurrency <= 1:
            outcomes: List[Optional[TransactionOutcome]] = []
            for candidate in candidates:
                if not await self._renew_lease(run_id):
                    break
                outcomes.append(await self._reconcile_transaction(candidate, run_id))
            return outcomes

        semaphore = asyncio.Semaphore(self.config.concurrency)
        lease_lost = asyncio.Event()

        async def bounded(candidate: _Candidate) -> Optional[TransactionOutcome]:
            async with semaphore:
                if lease_lost.is_set():
                    return None
                if not await self._renew_lease(run_id):
                    lease_lost.set()
                    return None
                return await self._reconcile_transaction(candidate, run_id)

        return list(await asyncio.gather(*(bounded(c) for c in candidates)))

    async def _reconcile_transaction(
        self, candidate: _Candidate, run_id: str
    ) -> TransactionOutcome:
        """Resolve one transaction and apply the outcome. Never raises."""
        try:
            chain = self._extract_chain(candidate)
            receipt = await self._resolve_receipt(chain, candidate.tx_hash)
        except CircuitOpenError as e:
            logger.warning(
                "reconcile.transaction_deferred",
                run_id=run_id,
                transaction_id=candidate.id,
                error=str(e),
            )
            return self._finish(TransactionOutcome.DEFERRED)
        except Exception as e:
            return await self._handle_transaction_failure(candidate, e, run_id)

        if receipt.status == ReceiptStatus.PENDING:
            logger.debug(
                "reconcile.still_pending",
                run_id=run_id,
                transaction_id=candidate.id,
                tx_hash=candidate.tx_hash,
            )
            return self._finish(TransactionOutcome.PENDING)

        new_status = (
            TransactionStatus.CONFIRMED
            if receipt.status == ReceiptStatus.CONFIRMED
            else TransactionStatus.FAILED
        )

        try:
            async with UnitOfWork(session_factory=self._session_factory) as uow:
                updated = await uow.transactions.update_status(
                    candidate.id, new_status, tx_hash=candidate.tx_hash
                )
                await uow.commit()
        except Exception as e:
            return await self._handle_transaction_failure(candidate, e, run_id)

        if updated is None:
            logger.warning(
                "reconcile.status_write_rejected",
                run_id=run_id,
                transaction_id=candidate.id,
                target_status=new_status.value,
            )
            return self._finish(TransactionOutcome.DEFERRED)

        self._log_status_update(candidate, receipt, new_status, run_id)

        if new_status == TransactionStatus.CONFIRMED:
            try:
                await self.balances.sync_for_transaction(candidate.id)
            except Exception as e:
                # Stays CONFIRMED with balance_synced unset; the sweep retries it
                self.balances.record_failure(candidate.id, e)
            return self._finish(TransactionOutcome.CONFIRMED)

        return self._finish(TransactionOutcome.FAILED)

    def _log_status_update(
        self,
        candidate: _Candidate,
        receipt: Receipt,
        new_status: TransactionStatus,
        run_id: str,
    ) -> None:
        logger.info(
            "reconcile.status_updated",
            run_id=run_id,
            transaction_id=candidate.id,
            tx_hash=candidate.tx_hash,
            status=new_status.value,
            block_number=receipt.block_number,
        )

    async def _handle_transaction_failure(
        self, candidate: _Candidate, error: Exception, run_id: str
    ) -> TransactionOutcome:
        """Log a transaction-local failure and push its next lookup out."""
        logger.error(
            "reconcile.transaction_failed",
            run_id=run_id,
            transaction_id=candidate.id,
            tx_hash=candidate.tx_hash,
            error=str(error),
            error_type=type(error).__name__,
        )
        self.metrics.record_error(f"{candidate.id}: {error}")

        backoff = self.config.failure_backoff
        delay = compute_backoff_delay(
            candidate.poll_failures,
            backoff.initial_delay_seconds,
            backoff.max_delay_seconds,
            backoff.exponential_base,
        )
        next_poll_at = (
            datetime.now(timezone.utc) + timedelta(seconds=delay) if delay > 0 else None
        )

        try:
            async with UnitOfWork(session_factory=self._session_factory) as uow:
                updated = await uow.transactions.record_poll_failure(
                    candidate.id,
                    f"{type(error).__name__}: {error}",
                    next_poll_at,
                    max_failures=backoff.max_poll_failures,
                )
                await uow.commit()
        except Exception as e:
            logger.error(
                "reconcile.failure_record_failed",
                run_id=run_id,
                transaction_id=candidate.id,
                error=str(e),
            )
            return self._finish(TransactionOutcome.ERRORED)

        if updated is not None and updated.status == TransactionStatus.STUCK.value:
            logger.warning(
                "reconcile.transaction_stuck",
                run_id=run_id,
                transaction_id=candidate.id,
                poll_failures=updated.poll_failures,
            )
            self.metrics.record_outcome("stuck")

        return self._finish(TransactionOutcome.ERRORED)

    def _finish(self, outcome: TransactionOutcome) -> TransactionOutcome:
        self.metrics.record_outcome(outcome.value)
        return outcome

    @staticmethod
    def _extract_chain(candidate: _Candidate) -> str:
        metadata = candidate.metadata
        if not isinstance(metadata, dict):
            raise MalformedTransactionError(
                f"Transaction {candidate.id} metadata is not an object"
            )
        chain = metadata.get("chain")
        if not isinstance(chain, str) or not chain.strip():
            raise MalformedTransactionError(
                f"Transaction {candidate.id} metadata has no chain"
            )
        return chain.strip()

    def _get_breaker(self, chain: str) -> CircuitBreaker:
        breaker = self._breakers.get(chain)
        if breaker is None:
            # Per-hash errors must not short-circuit the rest of the chain
            breaker = CircuitBreaker(
                self.config.circuit_breaker,
                name=chain,
                counted_exceptions=(ChainConnectionError, ChainTimeoutError),
            )
            self._breakers[chain] = breaker
        return breaker

    async def _resolve_receipt(self, chain: str, tx_hash: str) -> Receipt:
        """Fetch a receipt with timeout, retry and the chain's circuit breaker."""

        async def fetch() -> Receipt:
            started = time.monotonic()
            try:
                return await call_with_timeout(
                    lambda: self.client.get_transaction_receipt(chain, tx_hash),
                    self.config.resolver_timeout_seconds,
                    operation_name="get_transaction_receipt",
                )
            finally:
                self.metrics.record_chain_call(time.monotonic() - started)

        async def fetch_with_retry() -> Receipt:
            return await retry_with_backoff(
                fetch,
                self.config.retry,
                operation_name="get_transaction_receipt",
                give_up_on=(UnsupportedChainError,),
            )

        return await self._get_breaker(chain).call_async(fetch_with_retry)

    async def _acquire_lease(self) -> bool:
        if not self.config.lease_enabled:
            return True
        attempted_at = time.monotonic()
        async with UnitOfWork(session_factory=self._session_factory) as uow:
            acquired = await uow.leases.try_acquire(
                self.config.lease_name,
                self.instance_id,
                self.config.lease_ttl_seconds,
            )
            await uow.commit()
        if acquired:
            self._lease_renewed_at = attempted_at
        return acquired

    async def _renew_lease(self, run_id: str) -> bool:
        """
        Extend the lease once a third of its lifetime has passed.

        Returns:
            False if the lease could not be extended and the pass must stop
        """
        if not self.config.lease_enabled:
            return True
        elapsed = time.monotonic() - self._lease_renewed_at
        if elapsed < self.config.lease_ttl_seconds / 3:
            return True

        try:
            renewed = await self._acquire_lease()
        except Exception as e:
            logger.error(
                "reconcile.lease_renew_failed",
                run_id=run_id,
                lease=self.config.lease_name,
                error=str(e),
                error_type=type(e).__name__,
            )
            renewed = False

        if not renewed:
            logger.warning(
                "reconcile.lease_lost",
                run_id=run_id,
                lease=self.config.lease_name,
                instance_id=self.instance_id,
            )
            self.metrics.record_error("Lease lost during pass")
        return renewed

    async def _release_lease(self) -> None:
        if not self.config.lease_enabled:
            return
        try:
            async with UnitOfWork(session_factory=self._session_factory) as uow:
                await uow.leases.release(self.config.lease_name, self.instance_id)
                await uow.commit()
        except Exception as e:
            # Lease expires on its own after lease_ttl_seconds
            logger.error(
                "reconcile.lease_release_failed",
                lease=self.config.lease_name,
                error=str(e),
            )

    def get_status(self) -> Dict[str, Any]:
        """
        Get current job status and metrics.

        Returns:
            Status dictionary
        """
        current_run = self.metrics.get_current_run()
        last_run = self.metrics.get_last_run()
        aggregate = self.metrics.get_aggregate_metrics(hours=24)

        return {
            "pass_in_progress": self.is_running_pass,
            "enabled": self.config.enabled,
            "instance_id": self.instance_id,
            "last_pass_time": (
                self._last_pass_time.isoformat() if self._last_pass_time else None
            ),
            "circuit_breakers": {
                chain: breaker.get_state() for chain, breaker in self._breakers.items()
            },
            "current_run": current_run.to_dict() if current_run else None,
            "last_run": last_run.to_dict() if last_run else None,
            "metrics_24h": aggregate.to_dict(),
            "success_rate_24h": self.metrics.get_success_rate(hours=24),
            "config": {
                "interval_ms": self.config.interval_ms,
                "batch_size": self.config.batch_size,
                "concurrency": self.config.concurrency,
                "max_poll_failures": self.config.failure_backoff.max_poll_failures,
                "source": self.client.get_source_name(),
            },
        }

    def get_metrics(self, hours: Optional[int] = None) -> Dict[str, Any]:
        """
        Get aggregate metrics.

        Args:
            hours: Limit to last N hours (None = all history)
        """
        aggregate = self.metrics.get_aggregate_metrics(hours)
        return {
            "enabled": self.config.enabled,
            "aggregate": aggregate.to_dict(),
            "success_rate": self.metrics.get_success_rate(hours),
            "recent_runs": [r.to_dict() for r in self.metrics.get_history(limit=10)],
        }


# Process-wide job used by the HTTP surface and CLI
_job_instance: Optional[ReconciliationJob] = None


def get_job() -> ReconciliationJob:
    """
    Get or create the process-wide reconciliation job.

    Returns:
        ReconciliationJob singleton
    """
    global _job_instance
    if _job_instance is None:
        _job_instance = ReconciliationJob()
    return _job_instance
