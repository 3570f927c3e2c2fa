"""
Reconciliation pass metrics.

Tracks outcomes, latency and errors per pass and keeps a bounded
in-memory history for the status endpoints and CLI.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class PassStatus(str, Enum):
    """Status of a reconciliation pass."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Pass completed but some transactions errored
    FAILED = "failed"  # Selection failed, nothing processed
    SKIPPED = "skipped"  # Another pass held the lock or lease


@dataclass
class PassMetrics:
    """Metrics for a single reconciliation pass."""

    run_id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    status: PassStatus = PassStatus.SUCCESS

    # Transaction outcomes
    transactions_selected: int = 0
    transactions_confirmed: int = 0
    transactions_failed: int = 0
    transactions_pending: int = 0
    transactions_errored: int = 0
    transactions_deferred: int = 0
    transactions_stuck: int = 0

    # Balance refreshes
    balances_synced: int = 0
    balance_errors: int = 0

    # Performance metrics
    duration_seconds: float = 0.0
    chain_calls: int = 0
    chain_latency_seconds: float = 0.0

    # Error tracking
    errors: List[str] = field(default_factory=list)
    error_count: int = 0

    source: str = "unknown"
    skip_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["ended_at"] = self.ended_at.isoformat() if self.ended_at else None
        data["status"] = self.status.value
        return data


@dataclass
class AggregateMetrics:
    """Aggregated metrics across multiple passes."""

    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    partial_runs: int = 0
    skipped_runs: int = 0

    total_selected: int = 0
    total_confirmed: int = 0
    total_failed: int = 0
    total_errors: int = 0

    avg_duration_seconds: float = 0.0
    avg_chain_latency_seconds: float = 0.0

    first_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = asdict(self)
        for key in ["first_run", "last_run", "last_success", "last_failure"]:
            if data[key]:
                data[key] = data[key].isoformat()
        return data


class ReconcilerMetrics:
    """
    In-memory metrics tracker for the reconciliation job.

    Counters are attributed to the pass currently open; with parallel
    resolution several tasks update the same pass, which is safe on a
    single event loop.
    """

    def __init__(self, history_size: int = 100):
        """
        Args:
            history_size: Number of recent passes to keep in memory
        """
        self.history_size = history_size
        self._current_run: Optional[PassMetrics] = None
        self._history: List[PassMetrics] = []
        self._run_counter = 0

    def start_run(self, source: str) -> str:
        """
        Start tracking a new pass.

        Returns:
            Run ID for this pass
        """
        self._run_counter += 1
        now = datetime.now(timezone.utc)
        run_id = f"recon-{now.strftime('%Y%m%d-%H%M%S')}-{self._run_counter}"
        self._current_run = PassMetrics(run_id=run_id, started_at=now, source=source)
        return run_id

    def end_run(self, status: PassStatus = PassStatus.SUCCESS):
        """End the current pass and move it into history."""
        if not self._current_run:
            return

        self._current_run.ended_at = datetime.now(timezone.utc)
        self._current_run.status = status
        self._current_run.duration_seconds = (
            self._current_run.ended_at - self._current_run.started_at
        ).total_seconds()

        self._history.append(self._current_run)
        if len(self._history) > self.history_size:
            self._history = self._history[-self.history_size :]

        self._current_run = None

    def record_skip(self, source: str, reason: str) -> str:
        """
        Record a pass that did not run.

        Goes straight into history so a pass still open is not disturbed.
        """
        self._run_counter += 1
        now = datetime.now(timezone.utc)
        run_id = f"recon-{now.strftime('%Y%m%d-%H%M%S')}-{self._run_counter}"
        self._history.append(
            PassMetrics(
                run_id=run_id,
                started_at=now,
                ended_at=now,
                status=PassStatus.SKIPPED,
                source=source,
                skip_reason=reason,
            )
        )
        if len(self._history) > self.history_size:
            self._history = self._history[-self.history_size :]
        return run_id

    def record_selected(self, count: int):
        if self._current_run:
            self._current_run.transactions_selected += count

    def record_outcome(self, outcome: str):
        """Count one transaction outcome (confirmed, failed, pending, ...)."""
        if self._current_run:
            attr = f"transactions_{outcome}"
            setattr(self._current_run, attr, getattr(self._current_run, attr) + 1)

    def record_balance_sync(self, success: bool):
        if self._current_run:
            if success:
                self._current_run.balances_synced += 1
            else:
                self._current_run.balance_errors += 1

    def record_chain_call(self, latency_seconds: float):
        """Record a chain client call."""
        if self._current_run:
            self._current_run.chain_calls += 1
            self._current_run.chain_latency_seconds += latency_seconds

    def record_error(self, error: str):
        """Record an error during the pass."""
        if self._current_run:
            self._current_run.errors.append(error)
            self._current_run.error_count += 1

    def get_current_run(self) -> Optional[PassMetrics]:
        return self._current_run

    def get_last_run(self) -> Optional[PassMetrics]:
        """Get metrics for the most recent completed pass."""
        return self._history[-1] if self._history else None

    def get_history(self, limit: Optional[int] = None) -> List[PassMetrics]:
        """Get recent passes, newest first."""
        history = list(reversed(self._history))
        if limit:
            history = history[:limit]
        return history

    def get_aggregate_metrics(self, hours: Optional[int] = None) -> AggregateMetrics:
        """
        Get aggregated metrics across recent passes.

        Args:
            hours: Only include passes from the last N hours (None = all history)
        """
        runs = self._history

        if hours:
            cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
            runs = [r for r in runs if r.started_at >= cutoff]

        if not runs:
            return AggregateMetrics()

        metrics = AggregateMetrics()
        metrics.total_runs = len(runs)

        for run in runs:
            if run.status == PassStatus.SUCCESS:
                metrics.successful_runs += 1
            elif run.status == PassStatus.FAILED:
                metrics.failed_runs += 1
            elif run.status == PassStatus.PARTIAL:
                metrics.partial_runs += 1
            elif run.status == PassStatus.SKIPPED:
                metrics.skipped_runs += 1

        metrics.total_selected = sum(r.transactions_selected for r in runs)
        metrics.total_confirmed = sum(r.transactions_confirmed for r in runs)
        metrics.total_failed = sum(r.transactions_failed for r in runs)
        metrics.total_errors = sum(r.error_count for r in runs)

        # Skipped passes did no work; averages cover executed passes only
        executed = [r for r in runs if r.status != PassStatus.SKIPPED]
        if executed:
            metrics.avg_duration_seconds = sum(
                r.duration_seconds for r in executed
            ) / len(executed)
            metrics.avg_chain_latency_seconds = sum(
                r.chain_latency_seconds for r in executed
            ) / len(executed)

        metrics.first_run = runs[0].started_at
        metrics.last_run = runs[-1].started_at

        for run in reversed(runs):
            if run.status == PassStatus.SUCCESS and not metrics.last_success:
                metrics.last_success = run.started_at
            if run.status == PassStatus.FAILED and not metrics.last_failure:
                metrics.last_failure = run.started_at
            if metrics.last_success and metrics.last_failure:
                break

        return metrics

    def get_success_rate(self, hours: Optional[int] = None) -> float:
        """
        Share of executed passes that fully succeeded (skipped passes excluded).

        Returns:
            Success rate as float (0.0 to 1.0)
        """
        agg = self.get_aggregate_metrics(hours)
        executed = agg.total_runs - agg.skipped_runs
        if executed == 0:
            return 0.0
        return agg.successful_runs / executed

    def clear_history(self):
        """Clear all metrics history."""
        self._history.clear()
        self._current_run = None
