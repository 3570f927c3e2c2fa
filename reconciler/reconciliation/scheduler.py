"""
Periodic driver for the reconciliation job.

The first pass runs one full interval after start, then one per interval.
Stopping wakes the loop immediately and lets an in-flight pass finish
within the shutdown grace period.
"""

import asyncio
from typing import Optional

import structlog

from reconciler.reconciliation.config import ReconcilerConfig
from reconciler.reconciliation.job import ReconciliationJob

logger = structlog.get_logger()


class ReconciliationScheduler:
    """Runs ReconciliationJob.run_once on a fixed interval."""

    def __init__(
        self, job: ReconciliationJob, config: Optional[ReconcilerConfig] = None
    ):
        self.job = job
        self.config = config or job.config
        self._interval_seconds = self.config.get_interval_seconds()
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def interval_seconds(self) -> float:
        return self._interval_seconds

    async def start(self, interval_ms: Optional[int] = None):
        """
        Start the scheduling loop in the background.

        Args:
            interval_ms: Override of the configured interval
        """
        if self.is_running:
            logger.warning("scheduler.already_running")
            return

        if interval_ms is not None:
            if interval_ms <= 0:
                raise ValueError("interval_ms must be positive")
            self._interval_seconds = interval_ms / 1000.0

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(self._stop_event))

        logger.info(
            "scheduler.started",
            interval_seconds=self._interval_seconds,
            enabled=self.config.enabled,
        )

    async def stop(self):
        """Stop the loop, waiting up to the grace period for a running pass."""
        if not self.is_running:
            logger.debug("scheduler.not_running")
            return

        logger.info("scheduler.stopping")
        assert self._stop_event is not None and self._task is not None
        self._stop_event.set()

        try:
            await asyncio.wait_for(
                asyncio.shield(self._task), timeout=self.config.shutdown_grace_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(
                "scheduler.grace_period_exceeded",
                grace_seconds=self.config.shutdown_grace_seconds,
            )
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        self._task = None
        logger.info("scheduler.stopped")

    async def _loop(self, stop_event: asyncio.Event):
        """Tick every interval until stopped."""
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval_seconds)
                break
            except asyncio.TimeoutError:
                pass

            if not self.config.enabled:
                logger.debug("scheduler.disabled_skipping")
                continue

            try:
                await self.job.run_once()
            except Exception as e:
                logger.error(
                    "scheduler.tick_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
