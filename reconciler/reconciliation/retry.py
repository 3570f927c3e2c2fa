"""
Retry, timeout and circuit breaker utilities for chain calls.

Implements exponential backoff with jitter, a per-call timeout and the
circuit breaker pattern so a failing chain node is not hammered by every
transaction in a batch.
"""

import asyncio
import random
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

import structlog

from reconciler.reconciliation.clients.base import ChainTimeoutError
from reconciler.reconciliation.config import CircuitBreakerConfig, RetryConfig

logger = structlog.get_logger()

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitOpenError(Exception):
    """Raised when circuit breaker is open."""

    pass


class CircuitBreaker:
    """
    Circuit breaker pattern implementation.

    Opens after a threshold of consecutive failures and lets a probe
    through once the timeout has elapsed. Only exceptions listed in
    counted_exceptions are failures; anything else propagates without
    moving the breaker.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig,
        name: str = "default",
        counted_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    ):
        """
        Initialize circuit breaker.

        Args:
            config: Circuit breaker configuration
            name: Label used in logs (the chain it guards)
            counted_exceptions: Exception types that count toward opening
        """
        self.config = config
        self.name = name
        self.counted_exceptions = counted_exceptions
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.last_state_change: datetime = datetime.now(timezone.utc)

    async def call_async(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Execute an async function with circuit breaker protection.

        Raises:
            CircuitOpenError: If circuit is open
            Exception: Original exception from function
        """
        if self.state == CircuitState.OPEN:
            if self._should_attempt_reset():
                self._transition_to_half_open()
            else:
                raise CircuitOpenError(
                    f"Circuit breaker '{self.name}' is OPEN. "
                    f"Last failure: {self.last_failure_time}"
                )

        try:
            result = await func()
        except self.counted_exceptions:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _on_success(self):
        self.failure_count = 0

        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                self._transition_to_closed()
                logger.info(
                    "circuit_breaker_closed",
                    breaker=self.name,
                    success_count=self.success_count,
                )

    def _on_failure(self):
        self.failure_count += 1
        self.last_failure_time = datetime.now(timezone.utc)
        self.success_count = 0

        if self.state == CircuitState.HALF_OPEN:
            self._transition_to_open()
            logger.warning(
                "circuit_breaker_opened_from_half_open",
                breaker=self.name,
                failure_count=self.failure_count,
            )
        elif (
            self.state == CircuitState.CLOSED
            and self.failure_count >= self.config.failure_threshold
        ):
            self._transition_to_open()
            logger.warning(
                "circuit_breaker_opened",
                breaker=self.name,
                failure_count=self.failure_count,
                threshold=self.config.failure_threshold,
            )

    def _should_attempt_reset(self) -> bool:
        if not self.last_failure_time:
            return True

        time_since_failure = (
            datetime.now(timezone.utc) - self.last_failure_time
        ).total_seconds()
        return time_since_failure >= self.config.timeout

    def _transition_to_open(self):
        self.state = CircuitState.OPEN
        self.last_state_change = datetime.now(timezone.utc)

    def _transition_to_half_open(self):
        self.state = CircuitState.HALF_OPEN
        self.success_count = 0
        self.last_state_change = datetime.now(timezone.utc)
        logger.info("circuit_breaker_half_open", breaker=self.name)

    def _transition_to_closed(self):
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_state_change = datetime.now(timezone.utc)

    def get_state(self) -> dict[str, Any]:
        """Get current circuit breaker state."""
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": (
                self.last_failure_time.isoformat() if self.last_failure_time else None
            ),
            "last_state_change": self.last_state_change.isoformat(),
        }


def compute_backoff_delay(
    attempt: int,
    initial_delay: float,
    max_delay: float,
    exponential_base: float,
    jitter: bool = False,
) -> float:
    """
    Delay before the next attempt, growing exponentially.

    Args:
        attempt: Zero-based index of the attempt that just failed
        initial_delay: Delay after the first failure
        max_delay: Upper bound
        exponential_base: Growth factor per attempt
        jitter: Scale the result into [50%, 100%] at random

    Returns:
        Delay in seconds
    """
    delay = min(initial_delay * (exponential_base ** max(attempt, 0)), max_delay)
    if jitter:
        delay = delay * (0.5 + random.random() * 0.5)
    return delay


async def call_with_timeout(
    func: Callable[[], Awaitable[T]], timeout: float, operation_name: str = "operation"
) -> T:
    """
    Await a call with a deadline.

    Raises:
        ChainTimeoutError: If the call does not finish within timeout seconds
    """
    try:
        return await asyncio.wait_for(func(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise ChainTimeoutError(
            f"{operation_name} timed out after {timeout:.1f}s"
        ) from e


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    config: RetryConfig,
    operation_name: str = "operation",
    give_up_on: Tuple[Type[BaseException], ...] = (),
) -> T:
    """
    Execute a function with exponential backoff retry.

    Args:
        func: Async function to execute
        config: Retry configuration
        operation_name: Name for logging
        give_up_on: Exception types that are re-raised without retrying

    Returns:
        Function result

    Raises:
        Exception: Last exception if all retries exhausted
    """
    for attempt in range(config.max_attempts):
        try:
            return await func()
        except give_up_on:
            raise
        except Exception as e:
            attempt_num = attempt + 1

            if attempt_num >= config.max_attempts:
                if config.max_attempts == 1:
                    raise
                logger.warning(
                    "retry_exhausted",
                    operation=operation_name,
                    attempts=attempt_num,
                    error=str(e),
                )
                raise

            delay = compute_backoff_delay(
                attempt,
                config.initial_delay,
                config.max_delay,
                config.exponential_base,
                config.jitter,
            )

            logger.warning(
                "retry_attempt",
                operation=operation_name,
                attempt=attempt_num,
                max_attempts=config.max_attempts,
                delay_seconds=delay,
                error=str(e),
            )

            await asyncio.sleep(delay)

    raise RuntimeError("Retry failed without exception")
