"""
Reconciliation job configuration.

Defines the pass cadence, batch limits, chain client settings, and the
retry, circuit breaker, failure backoff and lease policies.
"""

import os
import socket
from typing import Optional

from pydantic import BaseModel, Field

from reconciler.core.config import get_settings


class RetryConfig(BaseModel):
    """
    In-pass retry of a single chain call, with exponential backoff.

    A single attempt by default: failed lookups are retried on later passes
    through the failure backoff instead of stalling the batch.
    """

    max_attempts: int = Field(default=1, ge=1, description="Attempts per call")
    initial_delay: float = Field(
        default=0.5, gt=0, description="Initial delay in seconds"
    )
    max_delay: float = Field(default=5.0, gt=0, description="Maximum delay in seconds")
    exponential_base: float = Field(default=2.0, gt=1, description="Backoff multiplier")
    jitter: bool = Field(
        default=True, description="Add random jitter to prevent thundering herd"
    )


class CircuitBreakerConfig(BaseModel):
    """Per-chain circuit breaker settings."""

    failure_threshold: int = Field(
        default=5, ge=1, description="Failures before opening circuit"
    )
    success_threshold: int = Field(
        default=2, ge=1, description="Successes to close circuit"
    )
    timeout: float = Field(
        default=60.0, gt=0, description="Seconds before attempting reset"
    )


class FailureBackoffConfig(BaseModel):
    """Cross-pass backoff for transactions whose lookup keeps failing."""

    initial_delay_seconds: float = Field(default=30.0, ge=0)
    max_delay_seconds: float = Field(default=3600.0, ge=0)
    exponential_base: float = Field(default=2.0, ge=1)
    max_poll_failures: Optional[int] = Field(
        default=20,
        ge=1,
        description="Failures before the transaction is parked as stuck (None = never)",
    )


class ReconcilerConfig(BaseModel):
    """Main reconciliation job configuration."""

    # Pass behavior
    interval_ms: int = Field(
        default=30000, ge=1, description="Milliseconds between passes"
    )
    batch_size: int = Field(
        default=100, ge=1, le=1000, description="Transactions selected per pass"
    )
    concurrency: int = Field(
        default=1, ge=1, le=50, description="Transactions resolved in parallel"
    )
    balance_sweep_enabled: bool = Field(
        default=True, description="Retry failed balance refreshes each pass"
    )

    # Chain client settings
    chain_client_type: str = Field(
        default="mock", description="Chain client implementation"
    )
    resolver_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Timeout for one receipt or balance call"
    )

    # Resilience
    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    failure_backoff: FailureBackoffConfig = Field(default_factory=FailureBackoffConfig)

    # Mutual exclusion across processes
    lease_enabled: bool = Field(default=True)
    lease_name: str = Field(default="transaction-reconciliation")
    lease_ttl_seconds: float = Field(
        default=300.0, gt=0, description="Lease lifetime; bounds a crashed holder"
    )

    # Operational settings
    enabled: bool = Field(default=True, description="Enable/disable scheduled passes")
    shutdown_grace_seconds: float = Field(
        default=30.0, ge=0, description="Wait for an in-flight pass on stop"
    )

    def get_interval_seconds(self) -> float:
        """Get pass interval in seconds."""
        return self.interval_ms / 1000.0


def default_instance_id() -> str:
    """Identity used as lease holder: hostname plus pid."""
    return f"{socket.gethostname()}-{os.getpid()}"


def get_reconciler_config() -> ReconcilerConfig:
    """Build the job configuration from application settings."""
    settings = get_settings()
    return ReconcilerConfig(
        interval_ms=settings.RECONCILER_INTERVAL_MS,
        batch_size=settings.RECONCILER_BATCH_SIZE,
        concurrency=settings.RECONCILER_CONCURRENCY,
        chain_client_type=settings.RECONCILER_CHAIN_CLIENT,
        enabled=settings.RECONCILER_ENABLED,
    )
