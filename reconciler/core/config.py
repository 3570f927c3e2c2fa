from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    This uses pydantic-settings so that we get type validation and defaults.
    Settings are loaded from environment variables with optional .env file override.
    """

    # App basics
    ENV: Literal["development", "staging", "production"] = "development"
    """Environment mode: affects logging and which chain client is acceptable."""

    DEBUG: bool = True
    """Enable debug mode: verbose logging and development features."""

    # DB
    DATABASE_URL: Optional[str] = None
    """Database connection URL. If None, uses SQLite for development."""

    # Reconciliation job
    RECONCILER_ENABLED: bool = True
    """Master switch: when False, scheduled ticks skip the pass."""

    RECONCILER_AUTOSTART: bool = False
    """Start the scheduler from the FastAPI lifespan."""

    RECONCILER_INTERVAL_MS: int = 30000
    """Milliseconds between reconciliation passes."""

    RECONCILER_BATCH_SIZE: int = 100
    """Maximum transactions selected per pass."""

    RECONCILER_CONCURRENCY: int = 1
    """Transactions resolved in parallel within a pass (1 = sequential)."""

    RECONCILER_CHAIN_CLIENT: str = "mock"
    """Chain client implementation used to resolve receipts and balances."""

    RECONCILER_INSTANCE_ID: Optional[str] = None
    """Lease holder identity. Defaults to hostname-pid."""

    # Model config
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance to avoid re-parsing .env repeatedly."""
    return Settings()
