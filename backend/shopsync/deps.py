"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from fastapi import Request
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    # Shopify Admin API
    SHOPIFY_API_VERSION: str = "2024-07"
    SHOPIFY_REQUEST_TIMEOUT_SECONDS: float = 30.0

    # Secondary shipping-cost database (optional; shipping costs report "none" without it)
    SHIPPING_DATABASE_URL: Optional[str] = None

    # Redis Configuration (arq worker)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Sync orchestrator
    SYNC_WALL_CLOCK_BUDGET_SECONDS: int = 600  # 10 minutes
    SYNC_BATCH_SIZE: int = 100
    SYNC_HEARTBEAT_STALE_MINUTES: int = 15
    SYNC_AUTO_RESUME: bool = True  # ghost cleanup restarts dead order syncs
    REFUND_BACKFILL_DELAY_SECONDS: float = 0.3

    # Concurrency gate
    SYNC_MAX_WORKERS: int = 3
    SYNC_CALL_SPACING_SECONDS: float = 0.5

    # Circuit breaker
    BREAKER_FAILURE_THRESHOLD: int = 5
    BREAKER_RATE_LIMIT_THRESHOLD: int = 3
    BREAKER_COOLDOWN_SECONDS: int = 300
    BREAKER_RATE_LIMIT_COOLDOWN_SECONDS: int = 600

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_sync_service(request: Request):
    """Resolve the ShopifySyncService owned by the running app.

    The service (and with it the circuit breaker + concurrency gate) is created
    once in `create_app()` and stored on `app.state`.
    """
    return request.app.state.sync_service
