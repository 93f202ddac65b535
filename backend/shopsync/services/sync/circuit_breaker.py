"""
Circuit Breaker for Shopify API calls.

WHAT:
    Stops the sync engine from calling Shopify after repeated failures and
    lets it try again once a cooldown has passed.

WHY:
    Re-trying a throttled API makes throttling worse. Rate limiting is
    qualitatively different from generic errors, so it trips the breaker
    faster (lower threshold) and keeps it open longer (longer cooldown).

DESIGN:
    - closed: calls allowed
    - open: calls rejected with CircuitOpenError("rate limited, cooling down, retry in Xm")
    - half_open: cooldown elapsed; the next call is allowed as a probe.
      Success closes the breaker, failure re-opens it.
    - One instance per ShopifySyncService; every concurrent worker shares it,
      so one worker tripping it stops its siblings before their next call.

REFERENCES:
    - shopsync/services/shopify_sync_service.py (owner)
    - shopsync/services/sync/rate_limiter.py (concurrency gate)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional
import enum
import logging
import math

from shopsync.services.shopify_client import FatalError, RateLimitedError
from shopsync.telemetry import capture_message

logger = logging.getLogger(__name__)


class CircuitStateEnum(str, enum.Enum):
    closed = "closed"
    open = "open"
    half_open = "half_open"


@dataclass
class CircuitBreakerConfig:
    """
    Circuit breaker configuration.

    Attributes:
        failure_threshold: Consecutive generic failures before opening
        rate_limit_threshold: Rate-limit failures before opening
        cooldown_seconds: Open duration after generic failures
        rate_limit_cooldown_seconds: Open duration after rate limiting
    """

    failure_threshold: int = 5
    rate_limit_threshold: int = 3
    cooldown_seconds: int = 300
    rate_limit_cooldown_seconds: int = 600


class CircuitOpenError(Exception):
    """Raised instead of calling the remote API while the breaker is open."""

    def __init__(self, retry_after_seconds: float):
        self.retry_after_seconds = max(0.0, retry_after_seconds)
        self.retry_after_minutes = max(1, math.ceil(self.retry_after_seconds / 60))
        super().__init__(f"rate limited, cooling down, retry in {self.retry_after_minutes}m")


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker with a dedicated rate-limit counter.

    Usage:
        breaker = CircuitBreaker(CircuitBreakerConfig())
        result = await breaker.call(client.get_order_refunds, order_id)
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Initialize circuit breaker.

        Parameters:
            config: Thresholds and cooldowns
            clock: Returns the current UTC time (tests pass a fake clock)
        """
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self.consecutive_failures = 0
        self.rate_limit_failures = 0
        self.last_failure_at: Optional[datetime] = None
        self.opened_at: Optional[datetime] = None
        self.opened_by_rate_limit = False

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def _cooldown(self) -> timedelta:
        seconds = (
            self.config.rate_limit_cooldown_seconds
            if self.opened_by_rate_limit
            else self.config.cooldown_seconds
        )
        return timedelta(seconds=seconds)

    @property
    def state(self) -> CircuitStateEnum:
        if self.opened_at is None:
            return CircuitStateEnum.closed
        if self._clock() - self.last_failure_at > self._cooldown():
            return CircuitStateEnum.half_open
        return CircuitStateEnum.open

    def retry_after_seconds(self) -> float:
        """Seconds until the breaker allows a probe call (0 when not open)."""
        if self.state != CircuitStateEnum.open:
            return 0.0
        remaining = (self.last_failure_at + self._cooldown()) - self._clock()
        return remaining.total_seconds()

    def check(self) -> None:
        """Raise CircuitOpenError if calls are currently refused."""
        if self.state == CircuitStateEnum.open:
            raise CircuitOpenError(self.retry_after_seconds())

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def record_success(self) -> None:
        """A remote call succeeded."""
        if self.state == CircuitStateEnum.half_open:
            logger.info("[CIRCUIT_BREAKER] Probe call succeeded, closing circuit")
            self.opened_at = None
            self.opened_by_rate_limit = False
            self.rate_limit_failures = 0
        self.consecutive_failures = 0

    def record_failure(self, error: BaseException) -> None:
        """A remote call (or a whole run) failed."""
        if isinstance(error, FatalError):
            # Auth/config problems are surfaced to the caller, not retried
            return

        now = self._clock()
        was_half_open = self.state == CircuitStateEnum.half_open

        self.last_failure_at = now
        self.consecutive_failures += 1
        is_rate_limit = isinstance(error, RateLimitedError)
        if is_rate_limit:
            self.rate_limit_failures += 1

        if was_half_open:
            self._open(now, by_rate_limit=is_rate_limit, reason=f"probe failed: {error}")
        elif self.opened_at is None:
            if is_rate_limit and self.rate_limit_failures >= self.config.rate_limit_threshold:
                self._open(now, by_rate_limit=True, reason=f"{self.rate_limit_failures} rate-limit failures")
            elif self.consecutive_failures >= self.config.failure_threshold:
                self._open(now, by_rate_limit=False, reason=f"{self.consecutive_failures} consecutive failures")

    def record_run_success(self) -> None:
        """A whole sync run completed; resets the rate-limit counter immediately."""
        self.rate_limit_failures = 0
        self.record_success()

    def _open(self, now: datetime, by_rate_limit: bool, reason: str) -> None:
        self.opened_at = now
        self.opened_by_rate_limit = by_rate_limit
        logger.warning(
            f"[CIRCUIT_BREAKER] Opened ({reason}); cooling down for {int(self._cooldown().total_seconds())}s"
        )
        capture_message(f"Shopify circuit breaker opened: {reason}", level="warning")

    # -------------------------------------------------------------------------
    # Guarded call
    # -------------------------------------------------------------------------

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run `func` if the breaker allows it and record the outcome."""
        self.check()
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self.record_failure(e)
            raise
        self.record_success()
        return result

    def get_status(self) -> Dict[str, Any]:
        """
        Get circuit breaker status.

        Returns:
            Status dictionary
        """
        state = self.state
        return {
            "state": state.value,
            "consecutive_failures": {
                "current": self.consecutive_failures,
                "threshold": self.config.failure_threshold,
            },
            "rate_limit_failures": {
                "current": self.rate_limit_failures,
                "threshold": self.config.rate_limit_threshold,
            },
            "opened_by_rate_limit": self.opened_by_rate_limit,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "retry_after_seconds": round(self.retry_after_seconds(), 1),
            "healthy": state != CircuitStateEnum.open,
        }
