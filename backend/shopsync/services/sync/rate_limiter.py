"""
Concurrency gate for Shopify API calls.

WHAT:
    Bounds how many remote calls are in flight at once and spaces call starts
    by a fixed delay.

WHY:
    Shopify's leaky bucket punishes bursts. The gate caps burst rate even while
    the circuit breaker is closed; the breaker handles what happens after
    Shopify has already pushed back.

DESIGN:
    - asyncio.Semaphore(max_workers): waiters are admitted FIFO
    - start slots are reserved under a lock, then slept outside it, so spacing
      holds across all workers without serializing the calls themselves
    - primitives are (re)created per event loop; the owning service outlives
      individual asyncio.run() invocations in workers and tests

REFERENCES:
    - shopsync/services/sync/circuit_breaker.py
    - https://shopify.dev/docs/api/usage/rate-limits
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """
    Concurrency gate configuration.

    Attributes:
        max_workers: Maximum concurrent remote calls
        call_spacing_seconds: Minimum delay between two call starts
    """

    max_workers: int = 3
    call_spacing_seconds: float = 0.5


class ConcurrencyGate:
    """
    Bounded, FIFO, spaced execution of remote calls.

    Usage:
        gate = ConcurrencyGate(RateLimitConfig(max_workers=3))
        refunds = await gate.run(client.get_order_refunds, order_id)
    """

    def __init__(self, config: Optional[RateLimitConfig] = None):
        self.config = config or RateLimitConfig()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._slot_lock: Optional[asyncio.Lock] = None
        self._next_slot = 0.0

        self.in_flight = 0
        self.max_in_flight = 0

    def _bind(self) -> None:
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            self._loop = loop
            self._semaphore = asyncio.Semaphore(max(1, self.config.max_workers))
            self._slot_lock = asyncio.Lock()
            self._next_slot = 0.0

    async def _wait_for_slot(self) -> None:
        spacing = self.config.call_spacing_seconds
        if spacing <= 0:
            return

        async with self._slot_lock:
            now = time.monotonic()
            start_at = max(now, self._next_slot)
            self._next_slot = start_at + spacing

        wait_time = start_at - now
        if wait_time > 0:
            logger.debug(f"[RATE_LIMITER] Spacing calls: waiting {wait_time:.3f}s")
            await asyncio.sleep(wait_time)

    async def run(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run `func(*args, **kwargs)` once a worker slot and a start slot are free."""
        self._bind()
        async with self._semaphore:
            await self._wait_for_slot()
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                return await func(*args, **kwargs)
            finally:
                self.in_flight -= 1
