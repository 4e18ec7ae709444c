"""Per-provider adaptive rate limiting."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class _ProviderState:
    delay: float
    last_request: float = 0.0
    consecutive_successes: int = 0
    consecutive_rate_limits: int = 0


class RateLimiter:
    """Minimum spacing between requests per provider, widened on 429s.

    One instance is shared by every client that talks to the same provider so
    that a rate-limit response seen by the sync path also slows the operation
    poller down.
    """

    def __init__(
        self,
        *,
        min_delay: float | None = None,
        max_delay: float | None = None,
        backoff_factor: float = 1.5,
        relax_after: int = 2,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.min_delay = min_delay if min_delay is not None else float(os.environ.get("PROVIDER_MIN_DELAY_SECONDS", "1.0"))
        self.max_delay = max_delay if max_delay is not None else float(os.environ.get("PROVIDER_MAX_DELAY_SECONDS", "5.0"))
        self.backoff_factor = backoff_factor
        self.relax_after = relax_after
        self._sleep = sleep
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._state: dict[str, _ProviderState] = {}

    def _get(self, provider: str) -> _ProviderState:
        state = self._state.get(provider)
        if state is None:
            state = _ProviderState(delay=self.min_delay)
            self._state[provider] = state
        return state

    def current_delay(self, provider: str) -> float:
        return self._get(provider).delay

    async def wait_for_provider(self, provider: str) -> None:
        async with self._locks[provider]:
            state = self._get(provider)
            elapsed = time.monotonic() - state.last_request
            if elapsed < state.delay:
                await self._sleep(state.delay - elapsed)
            state.last_request = time.monotonic()

    async def record_rate_limit(self, provider: str) -> float:
        """Widen the spacing after a 429 and return the new delay."""
        async with self._locks[provider]:
            state = self._get(provider)
            state.delay = min(state.delay * self.backoff_factor, self.max_delay)
            state.consecutive_successes = 0
            state.consecutive_rate_limits += 1
            logger.warning(
                "Rate limited by %s; spacing requests %.2fs apart (%.1f req/min)",
                provider,
                state.delay,
                60.0 / state.delay,
            )
            return state.delay

    async def record_success(self, provider: str) -> None:
        async with self._locks[provider]:
            state = self._get(provider)
            state.consecutive_rate_limits = 0
            state.consecutive_successes += 1
            if state.consecutive_successes >= self.relax_after and state.delay > self.min_delay:
                state.delay = max(state.delay / self.backoff_factor, self.min_delay)
                state.consecutive_successes = 0
                logger.info("Relaxing %s request spacing to %.2fs", provider, state.delay)
