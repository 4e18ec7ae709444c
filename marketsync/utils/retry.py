"""Retry policy and the transport errors and statuses worth retrying."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass

import httpx

RETRY_EXCEPTIONS = (httpx.TransportError, OSError, asyncio.TimeoutError)
RETRY_STATUSES = frozenset({500, 502, 503, 504})


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRY_STATUSES


@dataclass(slots=True)
class BackoffPolicy:
    """Bounded exponential backoff with jitter for transient failures."""

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 16.0
    jitter: float = 0.2

    def delay_for(self, attempt: int, *, rng: random.Random | None = None) -> float:
        # attempt is zero-based: the first retry waits base_delay
        raw = min(self.base_delay * (2**attempt), self.max_delay)
        spread = (rng or random).uniform(-self.jitter, self.jitter)
        return max(raw * (1 + spread), 0.0)
