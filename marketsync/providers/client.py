"""Rate-limited HTTP client shared by every provider implementation."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from marketsync.providers.errors import (
    ProviderAuthError,
    ProviderError,
    ProviderNotFound,
    TransientProviderError,
)
from marketsync.utils.rate_limit import RateLimiter, Sleeper
from marketsync.utils.retry import RETRY_EXCEPTIONS, BackoffPolicy, is_retryable_status

logger = logging.getLogger(__name__)

MAX_RATE_LIMIT_WAITS = 10


class ProviderClient:
    def __init__(
        self,
        provider: str,
        base_url: str,
        *,
        headers: dict[str, str] | None = None,
        session: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
        policy: BackoffPolicy | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self._headers = {"Accept": "application/json", "User-Agent": "MarketsyncBot/1.0", **(headers or {})}
        self._session = session or httpx.AsyncClient(timeout=30.0)
        self._rate_limiter = rate_limiter or RateLimiter(sleep=sleep)
        self._policy = policy or BackoffPolicy()
        self._sleep = sleep

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    async def close(self) -> None:
        await self._session.aclose()

    async def get(self, path: str, *, params: dict[str, Any] | None = None) -> Any:
        return await self.request("GET", path, params=params)

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Send one logical request, absorbing rate limits and transient failures.

        429 responses widen the shared limiter delay and are retried after twice
        that delay without consuming an attempt. 5xx and network failures are
        retried with exponential backoff until the policy's attempt ceiling.
        """
        url = f"{self.base_url}{path}"
        attempt = 0
        rate_limited = 0
        while True:
            await self._rate_limiter.wait_for_provider(self.provider)
            try:
                response = await self._session.request(method, url, params=params, json=json, headers=self._headers)
            except RETRY_EXCEPTIONS as exc:
                attempt += 1
                if attempt >= self._policy.max_attempts:
                    raise TransientProviderError(
                        self.provider, f"{method} {path} failed after {attempt} attempts: {exc!r}"
                    ) from exc
                await self._backoff(method, path, attempt, repr(exc))
                continue

            status = response.status_code
            if status == 429:
                rate_limited += 1
                if rate_limited > MAX_RATE_LIMIT_WAITS:
                    raise TransientProviderError(
                        self.provider,
                        f"{method} {path} still rate limited after {MAX_RATE_LIMIT_WAITS} waits",
                        status_code=status,
                        body=_body(response),
                    )
                delay = await self._rate_limiter.record_rate_limit(self.provider)
                await self._sleep(delay * 2)
                continue
            if is_retryable_status(status):
                attempt += 1
                if attempt >= self._policy.max_attempts:
                    raise TransientProviderError(
                        self.provider,
                        f"{method} {path} returned {status} after {attempt} attempts",
                        status_code=status,
                        body=_body(response),
                    )
                await self._backoff(method, path, attempt, f"HTTP {status}")
                continue
            if status in (401, 403):
                raise ProviderAuthError(self.provider, f"{method} {path} unauthorized", status_code=status, body=_body(response))
            if status == 404:
                raise ProviderNotFound(self.provider, f"{method} {path} not found", status_code=status, body=_body(response))
            if status >= 400:
                raise ProviderError(self.provider, f"{method} {path} returned {status}", status_code=status, body=_body(response))

            await self._rate_limiter.record_success(self.provider)
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as exc:
                # gateway and CDN error pages arrive as 200 HTML
                raise ProviderError(
                    self.provider,
                    f"{method} {path} returned invalid JSON",
                    status_code=status,
                    body=response.text[:500],
                ) from exc

    async def _backoff(self, method: str, path: str, attempt: int, reason: str) -> None:
        delay = self._policy.delay_for(attempt - 1)
        logger.warning(
            "%s %s %s failed (%s); retry %s/%s in %.2fs",
            self.provider,
            method,
            path,
            reason,
            attempt,
            self._policy.max_attempts - 1,
            delay,
        )
        await self._sleep(delay)


def _body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text
