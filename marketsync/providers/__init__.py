"""Provider registry."""

from __future__ import annotations

from marketsync.providers.alias import AliasProvider
from marketsync.providers.base import MarketProvider
from marketsync.providers.stockx import StockxProvider
from marketsync.utils.rate_limit import RateLimiter

PROVIDERS: dict[str, type[MarketProvider]] = {
    AliasProvider.name: AliasProvider,
    StockxProvider.name: StockxProvider,
}


def build_provider(name: str, *, rate_limiter: RateLimiter | None = None) -> MarketProvider:
    """Create a provider from environment credentials.

    Pass the same ``rate_limiter`` to every provider built within one process
    so sync and polling share the adaptive delay.
    """
    try:
        provider_cls = PROVIDERS[name]
    except KeyError:
        raise ValueError(f"Unknown provider: {name}") from None
    return provider_cls.from_env(rate_limiter=rate_limiter)
