"""Scheduled polling of pending listing operations."""

from __future__ import annotations

import asyncio
import logging

from dotenv import load_dotenv

from marketsync.db.session import create_engine_from_env
from marketsync.operations.reconciler import OperationReconciler
from marketsync.providers import PROVIDERS, build_provider
from marketsync.providers.base import MarketProvider
from marketsync.utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


def build_providers(rate_limiter: RateLimiter) -> dict[str, MarketProvider]:
    providers: dict[str, MarketProvider] = {}
    for name in PROVIDERS:
        try:
            providers[name] = build_provider(name, rate_limiter=rate_limiter)
        except KeyError as exc:
            logger.warning("Provider %s disabled: missing credentials %s", name, exc)
    return providers


async def run_poll_operations() -> dict[str, int]:
    load_dotenv()
    engine = create_engine_from_env()
    providers = build_providers(RateLimiter())
    try:
        stats = await OperationReconciler(engine, providers).poll_pending_operations()
    finally:
        for provider in providers.values():
            await provider.close()
    return stats.as_dict()


if __name__ == "__main__":
    asyncio.run(run_poll_operations())
