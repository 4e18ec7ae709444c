"""Scheduled market data sync."""

from __future__ import annotations

import asyncio
import logging
import sys

from dotenv import load_dotenv

from marketsync.db.session import create_engine_from_env
from marketsync.market.sync import SyncOrchestrator, SyncOutcome
from marketsync.providers import PROVIDERS, build_provider
from marketsync.utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


async def run_sync_stale(provider_name: str | None = None, limit: int | None = None) -> dict[str, dict[str, int]]:
    load_dotenv()
    engine = create_engine_from_env()
    rate_limiter = RateLimiter()
    names = [provider_name] if provider_name else list(PROVIDERS)
    summary: dict[str, dict[str, int]] = {}
    for name in names:
        try:
            provider = build_provider(name, rate_limiter=rate_limiter)
        except KeyError as exc:
            logger.warning("Skipping %s: missing credentials %s", name, exc)
            continue
        try:
            outcomes = await SyncOrchestrator(engine, provider).sync_stale_items(limit=limit)
        finally:
            await provider.close()
        summary[name] = {
            "items": len(outcomes),
            "succeeded": sum(1 for outcome in outcomes if outcome.success),
            "errors": sum(len(outcome.errors) for outcome in outcomes),
        }
    return summary


async def run_sync_item(catalog_item_id: int, provider_name: str) -> SyncOutcome:
    load_dotenv()
    engine = create_engine_from_env()
    provider = build_provider(provider_name, rate_limiter=RateLimiter())
    try:
        return await SyncOrchestrator(engine, provider).sync_catalog_item(catalog_item_id)
    finally:
        await provider.close()


if __name__ == "__main__":
    asyncio.run(run_sync_stale(sys.argv[1] if len(sys.argv) > 1 else None))
