"""Internal FastAPI app exposing the engine entry points as cron triggers."""

from __future__ import annotations

import dataclasses
import hmac
import logging
import os
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.engine import Engine

from marketsync.db.session import create_engine_from_env
from marketsync.jobs.operations import build_providers
from marketsync.market.sync import SyncOptions, SyncOrchestrator
from marketsync.operations.reconciler import OperationReconciler
from marketsync.providers.base import MarketProvider
from marketsync.providers.errors import ProviderError
from marketsync.utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

app = FastAPI(title="Marketsync Internal API")

_rate_limiter = RateLimiter()


class SyncErrorModel(BaseModel):
    stage: str
    message: str
    region: str | None = None
    size: str | None = None


class SyncOutcomeResponse(BaseModel):
    catalog_item_id: int
    provider: str
    mode: str
    success: bool
    cancelled: bool
    total_variants: int
    variants_synced: int
    market_data_refreshed: int
    history_inserted: int
    sales_inserted: int
    errors: list[SyncErrorModel]


class MarketDataResponse(BaseModel):
    cached: bool
    data: dict[str, Any] | None


class PollResponse(BaseModel):
    processed: int
    completed: int
    failed: int
    timedOut: int
    inProgress: int


def get_engine() -> Engine:
    return create_engine_from_env()


async def get_providers() -> AsyncIterator[dict[str, MarketProvider]]:
    providers = build_providers(_rate_limiter)
    try:
        yield providers
    finally:
        for provider in providers.values():
            await provider.close()


def require_cron_secret(authorization: str | None = Header(default=None)) -> None:
    secret = os.environ.get("CRON_SECRET")
    if not secret:
        raise HTTPException(status_code=503, detail="CRON_SECRET not configured")
    expected = f"Bearer {secret}"
    if authorization is None or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _provider(providers: dict[str, MarketProvider], name: str) -> MarketProvider:
    provider = providers.get(name)
    if provider is None:
        raise HTTPException(status_code=400, detail=f"Provider {name} is not configured")
    return provider


@app.post("/catalog/{catalog_item_id}/sync", response_model=SyncOutcomeResponse, dependencies=[Depends(require_cron_secret)])
async def sync_catalog_item(
    catalog_item_id: int,
    provider: str = Query("alias"),
    force_refresh: bool = False,
    engine: Engine = Depends(get_engine),
    providers: dict[str, MarketProvider] = Depends(get_providers),
) -> SyncOutcomeResponse:
    orchestrator = SyncOrchestrator(engine, _provider(providers, provider))
    outcome = await orchestrator.sync_catalog_item(catalog_item_id, SyncOptions.from_env(force_refresh=force_refresh))
    return SyncOutcomeResponse(**dataclasses.asdict(outcome))


@app.get("/variants/{variant_id}/market-data", response_model=MarketDataResponse, dependencies=[Depends(require_cron_secret)])
async def variant_market_data(
    variant_id: int,
    provider: str = Query("alias"),
    force_refresh: bool = False,
    engine: Engine = Depends(get_engine),
    providers: dict[str, MarketProvider] = Depends(get_providers),
) -> MarketDataResponse:
    orchestrator = SyncOrchestrator(engine, _provider(providers, provider))
    try:
        result = await orchestrator.get_fresh_market_data(variant_id, force_refresh=force_refresh)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ProviderError as exc:
        detail = f"{exc} (upstream status {exc.status_code})" if exc.status_code else str(exc)
        raise HTTPException(status_code=502, detail=detail) from exc
    data = dataclasses.asdict(result.data) if result.data else None
    return MarketDataResponse(cached=result.cached, data=data)


@app.post("/operations/poll", response_model=PollResponse, dependencies=[Depends(require_cron_secret)])
async def poll_operations(
    engine: Engine = Depends(get_engine),
    providers: dict[str, MarketProvider] = Depends(get_providers),
) -> PollResponse:
    stats = await OperationReconciler(engine, providers).poll_pending_operations()
    return PollResponse(**stats.as_dict())
