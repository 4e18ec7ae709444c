from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from marketsync.db.tables import metadata, provider_accounts
from marketsync.market.catalog import CatalogRepository, CatalogSeed

from helpers import Clock

T0 = datetime(2026, 3, 2, 12, 0, 0)


@pytest.fixture(autouse=True)
def _env(monkeypatch):
    monkeypatch.setenv("MARKET_DATA_TTL_HOURS", "24")
    monkeypatch.setenv("SYNC_REGIONS", "UK,EU,US")
    monkeypatch.setenv("SYNC_CONDITIONS", "new")
    monkeypatch.delenv("SALES_ENRICHMENT_ENABLED", raising=False)


@pytest.fixture()
def engine():
    # one shared connection so executor threads see the same in-memory database
    engine = create_engine(
        "sqlite://",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def clock():
    return Clock(T0)


@pytest.fixture()
def catalog_item(engine):
    return CatalogRepository(engine).ensure_item(
        CatalogSeed(sku="DD1391-100", brand="Nike", name="Dunk Low", size_unit="US", providers={"alias": "cat-1"})
    )


@pytest.fixture()
def account(engine):
    with engine.begin() as conn:
        result = conn.execute(
            provider_accounts.insert().values(provider="stockx", label="main", status="connected", updated_at=T0)
        )
        return int(result.inserted_primary_key[0])
