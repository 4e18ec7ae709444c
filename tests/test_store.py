from datetime import datetime, timedelta

from sqlalchemy import func, select

from marketsync.db.tables import market_snapshots, price_history, sales_history
from marketsync.logic.sales import SalesVolume
from marketsync.market.store import MarketDataStore
from marketsync.market.variants import VariantResolver
from marketsync.providers.base import SaleEntry

from helpers import make_entry

T0 = datetime(2026, 3, 2, 12, 0)


def _variant(engine, catalog_item):
    rows = VariantResolver(engine).ensure_variants(catalog_item, "alias", [make_entry("10")])
    return rows[0].id


def test_snapshot_is_fresh_until_ttl(engine, catalog_item):
    store = MarketDataStore(engine, ttl=timedelta(hours=24))
    variant_id = _variant(engine, catalog_item)
    store.record_refresh(variant_id, make_entry("10", ask=15000), now=T0)

    hit = store.get_fresh(variant_id, now=T0 + timedelta(hours=23, minutes=59))
    assert hit is not None
    assert hit.lowest_ask_cents == 15000
    assert hit.expires_at == T0 + timedelta(hours=24)
    assert store.get_fresh(variant_id, now=T0 + timedelta(hours=24)) is None
    assert store.get_fresh(variant_id, now=T0 + timedelta(hours=1), ttl=timedelta(minutes=30)) is None


def test_refresh_pairs_snapshot_upsert_with_history_append(engine, catalog_item):
    store = MarketDataStore(engine, ttl=timedelta(hours=24))
    variant_id = _variant(engine, catalog_item)

    assert store.record_refresh(variant_id, make_entry("10", ask=15000), now=T0)
    assert store.record_refresh(variant_id, make_entry("10", ask=14000), now=T0 + timedelta(hours=1))
    # same instant again: snapshot replaced, history untouched
    assert not store.record_refresh(variant_id, make_entry("10", ask=13000), now=T0 + timedelta(hours=1))

    with engine.connect() as conn:
        assert conn.execute(select(func.count()).select_from(market_snapshots)).scalar_one() == 1
        assert conn.execute(select(func.count()).select_from(price_history)).scalar_one() == 2
    history = store.load_history(variant_id)
    assert [row["lowest_ask_cents"] for row in history] == [15000, 14000]
    assert [row["recorded_at"] for row in history] == [T0, T0 + timedelta(hours=1)]
    assert store.get_snapshot(variant_id).lowest_ask_cents == 13000


def test_refresh_keeps_sales_volume(engine, catalog_item):
    store = MarketDataStore(engine, ttl=timedelta(hours=24))
    variant_id = _variant(engine, catalog_item)
    store.record_refresh(variant_id, make_entry("10"), now=T0)
    store.update_sales_volume(variant_id, SalesVolume(last_72h=3, last_30d=9))
    store.record_refresh(variant_id, make_entry("10", ask=9900), now=T0 + timedelta(hours=2))
    snapshot = store.get_snapshot(variant_id)
    assert (snapshot.sales_72h, snapshot.sales_30d) == (3, 9)
    assert snapshot.lowest_ask_cents == 9900


def test_sales_ingestion_is_idempotent(engine, catalog_item):
    store = MarketDataStore(engine, ttl=timedelta(hours=24))
    batch = [
        SaleEntry(size="10", price_cents=15000, currency="USD", sold_at=T0 - timedelta(hours=h), region="US", consigned=False)
        for h in (1, 5, 30)
    ]
    assert store.insert_sales_if_absent(catalog_item, "alias", batch, now=T0) == 3
    assert store.insert_sales_if_absent(catalog_item, "alias", batch, now=T0) == 0

    overlapping = batch[1:] + [
        SaleEntry(size="10", price_cents=15500, currency="USD", sold_at=T0, region="US", consigned=False)
    ]
    assert store.insert_sales_if_absent(catalog_item, "alias", overlapping, now=T0) == 1
    with engine.connect() as conn:
        assert conn.execute(select(func.count()).select_from(sales_history)).scalar_one() == 4

    times = store.load_sale_times(catalog_item, "10", "US", False, now=T0)
    assert len(times) == 4
