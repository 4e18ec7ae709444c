"""Market data cache (one live snapshot per variant) and append-only history."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from marketsync.db.tables import dialect_insert, market_snapshots, price_history, sales_history
from marketsync.logic.sales import WINDOW_30D, SalesVolume
from marketsync.providers.base import AvailabilityEntry, SaleEntry
from marketsync.utils.dates import ttl_from_env, utcnow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Snapshot:
    variant_id: int
    currency: str
    lowest_ask_cents: int | None
    highest_bid_cents: int | None
    last_sale_cents: int | None
    global_indicator_cents: int | None
    sales_72h: int | None
    sales_30d: int | None
    updated_at: datetime
    expires_at: datetime

    def is_fresh(self, now: datetime, ttl: timedelta) -> bool:
        return now - self.updated_at < ttl


@dataclass(slots=True)
class RefreshResult:
    refreshed: int = 0
    history_inserted: int = 0
    failed: list[tuple[int, str]] = field(default_factory=list)


class MarketDataStore:
    def __init__(self, engine: Engine, *, ttl: timedelta | None = None) -> None:
        self.engine = engine
        self.ttl = ttl or ttl_from_env()

    def get_snapshot(self, variant_id: int) -> Snapshot | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(market_snapshots).where(market_snapshots.c.variant_id == variant_id)
            ).mappings().first()
        return Snapshot(**row) if row else None

    def get_fresh(self, variant_id: int, *, now: datetime | None = None, ttl: timedelta | None = None) -> Snapshot | None:
        """The cached snapshot if it is younger than ``ttl``, else None (a miss)."""
        snapshot = self.get_snapshot(variant_id)
        if snapshot is None:
            return None
        if not snapshot.is_fresh(now or utcnow(), ttl or self.ttl):
            return None
        return snapshot

    def record_refresh(self, variant_id: int, entry: AvailabilityEntry, *, now: datetime) -> bool:
        """Upsert the snapshot then append its history point in one transaction.

        Returns whether a history row was written; a second refresh at the same
        instant leaves history untouched.
        """
        with self.engine.begin() as conn:
            self._upsert_snapshot(conn, variant_id, entry, now)
            return self._append_history(conn, variant_id, entry, now)

    def record_refreshes(self, pairs: Iterable[tuple[int, AvailabilityEntry]], *, now: datetime) -> RefreshResult:
        """Refresh many variants, isolating failures to the variant that caused them."""
        result = RefreshResult()
        for variant_id, entry in pairs:
            try:
                inserted = self.record_refresh(variant_id, entry, now=now)
            except SQLAlchemyError as exc:
                logger.warning("Failed to store market data for variant %s: %s", variant_id, exc)
                result.failed.append((variant_id, str(exc)))
                continue
            result.refreshed += 1
            if inserted:
                result.history_inserted += 1
        return result

    def _upsert_snapshot(self, conn, variant_id: int, entry: AvailabilityEntry, now: datetime) -> None:
        stmt = dialect_insert(conn, market_snapshots).values(
            variant_id=variant_id,
            currency=entry.currency,
            lowest_ask_cents=entry.lowest_ask_cents,
            highest_bid_cents=entry.highest_bid_cents,
            last_sale_cents=entry.last_sale_cents,
            global_indicator_cents=entry.global_indicator_cents,
            updated_at=now,
            expires_at=now + self.ttl,
        )
        conn.execute(
            stmt.on_conflict_do_update(
                index_elements=["variant_id"],
                set_={
                    "currency": stmt.excluded.currency,
                    "lowest_ask_cents": stmt.excluded.lowest_ask_cents,
                    "highest_bid_cents": stmt.excluded.highest_bid_cents,
                    "last_sale_cents": stmt.excluded.last_sale_cents,
                    "global_indicator_cents": stmt.excluded.global_indicator_cents,
                    "updated_at": stmt.excluded.updated_at,
                    "expires_at": stmt.excluded.expires_at,
                },
            )
        )

    def _append_history(self, conn, variant_id: int, entry: AvailabilityEntry, now: datetime) -> bool:
        stmt = dialect_insert(conn, price_history).values(
            variant_id=variant_id,
            currency=entry.currency,
            lowest_ask_cents=entry.lowest_ask_cents,
            highest_bid_cents=entry.highest_bid_cents,
            last_sale_cents=entry.last_sale_cents,
            recorded_at=now,
        )
        result = conn.execute(stmt.on_conflict_do_nothing(index_elements=["variant_id", "recorded_at"]))
        return result.rowcount == 1

    def load_history(self, variant_id: int) -> list[dict]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(price_history)
                .where(price_history.c.variant_id == variant_id)
                .order_by(price_history.c.recorded_at)
            ).mappings()
            return [dict(row) for row in rows]

    def insert_sales_if_absent(
        self, catalog_item_id: int, provider: str, sales: Iterable[SaleEntry], *, now: datetime | None = None
    ) -> int:
        """Insert observed sales keyed by (item, size, price, sold_at); returns how many were new."""
        now = now or utcnow()
        unique: dict[tuple, SaleEntry] = {}
        for sale in sales:
            unique.setdefault((sale.size, sale.price_cents, sale.sold_at), sale)
        if not unique:
            return 0
        values = [
            {
                "catalog_item_id": catalog_item_id,
                "provider": provider,
                "size": sale.size,
                "price_cents": sale.price_cents,
                "currency": sale.currency,
                "sold_at": sale.sold_at,
                "region": sale.region,
                "consigned": sale.consigned,
                "recorded_at": now,
            }
            for sale in unique.values()
        ]
        count_stmt = (
            select(func.count()).select_from(sales_history).where(sales_history.c.catalog_item_id == catalog_item_id)
        )
        with self.engine.begin() as conn:
            before = conn.execute(count_stmt).scalar_one()
            stmt = dialect_insert(conn, sales_history).values(values)
            conn.execute(
                stmt.on_conflict_do_nothing(index_elements=["catalog_item_id", "size", "price_cents", "sold_at"])
            )
            after = conn.execute(count_stmt).scalar_one()
        return after - before

    def load_sale_times(
        self,
        catalog_item_id: int,
        size: str,
        region: str,
        consigned: bool,
        *,
        now: datetime,
        window: timedelta = WINDOW_30D,
    ) -> list[datetime]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(sales_history.c.sold_at).where(
                    sales_history.c.catalog_item_id == catalog_item_id,
                    sales_history.c.size == size,
                    sales_history.c.region == region,
                    sales_history.c.consigned == consigned,
                    sales_history.c.sold_at >= now - window,
                )
            )
            return [row[0] for row in rows]

    def update_sales_volume(self, variant_id: int, volume: SalesVolume) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(market_snapshots)
                .where(market_snapshots.c.variant_id == variant_id)
                .values(sales_72h=volume.last_72h, sales_30d=volume.last_30d)
            )
