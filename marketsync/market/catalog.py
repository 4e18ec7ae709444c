"""Catalog items and their provider product keys."""

from __future__ import annotations

import logging
import pathlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import yaml
from sqlalchemy import func, or_, select, update
from sqlalchemy.engine import Engine

from marketsync.db.tables import (
    catalog_items,
    catalog_provider_keys,
    dialect_insert,
    market_snapshots,
    variants,
)
from marketsync.logic.prices import normalize_size
from marketsync.providers.base import CatalogRecord
from marketsync.utils.dates import utcnow

logger = logging.getLogger(__name__)

CATALOG_PATH = pathlib.Path(__file__).with_name("catalog.yml")


@dataclass(slots=True)
class CatalogItem:
    id: int
    sku: str
    brand: str | None
    name: str | None
    size_unit: str | None
    allowed_sizes: list[str] | None


@dataclass(slots=True)
class CatalogSeed:
    sku: str
    brand: str | None = None
    name: str | None = None
    size_unit: str | None = None
    allowed_sizes: list[str] | None = None
    providers: dict[str, str] = field(default_factory=dict)


def load_catalog(limit: int | None = None) -> list[CatalogSeed]:
    data = yaml.safe_load(CATALOG_PATH.read_text()) or []
    seeds = [CatalogSeed(**item) for item in data]
    if limit:
        return seeds[:limit]
    return seeds


class CatalogRepository:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get_item(self, item_id: int) -> CatalogItem | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(catalog_items).where(catalog_items.c.id == item_id)).mappings().first()
        if row is None:
            return None
        return CatalogItem(
            id=row["id"],
            sku=row["sku"],
            brand=row["brand"],
            name=row["name"],
            size_unit=row["size_unit"],
            allowed_sizes=row["allowed_sizes"],
        )

    def ensure_item(self, seed: CatalogSeed) -> int:
        """Insert a catalog item by SKU, or fill in fields it is still missing."""
        now = utcnow()
        allowed = [normalize_size(size) for size in seed.allowed_sizes] if seed.allowed_sizes else None
        with self.engine.begin() as conn:
            existing = conn.execute(
                select(catalog_items.c.id).where(catalog_items.c.sku == seed.sku)
            ).scalar_one_or_none()
            if existing is None:
                result = conn.execute(
                    catalog_items.insert().values(
                        sku=seed.sku,
                        brand=seed.brand,
                        name=seed.name,
                        size_unit=seed.size_unit,
                        allowed_sizes=allowed,
                        created_at=now,
                        updated_at=now,
                    )
                )
                item_id = int(result.inserted_primary_key[0])
            else:
                item_id = int(existing)
                self._fill_missing(conn, item_id, seed.brand, seed.name, seed.size_unit, allowed, now)
            for provider, product_key in seed.providers.items():
                self._upsert_key(conn, item_id, provider, str(product_key), None, now)
        return item_id

    def enrich(self, item_id: int, record: CatalogRecord) -> CatalogItem:
        """Attach provider metadata without overwriting what is already known."""
        with self.engine.begin() as conn:
            self._fill_missing(conn, item_id, record.brand, record.name, record.size_unit, record.allowed_sizes, utcnow())
        item = self.get_item(item_id)
        if item is None:
            raise LookupError(f"catalog item {item_id} does not exist")
        return item

    def _fill_missing(self, conn, item_id, brand, name, size_unit, allowed_sizes, now: datetime) -> None:
        conn.execute(
            update(catalog_items)
            .where(catalog_items.c.id == item_id)
            .values(
                brand=func.coalesce(catalog_items.c.brand, brand),
                name=func.coalesce(catalog_items.c.name, name),
                size_unit=func.coalesce(catalog_items.c.size_unit, size_unit),
                updated_at=now,
            )
        )
        if allowed_sizes:
            conn.execute(
                update(catalog_items)
                .where(catalog_items.c.id == item_id, catalog_items.c.allowed_sizes.is_(None))
                .values(allowed_sizes=allowed_sizes)
            )

    def get_provider_key(self, item_id: int, provider: str) -> str | None:
        with self.engine.connect() as conn:
            return conn.execute(
                select(catalog_provider_keys.c.product_key).where(
                    catalog_provider_keys.c.catalog_item_id == item_id,
                    catalog_provider_keys.c.provider == provider,
                )
            ).scalar_one_or_none()

    def set_provider_key(self, item_id: int, provider: str, product_key: str, title: str | None = None) -> None:
        with self.engine.begin() as conn:
            self._upsert_key(conn, item_id, provider, product_key, title, utcnow())

    def _upsert_key(self, conn, item_id: int, provider: str, product_key: str, title: str | None, now: datetime) -> None:
        stmt = dialect_insert(conn, catalog_provider_keys).values(
            catalog_item_id=item_id,
            provider=provider,
            product_key=product_key,
            title=title,
            resolved_at=now,
        )
        conn.execute(
            stmt.on_conflict_do_update(
                index_elements=["catalog_item_id", "provider"],
                set_={
                    "product_key": stmt.excluded.product_key,
                    "title": func.coalesce(stmt.excluded.title, catalog_provider_keys.c.title),
                    "resolved_at": stmt.excluded.resolved_at,
                },
            )
        )

    def mark_synced(self, item_id: int, provider: str, now: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(catalog_provider_keys)
                .where(
                    catalog_provider_keys.c.catalog_item_id == item_id,
                    catalog_provider_keys.c.provider == provider,
                )
                .values(synced_at=now)
            )

    def list_stale(self, provider: str, ttl: timedelta, now: datetime, limit: int) -> list[int]:
        """Catalog items that were never synced for ``provider`` or hold stale data.

        Never-synced items come first, then the longest-unsynced ones.
        """
        cutoff = now - ttl
        oldest = (
            select(
                variants.c.catalog_item_id.label("catalog_item_id"),
                func.min(market_snapshots.c.updated_at).label("oldest"),
            )
            .select_from(variants.outerjoin(market_snapshots, market_snapshots.c.variant_id == variants.c.id))
            .where(variants.c.provider == provider)
            .group_by(variants.c.catalog_item_id)
            .subquery()
        )
        keys = (
            select(catalog_provider_keys.c.catalog_item_id, catalog_provider_keys.c.synced_at)
            .where(catalog_provider_keys.c.provider == provider)
            .subquery()
        )
        stmt = (
            select(catalog_items.c.id)
            .select_from(
                catalog_items.outerjoin(oldest, oldest.c.catalog_item_id == catalog_items.c.id).outerjoin(
                    keys, keys.c.catalog_item_id == catalog_items.c.id
                )
            )
            .where(
                or_(
                    oldest.c.catalog_item_id.is_(None),
                    keys.c.synced_at.is_(None),
                    keys.c.synced_at < cutoff,
                    oldest.c.oldest < cutoff,
                )
            )
            .order_by(keys.c.synced_at.asc().nulls_first(), catalog_items.c.id.asc())
            .limit(limit)
        )
        with self.engine.connect() as conn:
            return [int(row[0]) for row in conn.execute(stmt)]
