"""Variant identity: one row per sellable (item, provider, size, condition, region, consignment)."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.engine import Engine

from marketsync.db.tables import dialect_insert, variants
from marketsync.providers.base import AvailabilityEntry, MarketProvider
from marketsync.utils.dates import utcnow

logger = logging.getLogger(__name__)

VariantKey = tuple[str, str, str, bool]


@dataclass(slots=True)
class VariantRow:
    id: int
    catalog_item_id: int
    provider: str
    size: str
    size_unit: str | None
    condition: str
    region: str
    consigned: bool
    provider_variant_id: str | None

    @property
    def key(self) -> VariantKey:
        return (self.size, self.condition, self.region, self.consigned)


def entry_key(entry: AvailabilityEntry) -> VariantKey:
    return (entry.size, entry.condition, entry.region, entry.consigned)


def filter_allowed(
    entries: Iterable[AvailabilityEntry], allowed_sizes: Iterable[str] | None
) -> list[AvailabilityEntry]:
    """Drop entries whose size is outside the catalog item's declared size set.

    Providers keep returning legacy sizes for some products; those must never
    become variants.
    """
    entries = list(entries)
    if allowed_sizes is None:
        return entries
    allowed = set(allowed_sizes)
    kept = [entry for entry in entries if entry.size in allowed]
    skipped = sorted({entry.size for entry in entries if entry.size not in allowed})
    if skipped:
        logger.warning("Skipping %s sizes outside the allowed set: %s", len(skipped), ", ".join(skipped))
    return kept


class VariantResolver:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def has_variants(self, catalog_item_id: int, provider: str) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(variants)
                .where(variants.c.catalog_item_id == catalog_item_id, variants.c.provider == provider)
            ).scalar_one()
        return count > 0

    def load_variants(self, catalog_item_id: int, provider: str) -> list[VariantRow]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(variants)
                .where(variants.c.catalog_item_id == catalog_item_id, variants.c.provider == provider)
                .order_by(variants.c.id)
            ).mappings()
            return [_to_row(row) for row in rows]

    def get_variant(self, variant_id: int) -> VariantRow | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(variants).where(variants.c.id == variant_id)).mappings().first()
        return _to_row(row) if row else None

    def ensure_variants(
        self,
        catalog_item_id: int,
        provider: str,
        entries: Iterable[AvailabilityEntry],
        *,
        size_unit: str | None = None,
    ) -> list[VariantRow]:
        """Bulk upsert variants for the given entries and return their rows.

        Existing rows keep their identity; only a missing provider variant id
        is filled in.
        """
        unique: dict[VariantKey, AvailabilityEntry] = {}
        for entry in entries:
            current = unique.get(entry_key(entry))
            if current is None or (current.provider_variant_id is None and entry.provider_variant_id):
                unique[entry_key(entry)] = entry
        if not unique:
            return []
        now = utcnow()
        values = [
            {
                "catalog_item_id": catalog_item_id,
                "provider": provider,
                "size": entry.size,
                "size_unit": size_unit,
                "condition": entry.condition,
                "region": entry.region,
                "consigned": entry.consigned,
                "provider_variant_id": entry.provider_variant_id,
                "created_at": now,
            }
            for entry in unique.values()
        ]
        with self.engine.begin() as conn:
            stmt = dialect_insert(conn, variants).values(values)
            conn.execute(
                stmt.on_conflict_do_update(
                    index_elements=["catalog_item_id", "provider", "size", "condition", "region", "consigned"],
                    set_={
                        "provider_variant_id": func.coalesce(
                            variants.c.provider_variant_id, stmt.excluded.provider_variant_id
                        )
                    },
                )
            )
        wanted = set(unique)
        return [row for row in self.load_variants(catalog_item_id, provider) if row.key in wanted]

    def attach_provider_id(self, variant_id: int, provider_variant_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(variants)
                .where(variants.c.id == variant_id, variants.c.provider_variant_id.is_(None))
                .values(provider_variant_id=provider_variant_id)
            )

    async def resolve(
        self,
        provider: MarketProvider,
        catalog_item_id: int,
        product_key: str,
        *,
        size: str,
        condition: str,
        region: str,
        consigned: bool,
        size_unit: str | None = None,
        allowed_sizes: Iterable[str] | None = None,
    ) -> VariantRow | None:
        """Return the variant for one tuple, creating it and its provider id on demand.

        Returns None when ``size`` is outside ``allowed_sizes``.
        """
        if allowed_sizes is not None and size not in set(allowed_sizes):
            logger.warning("Refusing to resolve size %s for item %s: not an allowed size", size, catalog_item_id)
            return None
        loop = asyncio.get_running_loop()
        entry = AvailabilityEntry(size=size, condition=condition, region=region, consigned=consigned, currency="")
        rows = await loop.run_in_executor(
            None, lambda: self.ensure_variants(catalog_item_id, provider.name, [entry], size_unit=size_unit)
        )
        row = rows[0]
        if row.provider_variant_id is None:
            provider_variant_id = await provider.resolve_variant(product_key, size)
            if provider_variant_id:
                await loop.run_in_executor(None, self.attach_provider_id, row.id, provider_variant_id)
                row.provider_variant_id = provider_variant_id
        return row


def _to_row(row) -> VariantRow:
    return VariantRow(
        id=row["id"],
        catalog_item_id=row["catalog_item_id"],
        provider=row["provider"],
        size=row["size"],
        size_unit=row["size_unit"],
        condition=row["condition"],
        region=row["region"],
        consigned=bool(row["consigned"]),
        provider_variant_id=row["provider_variant_id"],
    )
