"""Sync orchestration: full sync for new items, refresh for known ones."""

from __future__ import annotations

import asyncio
import logging
import os
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from marketsync.logic.coverage import is_successful
from marketsync.logic.sales import sales_volume
from marketsync.market.catalog import CatalogItem, CatalogRepository
from marketsync.market.store import MarketDataStore, Snapshot
from marketsync.market.variants import VariantResolver, VariantRow, entry_key, filter_allowed
from marketsync.providers.base import REGIONS, AvailabilityEntry, MarketProvider
from marketsync.providers.errors import ProviderAuthError, ProviderError
from marketsync.utils.dates import ttl_from_env, utcnow

logger = logging.getLogger(__name__)


class SyncCancelled(Exception):
    pass


@dataclass(slots=True)
class SyncOptions:
    regions: tuple[str, ...] = REGIONS
    conditions: tuple[str, ...] = ("new",)
    ttl: timedelta = field(default_factory=ttl_from_env)
    force_refresh: bool = False
    force_full: bool = False
    fetch_sales: bool = False
    region_concurrency: int = 1
    cancel_event: asyncio.Event | None = None

    @classmethod
    def from_env(cls, **overrides) -> "SyncOptions":
        options = cls(
            regions=_csv_env("SYNC_REGIONS", "UK,EU,US"),
            conditions=_csv_env("SYNC_CONDITIONS", "new", upper=False),
            fetch_sales=os.environ.get("SALES_ENRICHMENT_ENABLED", "false").lower() in {"1", "true", "yes"},
            region_concurrency=max(int(os.environ.get("SYNC_REGION_CONCURRENCY", "1")), 1),
        )
        for key, value in overrides.items():
            setattr(options, key, value)
        return options

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


def _csv_env(name: str, default: str, *, upper: bool = True) -> tuple[str, ...]:
    raw = os.environ.get(name, default)
    values = [part.strip() for part in raw.split(",") if part.strip()]
    return tuple(v.upper() if upper else v.lower() for v in values)


@dataclass(slots=True)
class SyncError:
    stage: str
    message: str
    region: str | None = None
    size: str | None = None


@dataclass(slots=True)
class SyncOutcome:
    catalog_item_id: int
    provider: str
    mode: str
    success: bool = False
    cancelled: bool = False
    total_variants: int = 0
    variants_synced: int = 0
    market_data_refreshed: int = 0
    history_inserted: int = 0
    sales_inserted: int = 0
    errors: list[SyncError] = field(default_factory=list)

    def add_error(self, stage: str, message: str, *, region: str | None = None, size: str | None = None) -> None:
        self.errors.append(SyncError(stage=stage, message=message, region=region, size=size))


@dataclass(slots=True)
class MarketDataResult:
    cached: bool
    data: Snapshot | None


class SyncOrchestrator:
    """Drives one provider's sync passes over catalog items.

    All database work runs in the default executor so provider calls for
    other regions can proceed while rows are written.
    """

    def __init__(
        self,
        engine: Engine,
        provider: MarketProvider,
        *,
        store: MarketDataStore | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.provider = provider
        self.catalog = CatalogRepository(engine)
        self.variants = VariantResolver(engine)
        self.store = store or MarketDataStore(engine)
        self.clock = clock

    async def _db(self, func, *args):
        return await asyncio.get_running_loop().run_in_executor(None, func, *args)

    def _check_cancel(self, options: SyncOptions) -> None:
        if options.cancelled:
            raise SyncCancelled()

    async def sync_catalog_item(self, catalog_item_id: int, options: SyncOptions | None = None) -> SyncOutcome:
        """Full sync when the provider has no variants for the item yet, refresh otherwise."""
        options = options or SyncOptions.from_env()
        provider = self.provider.name
        item = await self._db(self.catalog.get_item, catalog_item_id)
        if item is None:
            outcome = SyncOutcome(catalog_item_id=catalog_item_id, provider=provider, mode="full")
            outcome.add_error("catalog", f"catalog item {catalog_item_id} does not exist")
            return outcome
        has_data = await self._db(self.variants.has_variants, catalog_item_id, provider)
        product_key = await self._db(self.catalog.get_provider_key, catalog_item_id, provider)
        if has_data and product_key and not options.force_full:
            outcome = SyncOutcome(catalog_item_id=catalog_item_id, provider=provider, mode="refresh")
            runner = self._refresh(item, product_key, options, outcome)
        else:
            outcome = SyncOutcome(catalog_item_id=catalog_item_id, provider=provider, mode="full")
            runner = self._full_sync(item, product_key, options, outcome)

        logger.info("Starting %s sync of item %s (%s) on %s", outcome.mode, item.id, item.sku, provider)
        try:
            await runner
        except SyncCancelled:
            outcome.cancelled = True
            outcome.success = False
            logger.warning("Sync of item %s on %s cancelled", item.id, provider)
            return outcome
        except ProviderAuthError as exc:
            outcome.add_error("auth", str(exc))
            outcome.success = False
            logger.warning("Sync of item %s aborted: %s credentials rejected", item.id, provider)
            return outcome
        except SQLAlchemyError as exc:
            outcome.add_error("database", str(exc))
            outcome.success = False
            logger.warning("Sync of item %s on %s failed writing to the database: %s", item.id, provider, exc)
            return outcome

        if outcome.success:
            await self._db(self.catalog.mark_synced, item.id, provider, self.clock())
        logger.info(
            "Finished %s sync of item %s on %s: success=%s variants=%s refreshed=%s/%s history=%s errors=%s",
            outcome.mode,
            item.id,
            provider,
            outcome.success,
            outcome.variants_synced,
            outcome.market_data_refreshed,
            outcome.total_variants,
            outcome.history_inserted,
            len(outcome.errors),
        )
        return outcome

    async def _full_sync(
        self, item: CatalogItem, product_key: str | None, options: SyncOptions, outcome: SyncOutcome
    ) -> None:
        try:
            self._check_cancel(options)
            if not product_key:
                product_key, title = await self.provider.resolve_product_key(item.sku)
                await self._db(self.catalog.set_provider_key, item.id, self.provider.name, product_key, title)
            self._check_cancel(options)
            record = await self.provider.fetch_catalog(product_key)
            item = await self._db(self.catalog.enrich, item.id, record)
        except ProviderAuthError:
            raise
        except (ProviderError, SQLAlchemyError) as exc:
            outcome.add_error("catalog", str(exc))
            logger.warning("Catalog fetch failed for item %s on %s: %s", item.id, self.provider.name, exc)
            return

        entries = await self._fetch_regions(product_key, options, outcome)
        kept = filter_allowed(entries, item.allowed_sizes)
        if not kept:
            outcome.add_error("variants", "no variants found across all regions")
            return
        try:
            rows = await self._db(self._ensure_variants, item, kept)
        except SQLAlchemyError as exc:
            outcome.add_error("variants", str(exc))
            return
        outcome.variants_synced = len(rows)
        outcome.total_variants = len(rows)

        await self._store_market_data(rows, kept, outcome)
        outcome.success = is_successful(outcome.market_data_refreshed, outcome.total_variants)
        if options.fetch_sales:
            await self._enrich_sales(item, product_key, rows, options, outcome)

    def _ensure_variants(self, item: CatalogItem, entries: list[AvailabilityEntry]) -> list[VariantRow]:
        return self.variants.ensure_variants(item.id, self.provider.name, entries, size_unit=item.size_unit)

    async def _refresh(self, item: CatalogItem, product_key: str, options: SyncOptions, outcome: SyncOutcome) -> None:
        rows = await self._db(self.variants.load_variants, item.id, self.provider.name)
        outcome.total_variants = len(rows)
        now = self.clock()
        by_region: dict[str, list[VariantRow]] = defaultdict(list)
        for row in rows:
            by_region[row.region].append(row)

        stale_regions: list[str] = []
        cached = 0
        for region in options.regions:
            region_rows = by_region.get(region, [])
            if not region_rows:
                continue
            if not options.force_refresh:
                fresh = [await self._db(self.store.get_snapshot, row.id) for row in region_rows]
                if all(snapshot is not None and snapshot.is_fresh(now, options.ttl) for snapshot in fresh):
                    cached += len(region_rows)
                    continue
            stale_regions.append(region)

        region_options = SyncOptions(
            regions=tuple(stale_regions),
            conditions=tuple(sorted({row.condition for row in rows if row.region in stale_regions})),
            ttl=options.ttl,
            region_concurrency=options.region_concurrency,
            cancel_event=options.cancel_event,
        )
        entries = await self._fetch_regions(product_key, region_options, outcome) if stale_regions else []

        known = {row.key: row for row in rows}
        matched = [(known[entry_key(entry)], entry) for entry in entries if entry_key(entry) in known]
        for row, entry in matched:
            if row.provider_variant_id is None and entry.provider_variant_id:
                await self._db(self.variants.attach_provider_id, row.id, entry.provider_variant_id)
        await self._store_market_data([row for row, _ in matched], [entry for _, entry in matched], outcome)
        outcome.success = is_successful(outcome.market_data_refreshed + cached, outcome.total_variants)
        if options.fetch_sales:
            await self._enrich_sales(item, product_key, rows, options, outcome)

    async def _fetch_regions(
        self, product_key: str, options: SyncOptions, outcome: SyncOutcome
    ) -> list[AvailabilityEntry]:
        """Fetch every region x condition, recording failures per region without aborting."""
        semaphore = asyncio.Semaphore(options.region_concurrency)

        async def fetch_region(region: str) -> list[AvailabilityEntry]:
            found: list[AvailabilityEntry] = []
            async with semaphore:
                for condition in options.conditions:
                    self._check_cancel(options)
                    try:
                        found.extend(await self.provider.fetch_availability(product_key, region, condition))
                    except ProviderAuthError:
                        raise
                    except Exception as exc:
                        # malformed payloads only lose this region
                        outcome.add_error("availability", str(exc) or repr(exc), region=region)
                        logger.warning(
                            "Availability fetch failed for %s region %s (%s): %s",
                            product_key,
                            region,
                            condition,
                            exc,
                        )
            return found

        try:
            async with asyncio.TaskGroup() as group:
                tasks = [group.create_task(fetch_region(region)) for region in options.regions]
        except BaseExceptionGroup as failures:
            # sibling regions are cancelled; surface the first cause (auth or cancellation)
            raise failures.exceptions[0] from None
        return [entry for task in tasks for entry in task.result()]

    async def _store_market_data(
        self, rows: list[VariantRow], entries: list[AvailabilityEntry], outcome: SyncOutcome
    ) -> None:
        by_key = {row.key: row for row in rows}
        pairs = [
            (by_key[entry_key(entry)].id, entry)
            for entry in entries
            if entry.actionable and entry_key(entry) in by_key
        ]
        result = await self._db(self._record_refreshes, pairs)
        outcome.market_data_refreshed += result.refreshed
        outcome.history_inserted += result.history_inserted
        for variant_id, message in result.failed:
            outcome.add_error("market_data", f"variant {variant_id}: {message}")

    def _record_refreshes(self, pairs):
        return self.store.record_refreshes(pairs, now=self.clock())

    async def _enrich_sales(
        self,
        item: CatalogItem,
        product_key: str,
        rows: list[VariantRow],
        options: SyncOptions,
        outcome: SyncOutcome,
    ) -> None:
        """Fetch recent sales per (region, condition, size) and write 72h/30d volumes.

        Failures here are recorded but never change ``outcome.success``.
        """
        seen: set[tuple[str, str, str]] = set()
        for row in rows:
            key = (row.region, row.condition, row.size)
            if key in seen:
                continue
            seen.add(key)
            try:
                self._check_cancel(options)
                sales = await self.provider.fetch_recent_sales(product_key, row.size, row.region, row.condition)
                outcome.sales_inserted += await self._db(
                    self.store.insert_sales_if_absent, item.id, self.provider.name, sales
                )
            except (ProviderError, SQLAlchemyError) as exc:
                outcome.add_error("sales_history", str(exc), region=row.region, size=row.size)
                logger.warning("Sales fetch failed for item %s size %s in %s: %s", item.id, row.size, row.region, exc)
        now = self.clock()
        for row in rows:
            try:
                times = await self._db(self._sale_times, item.id, row, now)
                await self._db(self.store.update_sales_volume, row.id, sales_volume(times, now))
            except SQLAlchemyError as exc:
                outcome.add_error("sales_volume", str(exc), region=row.region, size=row.size)

    def _sale_times(self, catalog_item_id: int, row: VariantRow, now: datetime) -> list[datetime]:
        return self.store.load_sale_times(catalog_item_id, row.size, row.region, row.consigned, now=now)

    async def get_fresh_market_data(
        self, variant_id: int, *, force_refresh: bool = False, ttl: timedelta | None = None
    ) -> MarketDataResult:
        """Cache-first read of one variant's market data.

        A miss triggers a single provider fetch for that variant's size and
        region, followed by the paired snapshot upsert and history append.
        """
        variant = await self._db(self.variants.get_variant, variant_id)
        if variant is None:
            raise LookupError(f"variant {variant_id} does not exist")
        if variant.provider != self.provider.name:
            raise ValueError(f"variant {variant_id} belongs to {variant.provider}, not {self.provider.name}")
        now = self.clock()
        if not force_refresh:
            snapshot = await self._db(self._get_fresh, variant_id, now, ttl)
            if snapshot is not None:
                return MarketDataResult(cached=True, data=snapshot)

        product_key = await self._db(self.catalog.get_provider_key, variant.catalog_item_id, variant.provider)
        if not product_key:
            raise LookupError(f"catalog item {variant.catalog_item_id} has no {variant.provider} product key")
        entries = await self.provider.fetch_availability(
            product_key, variant.region, variant.condition, size=variant.size
        )
        match = next((entry for entry in entries if entry_key(entry) == variant.key), None)
        if match is None or not match.actionable:
            logger.info("No live market for variant %s (%s %s)", variant_id, variant.size, variant.region)
            return MarketDataResult(cached=False, data=None)
        await self._db(self._refresh_one, variant_id, match, now)
        return MarketDataResult(cached=False, data=await self._db(self.store.get_snapshot, variant_id))

    def _get_fresh(self, variant_id: int, now: datetime, ttl: timedelta | None) -> Snapshot | None:
        return self.store.get_fresh(variant_id, now=now, ttl=ttl)

    def _refresh_one(self, variant_id: int, entry: AvailabilityEntry, now: datetime) -> bool:
        return self.store.record_refresh(variant_id, entry, now=now)

    async def sync_stale_items(self, *, limit: int | None = None, options: SyncOptions | None = None) -> list[SyncOutcome]:
        """Sync the items whose data for this provider is missing or older than the TTL."""
        options = options or SyncOptions.from_env()
        limit = limit or int(os.environ.get("SYNC_STALE_BATCH_SIZE", "25"))
        item_ids = await self._db(self._list_stale, options.ttl, limit)
        logger.info("Found %s stale items for %s", len(item_ids), self.provider.name)
        outcomes: list[SyncOutcome] = []
        for item_id in item_ids:
            if options.cancelled:
                logger.warning("Stale sync for %s cancelled after %s items", self.provider.name, len(outcomes))
                break
            try:
                outcome = await self.sync_catalog_item(item_id, options)
            except Exception as exc:
                logger.exception("Sync of item %s on %s failed unexpectedly", item_id, self.provider.name)
                outcome = SyncOutcome(catalog_item_id=item_id, provider=self.provider.name, mode="unknown")
                outcome.add_error("internal", str(exc) or repr(exc))
            outcomes.append(outcome)
        return outcomes

    def _list_stale(self, ttl: timedelta, limit: int) -> list[int]:
        return self.catalog.list_stale(self.provider.name, ttl, self.clock(), limit)
