from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta

from marketsync.operations.state import OperationStatus
from marketsync.providers.base import (
    AvailabilityEntry,
    CatalogRecord,
    MarketProvider,
    MutationReceipt,
    MutationRequest,
    OperationReport,
    SaleEntry,
)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


def make_entry(
    size: str,
    *,
    region: str = "US",
    consigned: bool = False,
    ask: int | None = 12000,
    bid: int | None = None,
    last: int | None = None,
    condition: str = "new",
    currency: str = "USD",
    provider_variant_id: str | None = None,
) -> AvailabilityEntry:
    return AvailabilityEntry(
        size=size,
        condition=condition,
        region=region,
        consigned=consigned,
        currency=currency,
        lowest_ask_cents=ask,
        highest_bid_cents=bid,
        last_sale_cents=last,
        provider_variant_id=provider_variant_id,
    )


class FakeProvider(MarketProvider):
    """In-memory provider that records every call."""

    def __init__(
        self,
        *,
        name: str = "alias",
        catalog: CatalogRecord | Exception | None = None,
        availability: dict[str, list[AvailabilityEntry]] | None = None,
        region_errors: dict[str, Exception] | None = None,
        sales: list[SaleEntry] | Exception | None = None,
        variant_ids: dict[str, str] | None = None,
    ) -> None:
        super().__init__(client=None)
        self.name = name
        self.catalog = catalog or CatalogRecord(
            product_key="cat-1", sku="DD1391-100", brand="Nike", name="Dunk Low", size_unit="US"
        )
        self.availability = availability or {}
        self.region_errors = region_errors or {}
        self.sales = sales if sales is not None else []
        self.variant_ids = variant_ids or {}
        self.calls: dict[str, int] = defaultdict(int)
        self.availability_calls: list[tuple[str, str, str | None]] = []
        self.submitted: list[MutationRequest] = []
        self.receipts: list[MutationReceipt | Exception] = []
        self.reports: list[OperationReport | Exception] = []
        self.poll_calls: list[tuple[str, str | None]] = []
        self.closed = False

    async def close(self) -> None:
        self.closed = True

    async def resolve_product_key(self, sku: str) -> tuple[str, str | None]:
        self.calls["resolve_product_key"] += 1
        if isinstance(self.catalog, Exception):
            return "cat-1", None
        return self.catalog.product_key, self.catalog.name

    async def fetch_catalog(self, product_key: str) -> CatalogRecord:
        self.calls["fetch_catalog"] += 1
        if isinstance(self.catalog, Exception):
            raise self.catalog
        return self.catalog

    async def fetch_availability(self, product_key, region, condition, *, size=None):
        self.availability_calls.append((region, condition, size))
        if region in self.region_errors:
            raise self.region_errors[region]
        return [
            entry
            for entry in self.availability.get(region, [])
            if entry.condition == condition and (size is None or entry.size == size)
        ]

    async def resolve_variant(self, product_key: str, size: str) -> str | None:
        self.calls["resolve_variant"] += 1
        return self.variant_ids.get(size)

    async def fetch_recent_sales(self, product_key, size, region, condition):
        self.calls["fetch_recent_sales"] += 1
        if isinstance(self.sales, Exception):
            raise self.sales
        return [sale for sale in self.sales if sale.size == size and sale.region == region]

    async def submit_mutation(self, request: MutationRequest) -> MutationReceipt:
        self.submitted.append(request)
        receipt = self.receipts.pop(0) if self.receipts else MutationReceipt(
            status=OperationStatus.PENDING, provider_operation_id=f"op-{len(self.submitted)}"
        )
        if isinstance(receipt, Exception):
            raise receipt
        return receipt

    async def poll_operation(self, provider_operation_id: str, *, listing_id: str | None = None) -> OperationReport:
        self.poll_calls.append((provider_operation_id, listing_id))
        report = self.reports.pop(0) if self.reports else OperationReport(status=OperationStatus.PROCESSING)
        if isinstance(report, Exception):
            raise report
        return report
