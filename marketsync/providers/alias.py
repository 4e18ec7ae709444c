"""Alias (GOAT) pricing and listings provider."""

from __future__ import annotations

import logging
import os
from typing import Any

from marketsync.logic.prices import cents_from_string, normalize_size
from marketsync.operations.state import OperationKind, OperationStatus
from marketsync.providers.base import (
    AvailabilityEntry,
    CatalogRecord,
    MarketProvider,
    MutationReceipt,
    MutationRequest,
    OperationReport,
    SaleEntry,
    coerce_enum,
)
from marketsync.providers.client import ProviderClient
from marketsync.providers.errors import ProviderError, ProviderNotFound
from marketsync.utils.dates import parse_timestamp
from marketsync.utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.alias.org/api/v1"

REGION_IDS = {"US": "1", "EU": "2", "UK": "3"}

PRODUCT_CONDITIONS = ("invalid", "new", "used", "new_with_defects")
PACKAGING_CONDITIONS = ("invalid", "good_condition", "missing_lid", "badly_damaged", "no_original_box")
BATCH_STATUSES = ("invalid", "pending", "processing", "completed", "failed", "partial_success")

_BATCH_STATUS_MAP = {
    "pending": OperationStatus.PENDING,
    "queued": OperationStatus.PENDING,
    "processing": OperationStatus.PROCESSING,
    "in_progress": OperationStatus.PROCESSING,
    "completed": OperationStatus.COMPLETED,
    "failed": OperationStatus.FAILED,
    "partial_success": OperationStatus.PARTIAL_SUCCESS,
    "partially_completed": OperationStatus.PARTIAL_SUCCESS,
}


def _condition_param(condition: str) -> str:
    return f"PRODUCT_CONDITION_{condition.upper()}"


class AliasProvider(MarketProvider):
    """Alias prices are cent strings in USD for every region."""

    name = "alias"

    @classmethod
    def from_env(cls, *, rate_limiter: RateLimiter | None = None) -> "AliasProvider":
        token = os.environ.get("ALIAS_PAT")
        if not token:
            raise KeyError("ALIAS_PAT")
        client = ProviderClient(
            cls.name,
            os.environ.get("ALIAS_BASE_URL", DEFAULT_BASE_URL),
            headers={"Authorization": f"Bearer {token}"},
            rate_limiter=rate_limiter,
        )
        return cls(client)

    async def resolve_product_key(self, sku: str) -> tuple[str, str | None]:
        data = await self.client.get("/catalog", params={"query": sku, "limit": 10})
        items = data.get("catalog_items") or []
        if not items:
            raise ProviderNotFound(self.name, f"no catalog match for {sku}")
        wanted = _sku_key(sku)
        match = next((item for item in items if _sku_key(item.get("sku", "")) == wanted), items[0])
        return str(match["catalog_id"]), match.get("name")

    async def fetch_catalog(self, product_key: str) -> CatalogRecord:
        data = await self.client.get(f"/catalog/{product_key}")
        item = data.get("catalog_item")
        if not item:
            raise ProviderNotFound(self.name, f"catalog item {product_key} missing from response", body=data)
        allowed = [normalize_size(size["value"]) for size in item.get("allowed_sizes") or [] if "value" in size]
        return CatalogRecord(
            product_key=str(item.get("catalog_id", product_key)),
            sku=item.get("sku") or "",
            brand=item.get("brand"),
            name=item.get("name"),
            size_unit=item.get("size_unit"),
            allowed_sizes=allowed or None,
        )

    async def fetch_availability(
        self,
        product_key: str,
        region: str,
        condition: str,
        *,
        size: str | None = None,
    ) -> list[AvailabilityEntry]:
        region_id = REGION_IDS[region]
        entries: list[AvailabilityEntry] = []
        for consigned in (False, True):
            data = await self.client.get(
                f"/pricing_insights/availabilities/{product_key}",
                params={"region_id": region_id, "consigned": "true" if consigned else "false"},
            )
            for raw in data.get("variants") or []:
                entry = self._parse_availability(raw, region, consigned)
                if entry is None or entry.condition != condition:
                    continue
                if size is not None and entry.size != size:
                    continue
                entries.append(entry)
        return entries

    def _parse_availability(self, raw: dict[str, Any], region: str, consigned: bool) -> AvailabilityEntry | None:
        condition = coerce_enum(raw.get("product_condition"), PRODUCT_CONDITIONS, prefix="PRODUCT_CONDITION_")
        packaging = coerce_enum(raw.get("packaging_condition"), PACKAGING_CONDITIONS, prefix="PACKAGING_CONDITION_")
        if packaging != "good_condition" or raw.get("size") in (None, ""):
            return None
        availability = raw.get("availability") or {}
        return AvailabilityEntry(
            size=normalize_size(raw["size"]),
            condition=condition or "invalid",
            region=region,
            consigned=bool(raw.get("consigned", consigned)),
            currency="USD",
            lowest_ask_cents=cents_from_string(availability.get("lowest_listing_price_cents")),
            highest_bid_cents=cents_from_string(availability.get("highest_offer_price_cents")),
            last_sale_cents=cents_from_string(availability.get("last_sold_listing_price_cents")),
            global_indicator_cents=cents_from_string(availability.get("global_indicator_price_cents")),
        )

    async def resolve_variant(self, product_key: str, size: str) -> str | None:
        # Alias addresses sizes by catalog id plus size value; there is no variant id.
        return None

    async def fetch_recent_sales(self, product_key: str, size: str, region: str, condition: str) -> list[SaleEntry]:
        data = await self.client.get(
            "/pricing_insights/recent_sales",
            params={
                "catalog_id": product_key,
                "size": size,
                "region_id": REGION_IDS[region],
                "product_condition": _condition_param(condition),
                "packaging_condition": "PACKAGING_CONDITION_GOOD_CONDITION",
                "limit": 200,
            },
        )
        sales: list[SaleEntry] = []
        for raw in data.get("recent_sales") or []:
            price = cents_from_string(raw.get("price_cents"))
            sold_at = parse_timestamp(raw.get("purchased_at"))
            if price is None or sold_at is None:
                continue
            sales.append(
                SaleEntry(
                    size=normalize_size(raw.get("size", size)),
                    price_cents=price,
                    currency="USD",
                    sold_at=sold_at,
                    region=region,
                    consigned=bool(raw.get("consigned", False)),
                )
            )
        return sales

    async def submit_mutation(self, request: MutationRequest) -> MutationReceipt:
        """Alias applies listing mutations synchronously."""
        kind = request.kind
        if kind is OperationKind.CREATE:
            if request.product_key is None or request.size is None or request.amount_cents is None:
                raise ProviderError(self.name, "create requires product_key, size and amount_cents")
            try:
                size_value = float(request.size)
            except ValueError:
                raise ProviderError(self.name, f"size {request.size!r} is not a numeric Alias size") from None
            data = await self.client.request(
                "POST",
                "/listings",
                json={
                    "catalog_id": request.product_key,
                    "price_cents": str(request.amount_cents),
                    "condition": _condition_param(request.condition),
                    "packaging_condition": "PACKAGING_CONDITION_GOOD_CONDITION",
                    "size": size_value,
                    "size_unit": request.size_unit or "US",
                    "activate": True,
                },
            )
        else:
            if not request.listing_id:
                raise ProviderError(self.name, f"{kind.value} requires listing_id")
            path = f"/listings/{request.listing_id}"
            if kind is OperationKind.UPDATE:
                data = await self.client.request("PATCH", path, json={"price_cents": str(request.amount_cents)})
            elif kind is OperationKind.DELETE:
                data = await self.client.request("DELETE", path)
            elif kind is OperationKind.ACTIVATE:
                data = await self.client.request("POST", f"{path}/activate")
            else:
                data = await self.client.request("POST", f"{path}/deactivate")
        listing = (data or {}).get("listing") or {}
        listing_id = listing.get("id") or request.listing_id
        return MutationReceipt(
            status=OperationStatus.COMPLETED,
            listing_id=str(listing_id) if listing_id else None,
            raw=data or {},
        )

    async def poll_operation(self, provider_operation_id: str, *, listing_id: str | None = None) -> OperationReport:
        data = await self.client.get(f"/batch_operations/{provider_operation_id}")
        batch = data.get("batch_operation") or data
        name = coerce_enum(batch.get("status"), BATCH_STATUSES, prefix="BATCH_OPERATION_STATUS_")
        status = _BATCH_STATUS_MAP.get(name or "", OperationStatus.PROCESSING)
        error = batch.get("error") or {}
        return OperationReport(
            status=status,
            listing_id=batch.get("listing_id") or listing_id,
            error_code=error.get("code"),
            error_message=error.get("message"),
            raw=data,
        )


def _sku_key(sku: str) -> str:
    return sku.strip().upper().replace(" ", "-")
