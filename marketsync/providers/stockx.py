"""StockX catalog, market data and selling API provider."""

from __future__ import annotations

import logging
import os
from typing import Any

from marketsync.logic.prices import cents_from_major, major_from_cents, normalize_size
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
from marketsync.utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.stockx.com"

REGION_CURRENCIES = {"US": "USD", "EU": "EUR", "UK": "GBP"}

OPERATION_STATUSES = ("queued", "processing", "completed", "failed", "partial_success")

_OPERATION_STATUS_MAP = {
    "queued": OperationStatus.PENDING,
    "pending": OperationStatus.PENDING,
    "processing": OperationStatus.PROCESSING,
    "in_progress": OperationStatus.PROCESSING,
    "completed": OperationStatus.COMPLETED,
    "succeeded": OperationStatus.COMPLETED,
    "failed": OperationStatus.FAILED,
    "partial_success": OperationStatus.PARTIAL_SUCCESS,
}


def _operation_status(value: Any) -> OperationStatus:
    name = coerce_enum(value, OPERATION_STATUSES)
    return _OPERATION_STATUS_MAP.get(name or "", OperationStatus.PROCESSING)


class StockxProvider(MarketProvider):
    """StockX prices are major-unit strings in the region's currency.

    Only the ``new`` condition is traded. Flex asks are reported as the
    consigned side of a size.
    """

    name = "stockx"

    def __init__(self, client: ProviderClient) -> None:
        super().__init__(client)
        self._variants: dict[str, list[dict[str, Any]]] = {}

    @classmethod
    def from_env(cls, *, rate_limiter: RateLimiter | None = None) -> "StockxProvider":
        api_key = os.environ.get("STOCKX_API_KEY")
        token = os.environ.get("STOCKX_ACCESS_TOKEN")
        if not api_key or not token:
            raise KeyError("STOCKX_API_KEY/STOCKX_ACCESS_TOKEN")
        client = ProviderClient(
            cls.name,
            os.environ.get("STOCKX_BASE_URL", DEFAULT_BASE_URL),
            headers={"x-api-key": api_key, "Authorization": f"Bearer {token}"},
            rate_limiter=rate_limiter,
        )
        return cls(client)

    def currency_for(self, region: str) -> str:
        return REGION_CURRENCIES[region]

    async def resolve_product_key(self, sku: str) -> tuple[str, str | None]:
        data = await self.client.get("/v2/catalog/search", params={"query": sku})
        products = data.get("products") or []
        wanted = sku.strip().upper()
        for product in products:
            if (product.get("styleId") or "").strip().upper() == wanted:
                return str(product["productId"]), product.get("title")
        raise ProviderNotFound(self.name, f"no product with style id {sku}")

    async def fetch_catalog(self, product_key: str) -> CatalogRecord:
        product = await self.client.get(f"/v2/catalog/products/{product_key}")
        variants = await self._load_variants(product_key)
        sizes = sorted({normalize_size(v["variantValue"]) for v in variants if v.get("variantValue")})
        return CatalogRecord(
            product_key=str(product.get("productId", product_key)),
            sku=product.get("styleId") or "",
            brand=product.get("brand"),
            name=product.get("title"),
            size_unit="US",
            allowed_sizes=sizes or None,
        )

    async def _load_variants(self, product_key: str) -> list[dict[str, Any]]:
        cached = self._variants.get(product_key)
        if cached is None:
            data = await self.client.get(f"/v2/catalog/products/{product_key}/variants")
            cached = data if isinstance(data, list) else data.get("variants") or []
            self._variants[product_key] = cached
        return cached

    async def fetch_availability(
        self,
        product_key: str,
        region: str,
        condition: str,
        *,
        size: str | None = None,
    ) -> list[AvailabilityEntry]:
        if condition != "new":
            return []
        currency = self.currency_for(region)
        entries: list[AvailabilityEntry] = []
        for variant in await self._load_variants(product_key):
            if not variant.get("variantValue"):
                continue
            variant_size = normalize_size(variant["variantValue"])
            if size is not None and variant_size != size:
                continue
            variant_id = str(variant["variantId"])
            market = await self.client.get(
                f"/v2/catalog/products/{product_key}/variants/{variant_id}/market-data",
                params={"currencyCode": currency},
            )
            bid = cents_from_major(market.get("highestBidAmount"))
            entries.append(
                AvailabilityEntry(
                    size=variant_size,
                    condition="new",
                    region=region,
                    consigned=False,
                    currency=currency,
                    lowest_ask_cents=cents_from_major(market.get("lowestAskAmount")),
                    highest_bid_cents=bid,
                    provider_variant_id=variant_id,
                )
            )
            flex_ask = cents_from_major(market.get("flexLowestAskAmount"))
            if flex_ask is not None or variant.get("isFlexEligible"):
                entries.append(
                    AvailabilityEntry(
                        size=variant_size,
                        condition="new",
                        region=region,
                        consigned=True,
                        currency=currency,
                        lowest_ask_cents=flex_ask,
                        highest_bid_cents=bid,
                        provider_variant_id=variant_id,
                    )
                )
        return entries

    async def resolve_variant(self, product_key: str, size: str) -> str | None:
        for variant in await self._load_variants(product_key):
            if variant.get("variantValue") and normalize_size(variant["variantValue"]) == size:
                return str(variant["variantId"])
        return None

    async def fetch_recent_sales(self, product_key: str, size: str, region: str, condition: str) -> list[SaleEntry]:
        # The public v2 API exposes no sales feed.
        return []

    async def submit_mutation(self, request: MutationRequest) -> MutationReceipt:
        kind = request.kind
        if kind is OperationKind.CREATE:
            variant_id = request.provider_variant_id
            if variant_id is None and request.product_key and request.size:
                variant_id = await self.resolve_variant(request.product_key, request.size)
            if variant_id is None or request.amount_cents is None:
                raise ProviderError(self.name, "create requires a variant and amount_cents")
            data = await self.client.request(
                "POST",
                "/v2/selling/listings",
                json={
                    "amount": major_from_cents(request.amount_cents),
                    "variantId": variant_id,
                    "currencyCode": request.currency,
                    "active": True,
                },
            )
        else:
            if not request.listing_id:
                raise ProviderError(self.name, f"{kind.value} requires listing_id")
            path = f"/v2/selling/listings/{request.listing_id}"
            if kind is OperationKind.UPDATE:
                body: dict[str, Any] = {"currencyCode": request.currency}
                if request.amount_cents is not None:
                    body["amount"] = major_from_cents(request.amount_cents)
                data = await self.client.request("PATCH", path, json=body)
            elif kind is OperationKind.DELETE:
                data = await self.client.request("DELETE", path)
            elif kind is OperationKind.ACTIVATE:
                data = await self.client.request("PUT", f"{path}/activate", json={"active": True})
            else:
                data = await self.client.request("POST", f"{path}/deactivate")
        operation_id = data.get("operationId")
        listing_id = data.get("listingId") or request.listing_id
        return MutationReceipt(
            status=_operation_status(data.get("operationStatus", "queued")),
            provider_operation_id=str(operation_id) if operation_id else None,
            listing_id=str(listing_id) if listing_id else None,
            raw=data,
        )

    async def poll_operation(self, provider_operation_id: str, *, listing_id: str | None = None) -> OperationReport:
        if listing_id:
            path = f"/v2/selling/listings/{listing_id}/operations/{provider_operation_id}"
        else:
            path = f"/v2/operations/{provider_operation_id}"
        data = await self.client.get(path)
        error = data.get("error") or {}
        if isinstance(error, str):
            error = {"message": error}
        return OperationReport(
            status=_operation_status(data.get("operationStatus", data.get("status"))),
            listing_id=data.get("listingId") or listing_id,
            error_code=error.get("code"),
            error_message=error.get("message"),
            raw=data,
        )
