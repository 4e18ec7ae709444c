"""Provider-agnostic market data records and the provider interface."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence

from marketsync.logic.prices import has_actionable_price
from marketsync.operations.state import OperationKind, OperationStatus
from marketsync.providers.client import ProviderClient
from marketsync.utils.rate_limit import RateLimiter

REGIONS = ("UK", "EU", "US")


@dataclass(slots=True)
class CatalogRecord:
    product_key: str
    sku: str
    brand: str | None
    name: str | None
    size_unit: str | None
    # None means the provider publishes no size list and nothing is filtered
    allowed_sizes: list[str] | None = None


@dataclass(slots=True)
class AvailabilityEntry:
    size: str
    condition: str
    region: str
    consigned: bool
    currency: str
    lowest_ask_cents: int | None = None
    highest_bid_cents: int | None = None
    last_sale_cents: int | None = None
    global_indicator_cents: int | None = None
    provider_variant_id: str | None = None

    @property
    def actionable(self) -> bool:
        return has_actionable_price(self.lowest_ask_cents, self.highest_bid_cents, self.last_sale_cents)


@dataclass(slots=True)
class SaleEntry:
    size: str
    price_cents: int
    currency: str
    sold_at: datetime
    region: str
    consigned: bool


@dataclass(slots=True)
class MutationRequest:
    catalog_item_id: int
    provider: str
    kind: OperationKind
    product_key: str | None = None
    listing_id: str | None = None
    variant_id: int | None = None
    provider_variant_id: str | None = None
    size: str | None = None
    size_unit: str | None = None
    condition: str = "new"
    amount_cents: int | None = None
    currency: str = "USD"
    account_id: int | None = None

    def payload(self) -> dict[str, Any]:
        return {
            "product_key": self.product_key,
            "provider_variant_id": self.provider_variant_id,
            "size": self.size,
            "size_unit": self.size_unit,
            "condition": self.condition,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
        }


@dataclass(slots=True)
class MutationReceipt:
    """What a provider said immediately after a mutation was submitted."""

    status: OperationStatus
    provider_operation_id: str | None = None
    listing_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class OperationReport:
    status: OperationStatus
    listing_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


def coerce_enum(value: Any, names: Sequence[str], *, prefix: str = "") -> str | None:
    """Normalise a provider enum that may arrive as a name or an ordinal.

    ``names`` lists the lowercase names in ordinal order, e.g. protobuf-style
    enums where ``0`` is the invalid/unspecified value.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return names[value] if 0 <= value < len(names) else None
    text = str(value).strip()
    if text.isdigit():
        return coerce_enum(int(text), names, prefix=prefix)
    text = text.upper()
    if prefix and text.startswith(prefix):
        text = text[len(prefix):]
    return text.lower() or None


class MarketProvider(abc.ABC):
    """Capability interface the orchestrator and reconciler depend on."""

    name: str

    def __init__(self, client: ProviderClient) -> None:
        self.client = client

    @classmethod
    def from_env(cls, *, rate_limiter: RateLimiter | None = None) -> MarketProvider:
        raise NotImplementedError

    async def close(self) -> None:
        await self.client.close()

    def currency_for(self, region: str) -> str:
        return "USD"

    @abc.abstractmethod
    async def resolve_product_key(self, sku: str) -> tuple[str, str | None]:
        """Find the provider's product key (and title) for a canonical SKU."""

    @abc.abstractmethod
    async def fetch_catalog(self, product_key: str) -> CatalogRecord:
        ...

    @abc.abstractmethod
    async def fetch_availability(
        self,
        product_key: str,
        region: str,
        condition: str,
        *,
        size: str | None = None,
    ) -> list[AvailabilityEntry]:
        """Market data for every size (or one size) in both consignment states."""

    @abc.abstractmethod
    async def resolve_variant(self, product_key: str, size: str) -> str | None:
        ...

    @abc.abstractmethod
    async def fetch_recent_sales(self, product_key: str, size: str, region: str, condition: str) -> list[SaleEntry]:
        ...

    @abc.abstractmethod
    async def submit_mutation(self, request: MutationRequest) -> MutationReceipt:
        ...

    @abc.abstractmethod
    async def poll_operation(self, provider_operation_id: str, *, listing_id: str | None = None) -> OperationReport:
        ...
