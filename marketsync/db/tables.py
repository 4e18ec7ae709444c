"""SQLAlchemy Core table definitions.

These mirror ``schema.sql`` and are used both for query construction and to
build throwaway SQLite databases in tests.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects import postgresql, sqlite

metadata = MetaData()

ACTIVE_OPERATION_STATUSES = ("pending", "processing")

catalog_items = Table(
    "catalog_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("sku", Text, nullable=False, unique=True),
    Column("brand", Text),
    Column("name", Text),
    Column("size_unit", Text),
    Column("allowed_sizes", JSON),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)

catalog_provider_keys = Table(
    "catalog_provider_keys",
    metadata,
    Column("catalog_item_id", Integer, ForeignKey("catalog_items.id"), primary_key=True),
    Column("provider", Text, primary_key=True),
    Column("product_key", Text, nullable=False),
    Column("title", Text),
    Column("resolved_at", DateTime, nullable=False),
    Column("synced_at", DateTime),
)

variants = Table(
    "variants",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("catalog_item_id", Integer, ForeignKey("catalog_items.id"), nullable=False),
    Column("provider", Text, nullable=False),
    Column("size", Text, nullable=False),
    Column("size_unit", Text),
    Column("condition", Text, nullable=False),
    Column("region", Text, nullable=False),
    Column("consigned", Boolean, nullable=False),
    Column("provider_variant_id", Text),
    Column("created_at", DateTime, nullable=False),
    UniqueConstraint(
        "catalog_item_id", "provider", "size", "condition", "region", "consigned",
        name="uq_variants_identity",
    ),
)

market_snapshots = Table(
    "market_snapshots",
    metadata,
    Column("variant_id", Integer, ForeignKey("variants.id"), primary_key=True),
    Column("currency", Text, nullable=False),
    Column("lowest_ask_cents", Integer),
    Column("highest_bid_cents", Integer),
    Column("last_sale_cents", Integer),
    Column("global_indicator_cents", Integer),
    Column("sales_72h", Integer),
    Column("sales_30d", Integer),
    Column("updated_at", DateTime, nullable=False),
    Column("expires_at", DateTime, nullable=False),
)

price_history = Table(
    "price_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("variant_id", Integer, ForeignKey("variants.id"), nullable=False),
    Column("currency", Text, nullable=False),
    Column("lowest_ask_cents", Integer),
    Column("highest_bid_cents", Integer),
    Column("last_sale_cents", Integer),
    Column("recorded_at", DateTime, nullable=False),
    UniqueConstraint("variant_id", "recorded_at", name="uq_price_history_point"),
)

sales_history = Table(
    "sales_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("catalog_item_id", Integer, ForeignKey("catalog_items.id"), nullable=False),
    Column("provider", Text, nullable=False),
    Column("size", Text, nullable=False),
    Column("price_cents", Integer, nullable=False),
    Column("currency", Text, nullable=False),
    Column("sold_at", DateTime, nullable=False),
    Column("region", Text, nullable=False),
    Column("consigned", Boolean, nullable=False),
    Column("recorded_at", DateTime, nullable=False),
    UniqueConstraint("catalog_item_id", "size", "price_cents", "sold_at", name="uq_sales_history_sale"),
)

provider_accounts = Table(
    "provider_accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("provider", Text, nullable=False),
    Column("label", Text),
    Column("status", Text, nullable=False, default="connected"),
    Column("last_error", Text),
    Column("updated_at", DateTime, nullable=False),
)

mutation_operations = Table(
    "mutation_operations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("catalog_item_id", Integer, ForeignKey("catalog_items.id"), nullable=False),
    Column("provider", Text, nullable=False),
    Column("account_id", Integer, ForeignKey("provider_accounts.id")),
    Column("kind", Text, nullable=False),
    Column("status", Text, nullable=False),
    Column("provider_operation_id", Text),
    Column("listing_id", Text),
    Column("variant_id", Integer, ForeignKey("variants.id")),
    Column("payload", JSON),
    Column("result", JSON),
    Column("error_code", Text),
    Column("error_message", Text),
    Column("attempts", Integer, nullable=False, default=0),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    Column("last_polled_at", DateTime),
    Column("completed_at", DateTime),
)

Index(
    "uq_mutation_operations_active",
    mutation_operations.c.catalog_item_id,
    mutation_operations.c.provider,
    unique=True,
    sqlite_where=mutation_operations.c.status.in_(ACTIVE_OPERATION_STATUSES),
    postgresql_where=mutation_operations.c.status.in_(ACTIVE_OPERATION_STATUSES),
)

listings = Table(
    "listings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("provider", Text, nullable=False),
    Column("listing_id", Text, nullable=False),
    Column("catalog_item_id", Integer, ForeignKey("catalog_items.id"), nullable=False),
    Column("variant_id", Integer, ForeignKey("variants.id")),
    Column("account_id", Integer, ForeignKey("provider_accounts.id")),
    Column("status", Text, nullable=False),
    Column("amount_cents", Integer),
    Column("currency", Text),
    Column("expires_at", DateTime),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    UniqueConstraint("provider", "listing_id", name="uq_listings_provider_listing"),
)

listing_history = Table(
    "listing_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("provider", Text, nullable=False),
    Column("listing_id", Text, nullable=False),
    Column("operation_id", Integer, ForeignKey("mutation_operations.id")),
    Column("action", Text, nullable=False),
    Column("status", Text, nullable=False),
    Column("amount_cents", Integer),
    Column("details", JSON),
    Column("recorded_at", DateTime, nullable=False),
)


def dialect_insert(conn, table: Table):
    """Return an INSERT construct that supports ON CONFLICT for the connection's dialect."""
    if conn.dialect.name == "sqlite":
        return sqlite.insert(table)
    return postgresql.insert(table)
