import pytest
from sqlalchemy import func, select

from marketsync.db.tables import variants
from marketsync.market.variants import VariantResolver, filter_allowed

from helpers import FakeProvider, make_entry


def test_one_row_per_variant_tuple(engine, catalog_item):
    resolver = VariantResolver(engine)
    entries = [
        make_entry("10"),
        make_entry("10"),
        make_entry("10", consigned=True),
        make_entry("10", region="EU"),
        make_entry("10.5"),
    ]
    first = resolver.ensure_variants(catalog_item, "alias", entries)
    second = resolver.ensure_variants(catalog_item, "alias", entries)
    assert len(first) == 4
    assert sorted(row.id for row in first) == sorted(row.id for row in second)
    with engine.connect() as conn:
        assert conn.execute(select(func.count()).select_from(variants)).scalar_one() == 4


def test_same_tuple_on_another_provider_is_a_separate_variant(engine, catalog_item):
    resolver = VariantResolver(engine)
    resolver.ensure_variants(catalog_item, "alias", [make_entry("10")])
    resolver.ensure_variants(catalog_item, "stockx", [make_entry("10")])
    assert resolver.has_variants(catalog_item, "alias")
    assert resolver.has_variants(catalog_item, "stockx")
    assert len(resolver.load_variants(catalog_item, "alias")) == 1


def test_provider_variant_id_only_attached_when_missing(engine, catalog_item):
    resolver = VariantResolver(engine)
    (row,) = resolver.ensure_variants(catalog_item, "stockx", [make_entry("10")])
    assert row.provider_variant_id is None
    (row,) = resolver.ensure_variants(catalog_item, "stockx", [make_entry("10", provider_variant_id="v-1")])
    assert row.provider_variant_id == "v-1"
    (row,) = resolver.ensure_variants(catalog_item, "stockx", [make_entry("10", provider_variant_id="v-2")])
    assert row.provider_variant_id == "v-1"
    resolver.attach_provider_id(row.id, "v-3")
    assert resolver.get_variant(row.id).provider_variant_id == "v-1"


def test_filter_allowed_drops_legacy_sizes():
    entries = [make_entry("10"), make_entry("10.5"), make_entry("18")]
    kept = filter_allowed(entries, ["10", "10.5"])
    assert [entry.size for entry in kept] == ["10", "10.5"]
    assert filter_allowed(entries, None) == entries


@pytest.mark.asyncio
async def test_resolve_creates_variant_and_attaches_provider_id(engine, catalog_item):
    resolver = VariantResolver(engine)
    provider = FakeProvider(name="stockx", variant_ids={"9": "v-9"})
    row = await resolver.resolve(
        provider, catalog_item, "prod-1", size="9", condition="new", region="US", consigned=False
    )
    assert row.provider_variant_id == "v-9"
    again = await resolver.resolve(
        provider, catalog_item, "prod-1", size="9", condition="new", region="US", consigned=False
    )
    assert again.id == row.id
    assert provider.calls["resolve_variant"] == 1


@pytest.mark.asyncio
async def test_resolve_refuses_disallowed_size(engine, catalog_item):
    resolver = VariantResolver(engine)
    row = await resolver.resolve(
        FakeProvider(),
        catalog_item,
        "cat-1",
        size="18",
        condition="new",
        region="US",
        consigned=False,
        allowed_sizes=["9", "10"],
    )
    assert row is None
    assert not resolver.has_variants(catalog_item, "alias")
