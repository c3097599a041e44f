"""Unit tests for matching line items against the catalog."""

from unittest.mock import AsyncMock

import pytest

from billscan.models import ExtractedLineItem, NewProduct, Product
from billscan.pipeline.resolver import build_name_index, resolve_duplicates

pytestmark = pytest.mark.unit


def test_build_name_index_keeps_first_and_flags_ambiguous():
    first = Product(id=1, name="Brake Pad")
    second = Product(id=2, name="brake pad ")
    other = Product(id=3, name="Oil Filter")

    index, ambiguous = build_name_index([first, second, other])

    assert index == {"brake pad": first, "oil filter": other}
    assert ambiguous == {"brake pad"}


class TestResolveDuplicates:
    @pytest.mark.asyncio
    async def test_case_insensitive_match(self, catalog, seed_products):
        (brake,) = await seed_products(
            NewProduct(name="Brake Pad", current_stock=10, purchase_rate=400)
        )
        items = [
            ExtractedLineItem(name="brake pad", quantity=2, purchase_rate=420),
            ExtractedLineItem(name="Clutch Plate", quantity=1),
        ]

        resolved = await resolve_duplicates(items, catalog)

        assert [r.name for r in resolved] == ["brake pad", "Clutch Plate"]
        assert resolved[0].is_duplicate
        assert resolved[0].matched_product_id == brake.id
        assert resolved[0].matched_current_stock == 10
        assert resolved[0].matched_purchase_rate == 400
        assert resolved[0].purchase_rate == 420
        assert not resolved[0].ambiguous_match
        assert not resolved[1].is_duplicate
        assert resolved[1].matched_product_id is None

    @pytest.mark.asyncio
    async def test_no_fuzzy_matching(self, catalog, seed_products):
        await seed_products(NewProduct(name="Brake Pads"))

        resolved = await resolve_duplicates([ExtractedLineItem(name="Brake Pad")], catalog)

        assert not resolved[0].is_duplicate

    @pytest.mark.asyncio
    async def test_ambiguous_match_uses_lowest_id(self, catalog, seed_products):
        older, _ = await seed_products(NewProduct(name="Brake Pad"), NewProduct(name="BRAKE PAD"))

        resolved = await resolve_duplicates([ExtractedLineItem(name="Brake pad")], catalog)

        assert resolved[0].matched_product_id == older.id
        assert resolved[0].ambiguous_match

    @pytest.mark.asyncio
    async def test_single_bulk_lookup(self):
        catalog = AsyncMock()
        catalog.find_products_by_names.return_value = []
        items = [ExtractedLineItem(name=n) for n in ("A", "B", "C")]

        await resolve_duplicates(items, catalog)

        catalog.find_products_by_names.assert_awaited_once_with(["A", "B", "C"])

    @pytest.mark.asyncio
    async def test_empty_list_skips_lookup(self):
        catalog = AsyncMock()

        assert await resolve_duplicates([], catalog) == []
        catalog.find_products_by_names.assert_not_called()
