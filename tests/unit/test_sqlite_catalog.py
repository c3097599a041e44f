"""Unit tests for the SQLite catalog store."""

import asyncio
import sqlite3

import pytest

from billscan.errors import CatalogError, UniqueViolationError
from billscan.integrations.catalog import SQLiteCatalogStore, name_key
from billscan.models import BillItemDraft, NewProduct, PaymentStatus

pytestmark = pytest.mark.unit


def test_name_key():
    assert name_key("  Brake PAD ") == "brake pad"


def test_schema_is_created(tmp_path):
    db_path = tmp_path / "nested" / "catalog.sqlite3"
    SQLiteCatalogStore(db_path)

    with sqlite3.connect(db_path) as conn:
        tables = {
            row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
    assert {"vendors", "products", "vendor_bills", "vendor_bill_items"} <= tables


def test_products_have_no_unused_name_index(tmp_path):
    """Name lookups go through name_key(), which a LOWER(name) index cannot serve."""
    db_path = tmp_path / "catalog.sqlite3"
    SQLiteCatalogStore(db_path)

    with sqlite3.connect(db_path) as conn:
        indexes = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='index' AND tbl_name='products'"
        ).fetchall()
    assert indexes == []


def test_unusable_path_raises_catalog_error(tmp_path):
    with pytest.raises(CatalogError):
        SQLiteCatalogStore(tmp_path)


class TestVendors:
    @pytest.mark.asyncio
    async def test_create_and_find(self, catalog):
        created = await catalog.create_vendor("Sharma Auto Parts", "27AAACS1234F1Z5")

        assert (await catalog.find_vendor_by_tax_id("27AAACS1234F1Z5")) == created
        assert (await catalog.find_vendor_by_name("sharma auto parts ")) == created
        assert await catalog.find_vendor_by_name("Other Vendor") is None
        assert await catalog.find_vendor_by_tax_id("29XXXXX0000X1Z1") is None

    @pytest.mark.asyncio
    async def test_same_identity_twice_is_a_unique_violation(self, catalog):
        await catalog.create_vendor("Sharma Auto Parts")
        with pytest.raises(UniqueViolationError):
            await catalog.create_vendor("SHARMA AUTO PARTS")


class TestBills:
    @pytest.mark.asyncio
    async def test_create_bill(self, catalog):
        vendor = await catalog.create_vendor("Sharma Auto Parts")
        bill = await catalog.create_bill(vendor.id, "INV-1", "2024-01-15", 708.0, notes="n")

        stored = await catalog.get_bill(bill.id)
        assert stored == bill
        assert stored.payment_status == PaymentStatus.UNPAID
        assert stored.photo_reference is None

    @pytest.mark.asyncio
    async def test_duplicate_bill_number_per_vendor(self, catalog):
        vendor = await catalog.create_vendor("Sharma Auto Parts")
        other = await catalog.create_vendor("Gupta Motors")
        await catalog.create_bill(vendor.id, "INV-1", "2024-01-15")

        with pytest.raises(UniqueViolationError):
            await catalog.create_bill(vendor.id, "INV-1", "2024-02-01")
        # Same number from a different vendor is fine
        await catalog.create_bill(other.id, "INV-1", "2024-01-15")

    @pytest.mark.asyncio
    async def test_unknown_vendor_is_a_catalog_error(self, catalog):
        with pytest.raises(CatalogError) as exc_info:
            await catalog.create_bill(999, "INV-1", "2024-01-15")
        assert not isinstance(exc_info.value, UniqueViolationError)

    @pytest.mark.asyncio
    async def test_set_bill_photo(self, catalog):
        vendor = await catalog.create_vendor("Sharma Auto Parts")
        bill = await catalog.create_bill(vendor.id, "INV-1", "2024-01-15")

        await catalog.set_bill_photo(bill.id, "/photos/a.jpg")

        assert (await catalog.get_bill(bill.id)).photo_reference == "/photos/a.jpg"
        with pytest.raises(CatalogError, match="not found"):
            await catalog.set_bill_photo(999, "/photos/b.jpg")

    @pytest.mark.asyncio
    async def test_delete_bill_cascades_to_items(self, catalog):
        vendor = await catalog.create_vendor("Sharma Auto Parts")
        bill = await catalog.create_bill(vendor.id, "INV-1", "2024-01-15")
        await catalog.insert_bill_items(
            [BillItemDraft(vendor_bill_id=bill.id, quantity=1, purchase_rate=10)]
        )

        await catalog.delete_bill(bill.id)

        assert await catalog.get_bill(bill.id) is None
        assert await catalog.list_bill_items() == []


class TestProducts:
    @pytest.mark.asyncio
    async def test_insert_returns_ids_in_order(self, catalog):
        inserted = await catalog.insert_products(
            [NewProduct(name="Oil Filter", current_stock=5), NewProduct(name="Brake Pad")]
        )

        assert [p.name for p in inserted] == ["Oil Filter", "Brake Pad"]
        assert inserted[0].id < inserted[1].id
        assert await catalog.get_product(inserted[0].id) == inserted[0]
        assert await catalog.count_products() == 2

    @pytest.mark.asyncio
    async def test_insert_is_all_or_nothing(self, catalog):
        with pytest.raises(CatalogError):
            await catalog.insert_products(
                [NewProduct(name="Good"), NewProduct(name="Bad", current_stock=-1)]
            )
        assert await catalog.count_products() == 0

    @pytest.mark.asyncio
    async def test_find_by_names_is_case_insensitive(self, catalog, seed_products):
        brake, _ = await seed_products(NewProduct(name="Brake Pad"), NewProduct(name="Oil Filter"))

        found = await catalog.find_products_by_names(["brake pad", "  BRAKE PAD", "Clutch"])

        assert found == [brake]

    @pytest.mark.asyncio
    async def test_find_by_names_with_no_names(self, catalog):
        assert await catalog.find_products_by_names([]) == []
        assert await catalog.find_products_by_names(["", "  "]) == []

    @pytest.mark.asyncio
    async def test_adjust_stock_adds_and_sets_rate(self, catalog, seed_products):
        (product,) = await seed_products(
            NewProduct(name="Oil Filter", current_stock=10, purchase_rate=100)
        )

        updated = await catalog.adjust_stock(product.id, 5, 120)

        assert updated.current_stock == 15
        assert updated.purchase_rate == 120

    @pytest.mark.asyncio
    async def test_concurrent_restocks_do_not_lose_updates(self, catalog, seed_products):
        (product,) = await seed_products(NewProduct(name="Oil Filter", current_stock=0))

        await asyncio.gather(*(catalog.adjust_stock(product.id, 1, 10) for _ in range(20)))

        assert (await catalog.get_product(product.id)).current_stock == 20

    @pytest.mark.asyncio
    async def test_stock_cannot_go_negative(self, catalog, seed_products):
        (product,) = await seed_products(NewProduct(name="Oil Filter", current_stock=2))

        with pytest.raises(CatalogError):
            await catalog.adjust_stock(product.id, -3, 10)
        assert (await catalog.get_product(product.id)).current_stock == 2

    @pytest.mark.asyncio
    async def test_adjust_unknown_product(self, catalog):
        with pytest.raises(CatalogError, match="not found"):
            await catalog.adjust_stock(404, 1, 10)

    @pytest.mark.asyncio
    async def test_delete_products_nulls_bill_item_reference(self, catalog, seed_products):
        (product,) = await seed_products(NewProduct(name="Oil Filter"))
        vendor = await catalog.create_vendor("Sharma Auto Parts")
        bill = await catalog.create_bill(vendor.id, "INV-1", "2024-01-15")
        await catalog.insert_bill_items(
            [BillItemDraft(vendor_bill_id=bill.id, product_id=product.id, quantity=1, purchase_rate=1)]
        )

        await catalog.delete_products([product.id])

        assert await catalog.get_product(product.id) is None
        assert (await catalog.list_bill_items(bill.id))[0].product_id is None


class TestBillItems:
    @pytest.mark.asyncio
    async def test_totals_are_computed_by_the_store(self, catalog):
        vendor = await catalog.create_vendor("Sharma Auto Parts")
        bill = await catalog.create_bill(vendor.id, "INV-1", "2024-01-15")

        inserted = await catalog.insert_bill_items(
            [
                BillItemDraft(vendor_bill_id=bill.id, quantity=5, purchase_rate=120, gst_percentage=18),
                BillItemDraft(vendor_bill_id=bill.id, quantity=3, purchase_rate=33.33),
            ]
        )

        assert [i.total_amount for i in inserted] == [708.0, 99.99]
        assert await catalog.list_bill_items(bill.id) == inserted

    @pytest.mark.asyncio
    async def test_empty_insert(self, catalog):
        assert await catalog.insert_bill_items([]) == []
