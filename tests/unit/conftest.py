"""Shared fixtures for unit tests."""

import pytest

from billscan.integrations.catalog import SQLiteCatalogStore
from billscan.models import ExtractedLineItem, InvoiceDraft, NewProduct, VendorDraft


@pytest.fixture
def catalog(tmp_path):
    """A fresh SQLite catalog in a temporary directory."""
    return SQLiteCatalogStore(tmp_path / "catalog.sqlite3")


@pytest.fixture
def vendor_draft():
    """Vendor as read off a typical invoice."""
    return VendorDraft(name="Sharma Auto Parts", tax_id="27AAACS1234F1Z5")


@pytest.fixture
def invoice_draft():
    """Bill header as read off a typical invoice."""
    return InvoiceDraft(bill_number="INV-1042", bill_date="2024-01-15", total_amount=708.0)


@pytest.fixture
def oil_filter():
    """Five oil filters at 120 with 18% GST."""
    return ExtractedLineItem(name="Oil Filter", quantity=5, purchase_rate=120, gst_percentage=18)


@pytest.fixture
def seed_products(catalog):
    """Insert products directly into the catalog and return them."""

    async def _seed(*products: NewProduct):
        return await catalog.insert_products(list(products))

    return _seed
