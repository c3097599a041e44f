"""Unit tests for the end-to-end ingestion driver."""

import json

import pytest

from billscan.models import NewProduct, ParseFailureKind
from billscan.pipeline.ingest import NO_ITEMS_MESSAGE, ingest_invoice, preview_invoice

pytestmark = pytest.mark.unit


def ai_reply(products, vendor=None, invoice=None):
    """Render a typical fenced model reply."""
    body = {
        "vendor": vendor if vendor is not None else {"name": "Sharma Auto Parts", "gstin": "27AAACS1234F1Z5"},
        "invoice": invoice if invoice is not None else {"bill number": "INV-1042", "bill date": "15/01/2024"},
        "products": products,
    }
    return f"```json\n{json.dumps(body, indent=2)}\n```"


@pytest.fixture
def events():
    """Collect (event_type, message) pairs from on_progress."""
    return []


@pytest.fixture
def on_progress(events):
    def _record(event_type, message):
        events.append((event_type, message))

    return _record


@pytest.mark.asyncio
async def test_ingest_success(catalog, events, on_progress):
    raw = ai_reply([{"name": "Oil Filter", "qty": "5", "rate": "120", "gst": "18%"}])

    result = await ingest_invoice(raw, catalog, on_progress=on_progress)

    assert result.ok
    assert result.normalized.invoice.bill_date == "2024-01-15"
    assert result.validation.all_valid
    assert not result.resolved[0].is_duplicate
    assert result.report.products_created == 1
    assert [e[0] for e in events] == ["parse_success", "resolve_success", "commit_success"]

    (item,) = await catalog.list_bill_items(result.report.bill_id)
    assert item.total_amount == 708.0


@pytest.mark.asyncio
async def test_ingest_parse_error(catalog, events, on_progress):
    result = await ingest_invoice("Sorry, the image is too blurry.", catalog, on_progress=on_progress)

    assert not result.ok
    assert result.parse_failure.kind == ParseFailureKind.NO_STRUCTURE_FOUND
    assert result.normalized is None
    assert result.report is None
    assert [e[0] for e in events] == ["parse_error"]


@pytest.mark.asyncio
async def test_ingest_no_products(catalog, events, on_progress):
    result = await ingest_invoice(ai_reply([]), catalog, on_progress=on_progress)

    assert not result.ok
    assert result.validation_error == NO_ITEMS_MESSAGE
    assert events[-1][0] == "validation_error"
    assert await catalog.find_vendor_by_name("Sharma Auto Parts") is None


@pytest.mark.asyncio
async def test_ingest_invalid_item_writes_nothing(catalog, events, on_progress):
    raw = ai_reply([{"name": "Oil Filter", "quantity": 0}, {"name": "Brake Pad", "quantity": 1}])

    result = await ingest_invoice(raw, catalog, on_progress=on_progress)

    assert not result.ok
    assert "quantity" in result.validation_error
    assert result.report is None
    assert result.resolved == []
    assert await catalog.count_products() == 0
    assert events[-1][0] == "validation_error"


@pytest.mark.asyncio
async def test_dry_run_stops_before_commit(catalog, seed_products):
    await seed_products(NewProduct(name="Oil Filter", current_stock=10))
    raw = ai_reply([{"name": "oil filter", "quantity": 5}, {"name": "Air Filter"}])

    result = await ingest_invoice(raw, catalog, dry_run=True)

    assert result.ok
    assert result.report is None
    assert [r.is_duplicate for r in result.resolved] == [True, False]
    assert result.resolved[0].matched_current_stock == 10
    assert await catalog.count_products() == 1
    assert await catalog.find_vendor_by_name("Sharma Auto Parts") is None


@pytest.mark.asyncio
async def test_preview_invoice(catalog):
    result = await preview_invoice(ai_reply([{"name": "Air Filter"}]), catalog)

    assert result.report is None
    assert len(result.resolved) == 1
    assert await catalog.count_products() == 0


@pytest.mark.asyncio
async def test_duplicate_bill_reports_commit_error(catalog, events, on_progress):
    raw = ai_reply([{"name": "Oil Filter", "quantity": 5, "price": 120}])
    await ingest_invoice(raw, catalog)

    result = await ingest_invoice(raw, catalog, on_progress=on_progress)

    assert not result.ok
    assert result.report.has_error("DuplicateBillError")
    assert events[-1][0] == "commit_error"
    assert "Duplicate bill" in events[-1][1]
