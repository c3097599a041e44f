"""Map loosely named AI fields onto the canonical vendor/invoice/item schema.

Nothing is rejected here. Missing or unreadable values are replaced by the
documented defaults so that every extracted line survives to validation.
"""

import math
import re
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from loguru import logger

from billscan.models import (
    DEFAULT_CONFIDENCE,
    DEFAULT_HSN_CODE,
    DEFAULT_UNIT,
    UNKNOWN_PRODUCT_NAME,
    ExtractedLineItem,
    InvoiceDraft,
    NormalizedInvoice,
    ParsedInvoice,
    VendorDraft,
)

# Ordered synonym keys, compared after fold_key()
NAME_KEYS = ("name", "product_name", "item_name", "description", "item")
QUANTITY_KEYS = ("quantity", "qty", "units")
PRICE_KEYS = ("price", "rate", "unit_price", "purchase_rate")
SELLING_RATE_KEYS = ("selling_rate", "mrp")
GST_KEYS = ("gst_percentage", "gst", "tax", "tax_rate")
DISCOUNT_KEYS = ("discount", "discount_percentage")
HSN_KEYS = ("hsn_code", "hsn", "hsn_sac")
PART_NUMBER_KEYS = ("part_number", "part_no", "sku")
UNIT_KEYS = ("unit", "uom")
CONFIDENCE_KEYS = ("confidence",)

VENDOR_NAME_KEYS = ("name", "vendor_name", "company_name")
VENDOR_TAX_ID_KEYS = ("gstin", "gst_number", "gst_no", "tax_id")
BILL_NUMBER_KEYS = ("bill_number", "invoice_number", "invoice_no", "bill_no")
BILL_DATE_KEYS = ("bill_date", "invoice_date", "date")
TOTAL_KEYS = ("total_amount", "total", "grand_total")

DEFAULT_QUANTITY = 1.0
DEFAULT_PRICE = 0.0
DEFAULT_GST = 0.0
DEFAULT_DISCOUNT = 0.0

_KEY_SEPARATORS_RE = re.compile(r"[\s\-]+")
_NUMBER_RE = re.compile(r"-?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?")
_NUMERIC_DATE_RE = re.compile(r"(\d{1,2})[./\-](\d{1,2})[./\-](\d{2,4})")
_TEXT_DATE_FORMATS = ("%d-%b-%Y", "%d %b %Y", "%d %B %Y", "%b %d, %Y", "%B %d, %Y")


def fold_key(key: Any) -> str:
    """Fold a field name: case-insensitive, spaces and hyphens as underscores."""
    return _KEY_SEPARATORS_RE.sub("_", str(key).strip().lower())


def _fold_mapping(data: Mapping[str, Any]) -> dict[str, Any]:
    folded: dict[str, Any] = {}
    for key, value in data.items():
        folded.setdefault(fold_key(key), value)
    return folded


def pick(data: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    """Return the value of the first present key; None and "" count as absent."""
    for key in keys:
        value = data.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def coerce_number(value: Any) -> float | None:
    """Coerce numbers and numeric strings ("₹1,200.50", "18%") to float.

    Returns None for booleans, non-finite numbers and text without digits.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        number = float(value)
        return number if math.isfinite(number) else None
    if isinstance(value, str):
        match = _NUMBER_RE.search(value.replace(",", ""))
        if match:
            number = float(match.group(0))
            return number if math.isfinite(number) else None
    return None


def coerce_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def normalize_date(value: Any) -> str | None:
    """Normalize common invoice date spellings to ISO YYYY-MM-DD.

    Day-first numeric dates (15/01/2024, 15.01.24) and a few month-name forms
    are recognised; anything else is returned as-is.
    """
    text = coerce_text(value)
    if text is None:
        return None
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", text):
        return text

    match = _NUMERIC_DATE_RE.fullmatch(text)
    if match:
        day, month, year = match.groups()
        if len(year) == 2:
            year = ("20" + year) if int(year) < 70 else ("19" + year)
        try:
            return datetime(int(year), int(month), int(day)).date().isoformat()
        except ValueError:
            return text

    for fmt in _TEXT_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return text


def _number(data: Mapping[str, Any], keys: tuple[str, ...], default: float) -> float:
    number = coerce_number(pick(data, keys))
    return default if number is None else number


def normalize_item(raw: Mapping[str, Any]) -> ExtractedLineItem:
    """Normalize one product entry from the AI payload."""
    data = _fold_mapping(raw)
    name = coerce_text(pick(data, NAME_KEYS)) or UNKNOWN_PRODUCT_NAME

    return ExtractedLineItem(
        name=name,
        part_number=coerce_text(pick(data, PART_NUMBER_KEYS)),
        quantity=_number(data, QUANTITY_KEYS, DEFAULT_QUANTITY),
        unit=coerce_text(pick(data, UNIT_KEYS)) or DEFAULT_UNIT,
        purchase_rate=_number(data, PRICE_KEYS, DEFAULT_PRICE),
        selling_rate=coerce_number(pick(data, SELLING_RATE_KEYS)),
        gst_percentage=_number(data, GST_KEYS, DEFAULT_GST),
        discount_percentage=_number(data, DISCOUNT_KEYS, DEFAULT_DISCOUNT),
        hsn_code=coerce_text(pick(data, HSN_KEYS)) or DEFAULT_HSN_CODE,
        # Not clamped; the validator only warns on low confidence
        confidence=_number(data, CONFIDENCE_KEYS, DEFAULT_CONFIDENCE),
    )


def normalize_vendor(raw: Mapping[str, Any]) -> VendorDraft:
    data = _fold_mapping(raw)
    return VendorDraft(
        name=coerce_text(pick(data, VENDOR_NAME_KEYS)),
        tax_id=coerce_text(pick(data, VENDOR_TAX_ID_KEYS)),
    )


def normalize_invoice(raw: Mapping[str, Any]) -> InvoiceDraft:
    data = _fold_mapping(raw)
    return InvoiceDraft(
        bill_number=coerce_text(pick(data, BILL_NUMBER_KEYS)),
        bill_date=normalize_date(pick(data, BILL_DATE_KEYS)),
        total_amount=_number(data, TOTAL_KEYS, 0.0),
    )


def normalize_payload(parsed: ParsedInvoice) -> NormalizedInvoice:
    """Normalize a parsed AI payload into vendor, invoice and line item drafts."""
    items = [normalize_item(product) for product in parsed.products]
    unnamed = sum(1 for item in items if item.name == UNKNOWN_PRODUCT_NAME)
    if unnamed:
        logger.info("{} line item(s) had no name; using placeholder", unnamed)

    return NormalizedInvoice(
        vendor=normalize_vendor(parsed.vendor),
        invoice=normalize_invoice(parsed.invoice),
        items=items,
    )
