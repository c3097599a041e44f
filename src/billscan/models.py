"""Data models for invoice extraction, reconciliation and commit reporting."""

from datetime import UTC, datetime
from enum import StrEnum
from pathlib import PurePath
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

UNKNOWN_PRODUCT_NAME = "Unknown Product"
DEFAULT_HSN_CODE = "0000"
DEFAULT_UNIT = "pcs"
DEFAULT_CONFIDENCE = 0.7


def compute_line_total(quantity: float, rate: float, gst_percentage: float) -> float:
    """Return quantity x rate including GST, rounded to two decimals."""
    return round(quantity * rate * (1 + (gst_percentage or 0) / 100), 2)


class PaymentStatus(StrEnum):
    """Settlement state of a vendor bill."""

    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class ParseFailureKind(StrEnum):
    NO_STRUCTURE_FOUND = "no_structure_found"
    MALFORMED_JSON = "malformed_json"


class ParsedInvoice(BaseModel):
    """Shape-checked payload decoded from the AI response."""

    vendor: dict[str, Any] = Field(default_factory=dict)
    invoice: dict[str, Any] = Field(default_factory=dict)
    products: list[dict[str, Any]]


class ParseFailure(BaseModel):
    """Why a raw AI response could not be decoded.

    Attributes:
        kind: Which stage gave up
        message: Human readable reason
        raw_excerpt: First 200 characters of the raw response
    """

    kind: ParseFailureKind
    message: str
    raw_excerpt: str = ""


class ParseResult(BaseModel):
    """Tagged result of parsing: exactly one of payload or failure is set."""

    payload: ParsedInvoice | None = None
    failure: ParseFailure | None = None

    @property
    def ok(self) -> bool:
        return self.payload is not None


# ---------------------------------------------------------------------------
# Normalized drafts
# ---------------------------------------------------------------------------


class VendorDraft(BaseModel):
    """Vendor identity as printed on the invoice."""

    name: str | None = None
    tax_id: str | None = None


class InvoiceDraft(BaseModel):
    """Bill header fields as printed on the invoice."""

    bill_number: str | None = None
    bill_date: str | None = None  # YYYY-MM-DD when recognisable
    total_amount: float = 0.0


class ExtractedLineItem(BaseModel):
    """One product row read off the invoice, in canonical form."""

    name: str
    part_number: str | None = None
    quantity: float = 1.0
    unit: str = DEFAULT_UNIT
    purchase_rate: float = 0.0
    selling_rate: float | None = None
    gst_percentage: float = 0.0
    discount_percentage: float = 0.0
    hsn_code: str = DEFAULT_HSN_CODE
    confidence: float = DEFAULT_CONFIDENCE
    edited: bool = False


class ResolvedLineItem(ExtractedLineItem):
    """Line item tagged with its catalog match, if any."""

    is_duplicate: bool = False
    matched_product_id: int | None = None
    matched_current_stock: float | None = None
    matched_purchase_rate: float | None = None
    ambiguous_match: bool = False


class NormalizedInvoice(BaseModel):
    vendor: VendorDraft = Field(default_factory=VendorDraft)
    invoice: InvoiceDraft = Field(default_factory=InvoiceDraft)
    items: list[ExtractedLineItem] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ItemValidation(BaseModel):
    index: int = 0
    name: str = ""
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class BatchValidation(BaseModel):
    all_valid: bool
    total_errors: int
    results: list[ItemValidation] = Field(default_factory=list)

    def problems(self) -> dict[str, list[str]]:
        """Return errors keyed by a readable item label, invalid items only."""
        return {
            f"#{r.index + 1} {r.name or '<unnamed>'}": r.errors
            for r in self.results
            if not r.valid
        }


# ---------------------------------------------------------------------------
# Catalog records
# ---------------------------------------------------------------------------


class Vendor(BaseModel):
    id: int
    name: str
    tax_id: str | None = None


class VendorBill(BaseModel):
    id: int
    vendor_id: int
    bill_number: str
    bill_date: str
    total_amount: float = 0.0
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    photo_reference: str | None = None
    notes: str | None = None


class NewProduct(BaseModel):
    """Insert payload for a catalog product."""

    name: str
    part_number: str | None = None
    purchase_rate: float = 0.0
    selling_rate: float | None = None
    gst_percentage: float = 0.0
    discount_percentage: float = 0.0
    current_stock: float = 0.0
    minimum_stock: float = 0.0
    hsn_code: str = DEFAULT_HSN_CODE
    unit: str = DEFAULT_UNIT

    @classmethod
    def from_line_item(cls, item: ExtractedLineItem) -> "NewProduct":
        return cls(
            name=item.name.strip(),
            part_number=item.part_number or None,
            purchase_rate=item.purchase_rate,
            selling_rate=item.selling_rate or None,
            gst_percentage=item.gst_percentage,
            discount_percentage=item.discount_percentage,
            current_stock=item.quantity,
            hsn_code=item.hsn_code or DEFAULT_HSN_CODE,
            unit=item.unit or DEFAULT_UNIT,
        )


class Product(NewProduct):
    id: int


class BillItemDraft(BaseModel):
    vendor_bill_id: int
    product_id: int | None = None
    quantity: float
    purchase_rate: float
    gst_percentage: float = 0.0


class BillItem(BillItemDraft):
    id: int
    total_amount: float


class PhotoBlob(BaseModel):
    """Invoice image to attach to the bill."""

    model_config = ConfigDict(frozen=True)

    data: bytes
    filename: str = "invoice.jpg"
    mime_type: str = "image/jpeg"

    @property
    def extension(self) -> str:
        suffix = PurePath(self.filename).suffix.lstrip(".").lower()
        if suffix:
            return suffix
        return self.mime_type.rsplit("/", 1)[-1] or "bin"


# ---------------------------------------------------------------------------
# Commit reporting
# ---------------------------------------------------------------------------


class ProductAction(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    FAILED = "failed"


class ProductOutcome(BaseModel):
    """What happened to one line item's product."""

    name: str
    action: ProductAction
    product_id: int | None = None
    stock: float | None = None
    old_stock: float | None = None
    added: float | None = None
    new_stock: float | None = None


class EntityError(BaseModel):
    """A failure (or warning) recorded against one entity of the commit."""

    error_type: str
    entity: str
    message: str

    @classmethod
    def from_exception(cls, exc: BaseException, entity: str) -> "EntityError":
        return cls(error_type=type(exc).__name__, entity=entity, message=str(exc))


class CommitReport(BaseModel):
    """Per-entity outcome of committing one invoice."""

    vendor_id: int | None = None
    vendor_name: str | None = None
    vendor_created: bool = False
    bill_id: int | None = None
    bill_number: str | None = None
    bill_created: bool = False
    products_created: int = 0
    products_updated: int = 0
    bill_items_created: int = 0
    photo_reference: str | None = None
    compensated: bool = False
    details: list[ProductOutcome] = Field(default_factory=list)
    errors: list[EntityError] = Field(default_factory=list)
    warnings: list[EntityError] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def photo_uploaded(self) -> bool:
        return self.photo_reference is not None

    def has_error(self, error_type: type[BaseException] | str) -> bool:
        """Return True if an error or warning of the given type was recorded."""
        name = error_type if isinstance(error_type, str) else error_type.__name__
        return any(e.error_type == name for e in [*self.errors, *self.warnings])


# ---------------------------------------------------------------------------
# Extraction and end-to-end results
# ---------------------------------------------------------------------------


class ExtractionResult(BaseModel):
    """Raw vision model output with usage metadata."""

    raw_text: str
    input_tokens: int
    output_tokens: int
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    processing_time: float  # in seconds
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class IngestionResult(BaseModel):
    """Everything the ingestion driver learned about one invoice."""

    parse_failure: ParseFailure | None = None
    normalized: NormalizedInvoice | None = None
    validation: BatchValidation | None = None
    validation_error: str | None = None
    resolved: list[ResolvedLineItem] = Field(default_factory=list)
    report: CommitReport | None = None

    @property
    def ok(self) -> bool:
        if self.parse_failure is not None or self.validation_error is not None:
            return False
        return self.report is None or self.report.ok
