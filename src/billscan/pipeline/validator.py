"""Per-line-item invariants checked before anything is written."""

from collections.abc import Sequence

from billscan.models import BatchValidation, ExtractedLineItem, ItemValidation

MIN_EXPECTED_CONFIDENCE = 0.5


def validate_item(item: ExtractedLineItem, index: int = 0) -> ItemValidation:
    """Check one line item, collecting every violation rather than the first."""
    errors: list[str] = []
    warnings: list[str] = []

    if not (item.name or "").strip():
        errors.append("name is required")
    if item.quantity <= 0:
        errors.append("quantity must be > 0")
    if item.purchase_rate < 0:
        errors.append("price must be >= 0")
    if not 0 <= item.gst_percentage <= 100:
        errors.append("gst_percentage must be between 0 and 100")
    if not 0 <= item.discount_percentage <= 100:
        errors.append("discount_percentage must be between 0 and 100")

    if item.confidence < MIN_EXPECTED_CONFIDENCE:
        warnings.append(f"confidence {item.confidence:.2f} is below {MIN_EXPECTED_CONFIDENCE}")

    return ItemValidation(
        index=index,
        name=item.name,
        valid=not errors,
        errors=errors,
        warnings=warnings,
    )


def validate_batch(items: Sequence[ExtractedLineItem]) -> BatchValidation:
    """Validate every item; the batch is valid only if all items are."""
    results = [validate_item(item, index) for index, item in enumerate(items)]
    return BatchValidation(
        all_valid=all(r.valid for r in results),
        total_errors=sum(len(r.errors) for r in results),
        results=results,
    )
