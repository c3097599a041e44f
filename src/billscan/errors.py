"""Exception hierarchy for invoice ingestion.

Parse failures are returned as values (see ``billscan.pipeline.parser``);
everything raised by the catalog store, the attachment stores and the
orchestrator's own steps derives from ``BillscanError``. The orchestrator
never lets these escape: it records them on the ``CommitReport``.
"""


class BillscanError(Exception):
    """Base exception for billscan."""


class ValidationFailure(BillscanError):
    """Raised when a batch of line items is not fit to commit.

    Attributes:
        problems: Mapping of item label to the list of error messages
    """

    def __init__(self, problems: dict[str, list[str]]) -> None:
        self.problems = problems
        summary = "; ".join(
            f"{label}: {', '.join(errors)}" for label, errors in problems.items()
        )
        super().__init__(f"Validation failed: {summary}" if summary else "Validation failed")


class CatalogError(BillscanError):
    """Raised by a catalog store when a read or write fails."""


class UniqueViolationError(CatalogError):
    """Raised by a catalog store when a uniqueness constraint rejects a write."""


class VendorResolutionError(BillscanError):
    """Raised when the vendor can be neither found nor created."""


class BillCreationError(BillscanError):
    """Raised when the bill header cannot be inserted."""


class DuplicateBillError(BillCreationError):
    """Raised when the vendor already has a bill with the same number."""

    def __init__(self, bill_number: str, vendor_name: str | None = None) -> None:
        self.bill_number = bill_number
        self.vendor_name = vendor_name
        vendor = f" for vendor {vendor_name!r}" if vendor_name else " for this vendor"
        super().__init__(
            f"Duplicate bill: bill number {bill_number!r} already exists{vendor}"
        )


class ProductCommitError(BillscanError):
    """Raised when a single product cannot be created or restocked."""


class BillItemsError(BillscanError):
    """Raised when the bill line items cannot be inserted."""


class CompensationError(BillscanError):
    """Raised when undoing a partially committed ingestion fails."""


class AttachmentError(BillscanError):
    """Raised by an attachment store when an upload fails."""


class ExtractionError(BillscanError):
    """Base exception for AI extraction errors."""


class ExtractionRefusedError(ExtractionError):
    """Raised when the model refuses to process the request."""


class ExtractionIncompleteError(ExtractionError):
    """Raised when the response is truncated due to token limits."""


class UnsupportedImageError(ExtractionError):
    """Raised when an image cannot be sent to the vision model."""
