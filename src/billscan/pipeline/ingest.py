"""Run one raw AI response through parse, normalize, validate, resolve and commit."""

from collections.abc import Callable

from loguru import logger

from billscan.errors import ValidationFailure
from billscan.integrations.attachments import AttachmentStore
from billscan.integrations.catalog import CatalogStore
from billscan.models import IngestionResult, PhotoBlob
from billscan.pipeline.normalizer import normalize_payload
from billscan.pipeline.orchestrator import CommitOrchestrator
from billscan.pipeline.parser import parse_response
from billscan.pipeline.resolver import resolve_duplicates
from billscan.pipeline.validator import validate_batch

NO_ITEMS_MESSAGE = "no line items extracted"


async def ingest_invoice(
    raw_text: str | None,
    catalog: CatalogStore,
    *,
    attachments: AttachmentStore | None = None,
    photo: PhotoBlob | None = None,
    dry_run: bool = False,
    on_progress: Callable[[str, str], None] | None = None,
) -> IngestionResult:
    """Ingest a single invoice from the vision model's raw response.

    Args:
        raw_text: Untrusted response text from the vision model
        catalog: Catalog store to resolve against and commit into
        attachments: Optional store for the invoice photo
        photo: Optional invoice image to attach to the created bill
        dry_run: Stop after resolution without writing anything
        on_progress: Optional callback for progress updates (event_type, message)

    Returns:
        IngestionResult describing how far the invoice got and why it stopped
    """
    result = IngestionResult()

    # Step 1: parse
    parsed = parse_response(raw_text)
    if parsed.failure is not None:
        result.parse_failure = parsed.failure
        if on_progress:
            on_progress("parse_error", f"Could not parse AI response: {parsed.failure.message}")
        return result

    # Step 2: normalize
    normalized = normalize_payload(parsed.payload)
    result.normalized = normalized
    if on_progress:
        on_progress(
            "parse_success",
            f"Parsed invoice {normalized.invoice.bill_number or '<no bill number>'} from "
            f"{normalized.vendor.name or '<unknown vendor>'}: {len(normalized.items)} line item(s)",
        )

    # Step 3: validate
    if not normalized.items:
        result.validation_error = NO_ITEMS_MESSAGE
        if on_progress:
            on_progress("validation_error", f"Validation failed: {NO_ITEMS_MESSAGE}")
        return result

    validation = validate_batch(normalized.items)
    result.validation = validation
    if not validation.all_valid:
        failure = ValidationFailure(validation.problems())
        result.validation_error = str(failure)
        if on_progress:
            on_progress("validation_error", str(failure))
        return result

    # Step 4: resolve against the catalog
    resolved = await resolve_duplicates(normalized.items, catalog)
    result.resolved = resolved
    restocks = sum(1 for item in resolved if item.is_duplicate)
    if on_progress:
        on_progress(
            "resolve_success",
            f"{len(resolved) - restocks} new product(s), {restocks} restock(s)",
        )

    if dry_run:
        logger.info("Dry run: stopping before commit")
        return result

    # Step 5: commit
    orchestrator = CommitOrchestrator(catalog, attachments=attachments)
    report = await orchestrator.commit(
        resolved, normalized.vendor, normalized.invoice, photo=photo
    )
    result.report = report

    if on_progress:
        if report.ok:
            on_progress(
                "commit_success",
                f"Committed bill {report.bill_number or '-'}: "
                f"{report.products_created} created, {report.products_updated} restocked, "
                f"{report.bill_items_created} bill item(s)",
            )
        else:
            for error in report.errors:
                on_progress("commit_error", f"{error.entity}: {error.message}")

    return result


async def preview_invoice(raw_text: str | None, catalog: CatalogStore) -> IngestionResult:
    """Parse, validate and resolve without writing to the catalog."""
    return await ingest_invoice(raw_text, catalog, dry_run=True)
