"""Invoice reconciliation pipeline: parse, normalize, validate, resolve, commit."""

from billscan.pipeline.ingest import ingest_invoice, preview_invoice
from billscan.pipeline.normalizer import normalize_payload
from billscan.pipeline.orchestrator import CommitOrchestrator
from billscan.pipeline.parser import parse_response
from billscan.pipeline.resolver import resolve_duplicates
from billscan.pipeline.validator import validate_batch, validate_item

__all__ = [
    "CommitOrchestrator",
    "ingest_invoice",
    "normalize_payload",
    "parse_response",
    "preview_invoice",
    "resolve_duplicates",
    "validate_batch",
    "validate_item",
]
