"""Decode the vision model's raw text into a shape-checked invoice payload.

The model is asked for bare JSON but routinely wraps it in prose or markdown
fences, leaves trailing commas, or returns the whole object string-escaped.
``parse_response`` repairs what it can and returns a ``ParseResult``; it never
raises.
"""

import json
import re
from typing import Any

from loguru import logger
from pydantic import ValidationError

from billscan.models import ParsedInvoice, ParseFailure, ParseFailureKind, ParseResult

RAW_EXCERPT_LENGTH = 200

PRODUCT_KEYS = ("products", "items", "line_items")

_FENCE_RE = re.compile(r"```[A-Za-z]*[ \t]*\n?")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_REPEATED_TRAILING_COMMA_RE = re.compile(r"(?:,\s*)+([}\]])")
_DOUBLED_COMMA_RE = re.compile(r",(?:\s*,)+")
_UNESCAPED_QUOTE_RE = re.compile(r'(?<!\\)"')
_LITERAL_NEWLINE_RE = re.compile(r"(?<!\\)\\n")


def _failure(kind: ParseFailureKind, message: str, raw_text: str) -> ParseResult:
    return ParseResult(
        failure=ParseFailure(
            kind=kind, message=message, raw_excerpt=raw_text[:RAW_EXCERPT_LENGTH]
        )
    )


def extract_json_candidate(raw_text: str) -> str | None:
    """Slice out the outermost object and apply the textual repairs.

    Returns None when the text has no ``{ ... }`` span at all.
    """
    start = raw_text.find("{")
    end = raw_text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None

    candidate = raw_text[start : end + 1]
    candidate = _FENCE_RE.sub("", candidate)
    candidate = _TRAILING_COMMA_RE.sub(r"\1", candidate)

    # A fully string-escaped object has no bare quote left in it
    if '\\"' in candidate and not _UNESCAPED_QUOTE_RE.search(candidate):
        candidate = candidate.replace('\\"', '"')
    candidate = _LITERAL_NEWLINE_RE.sub(" ", candidate)
    return candidate


def collapse_commas(candidate: str) -> str:
    """Collapse runs of commas, including repeated trailing commas."""
    candidate = _DOUBLED_COMMA_RE.sub(",", candidate)
    return _REPEATED_TRAILING_COMMA_RE.sub(r"\1", candidate)


def _lookup(data: dict[str, Any], *keys: str) -> Any:
    folded = {str(k).strip().lower(): v for k, v in data.items()}
    for key in keys:
        if key in folded:
            return folded[key]
    return None


def decode_invoice(value: Any) -> ParsedInvoice:
    """Strictly decode a JSON value into a ParsedInvoice.

    Raises:
        ValueError: If the value is not an object with a list of product objects
    """
    if not isinstance(value, dict):
        raise ValueError(f"expected a JSON object, got {type(value).__name__}")

    products = _lookup(value, *PRODUCT_KEYS)
    if not isinstance(products, list):
        raise ValueError("'products' array missing from response")

    vendor = _lookup(value, "vendor", "supplier", "seller")
    invoice = _lookup(value, "invoice", "bill")
    return ParsedInvoice(
        vendor=vendor if isinstance(vendor, dict) else {},
        invoice=invoice if isinstance(invoice, dict) else {},
        products=products,
    )


def parse_response(raw_text: str | None) -> ParseResult:
    """Parse the vision model's raw response.

    Args:
        raw_text: Whatever the model returned, possibly None or empty

    Returns:
        ParseResult holding either the decoded payload or a ParseFailure
    """
    raw_text = raw_text or ""
    candidate = extract_json_candidate(raw_text)
    if candidate is None:
        logger.warning("No JSON object found in AI response ({} chars)", len(raw_text))
        return _failure(
            ParseFailureKind.NO_STRUCTURE_FOUND,
            "No JSON object found in response",
            raw_text,
        )

    try:
        value = json.loads(candidate, strict=False)
    except (ValueError, RecursionError) as first_error:
        logger.debug("Direct parse failed: {}", first_error)
        try:
            value = json.loads(collapse_commas(candidate), strict=False)
        except (ValueError, RecursionError) as e:
            logger.warning("AI response is not valid JSON after repair: {}", e)
            return _failure(
                ParseFailureKind.MALFORMED_JSON, f"Invalid JSON: {e}", raw_text
            )

    try:
        payload = decode_invoice(value)
    except (ValueError, ValidationError) as e:
        logger.warning("AI response has an unexpected shape: {}", e)
        return _failure(ParseFailureKind.MALFORMED_JSON, str(e), raw_text)

    logger.debug("Parsed AI response with {} product(s)", len(payload.products))
    return ParseResult(payload=payload)
