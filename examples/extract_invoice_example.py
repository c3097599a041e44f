"""Example usage of the Anthropic extractor with a dry-run preview.

Reads an invoice photo, asks the vision model for its line items and shows
which of them would create new products and which would restock existing
ones, without writing anything to the catalog.
"""

import asyncio
import os
import sys
from pathlib import Path

from billscan.integrations import AnthropicExtractor, SQLiteCatalogStore
from billscan.pipeline import preview_invoice


async def main(image_path: str):
    """Example of previewing an invoice against a local catalog."""
    # Initialize the extractor with your API key
    api_key = os.getenv("ANTHROPIC_API_KEY", "your-api-key-here")
    extractor = AnthropicExtractor(api_key=api_key)
    catalog = SQLiteCatalogStore(os.getenv("BILLSCAN_DB", "billscan.sqlite3"))

    try:
        extraction = await extractor.extract_invoice_text(Path(image_path).read_bytes())
        result = await preview_invoice(extraction.raw_text, catalog)
    except Exception as e:
        print(f"Error during extraction: {e}")
        return

    if result.parse_failure:
        print(f"Could not parse reply: {result.parse_failure.message}")
        return

    vendor = result.normalized.vendor
    invoice = result.normalized.invoice
    print(f"Vendor: {vendor.name} ({vendor.tax_id or 'no GSTIN'})")
    print(f"Bill: {invoice.bill_number} dated {invoice.bill_date}")
    print(f"Total: {invoice.total_amount:.2f}")

    # Access metadata
    print(f"\nProcessing time: {extraction.processing_time:.2f}s")
    print(f"Input tokens: {extraction.input_tokens}")
    print(f"Output tokens: {extraction.output_tokens}")

    if result.validation_error:
        print(f"\nNot committable: {result.validation_error}")
        return

    print("\nItems:")
    for item in result.resolved:
        action = "restock" if item.is_duplicate else "new"
        print(f"  - [{action}] {item.name}: {item.quantity:g} x {item.purchase_rate:.2f}")


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "invoice.jpg"))
