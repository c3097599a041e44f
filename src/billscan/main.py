import asyncio
import mimetypes
import os
from collections.abc import Callable
from pathlib import Path

import typer
from dotenv import load_dotenv

from billscan.errors import CatalogError
from billscan.integrations.anthropic_extractor import AnthropicExtractor
from billscan.integrations.attachments import AttachmentStore, LocalAttachmentStore
from billscan.integrations.catalog import DEFAULT_DB_FILENAME, SQLiteCatalogStore
from billscan.integrations.gdrive import GDriveAttachmentStore
from billscan.logging import configure_logging
from billscan.models import IngestionResult, PhotoBlob
from billscan.pipeline.ingest import ingest_invoice
from billscan.utils.url_parser import URLParserError, parse_google_id

load_dotenv()

DEFAULT_MODEL = "claude-haiku-4-5"

app = typer.Typer(no_args_is_help=True)


@app.callback(invoke_without_command=True)
def callback(ctx: typer.Context):
    """Billscan CLI tool."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


async def read_invoice(
    image: Path,
    extractor: AnthropicExtractor,
    on_progress: Callable[[str, str], None] | None = None,
) -> str:
    """Send the invoice image to the vision model and return its raw reply."""
    media_type = mimetypes.guess_type(image.name)[0] or "application/octet-stream"
    result = await extractor.extract_invoice_text(image.read_bytes(), media_type)
    if on_progress:
        on_progress(
            "extract_success",
            f"Read {image.name}: {len(result.raw_text)} characters "
            f"in {result.processing_time:.1f}s",
        )
    return result.raw_text


def print_summary(result: IngestionResult, dry_run: bool) -> None:
    """Echo what was (or, for a dry run, would be) written."""
    if dry_run:
        for item in result.resolved:
            if item.is_duplicate:
                typer.echo(
                    f"  restock  {item.name}: {item.matched_current_stock:g} + {item.quantity:g}"
                )
            else:
                typer.echo(f"  new      {item.name}: {item.quantity:g} {item.unit}")
        return

    report = result.report
    if report is None:
        return
    typer.echo(f"Vendor: {report.vendor_name or '-'} (id {report.vendor_id or '-'})")
    typer.echo(f"Bill: {report.bill_number or '-'} (id {report.bill_id or '-'})")
    typer.echo(
        f"Products created: {report.products_created}, "
        f"updated: {report.products_updated}, "
        f"bill items: {report.bill_items_created}"
    )
    if report.photo_reference:
        typer.echo(f"Photo: {report.photo_reference}")
    if report.compensated:
        typer.echo("Partial writes were rolled back.", err=True)
    for warning in report.warnings:
        typer.echo(f"Warning: {warning.entity}: {warning.message}", err=True)


@app.command()
def scan(
    image: Path = typer.Argument(
        ..., exists=True, dir_okay=False, readable=True, help="Invoice image (JPEG, PNG, WEBP)"
    ),
    db: Path = typer.Option(
        Path(DEFAULT_DB_FILENAME),
        "--db",
        envvar="BILLSCAN_DB",
        help="SQLite catalog database",
    ),
    raw_response: Path | None = typer.Option(
        None,
        "--raw-response",
        exists=True,
        dir_okay=False,
        help="Parse a saved model reply instead of calling the API",
    ),
    photos_dir: Path | None = typer.Option(
        None, "--photos-dir", help="Directory to store invoice photos in"
    ),
    photos_folder: str | None = typer.Option(
        None, "--photos-folder", help="Google Drive folder ID or URL to upload photos to"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Show what would be written without writing"
    ),
    no_photo: bool = typer.Option(False, "--no-photo", help="Do not attach the photo"),
):
    """Scan one invoice image and record it in the catalog."""
    configure_logging(os.getenv("BILLSCAN_LOG_LEVEL"))

    if photos_dir and photos_folder:
        typer.echo("Error: use either --photos-dir or --photos-folder, not both", err=True)
        raise typer.Exit(code=1)

    attachments: AttachmentStore | None = None
    if photos_folder and not no_photo:
        try:
            attachments = GDriveAttachmentStore(folder_id=parse_google_id(photos_folder))
        except URLParserError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(code=1) from e
    elif photos_dir and not no_photo:
        attachments = LocalAttachmentStore(photos_dir)

    extractor = None
    if raw_response is None:
        anthropic_api_key = os.getenv("ANTHROPIC_API_KEY")
        if not anthropic_api_key:
            typer.echo(
                "Error: ANTHROPIC_API_KEY not found. Set it or pass --raw-response.",
                err=True,
            )
            raise typer.Exit(code=1)
        try:
            extractor = AnthropicExtractor(
                api_key=anthropic_api_key, model=os.getenv("BILLSCAN_MODEL", DEFAULT_MODEL)
            )
        except Exception as e:
            typer.echo(f"Failed to initialize Anthropic extractor: {e}", err=True)
            raise typer.Exit(code=1) from e

    try:
        catalog = SQLiteCatalogStore(db)
    except CatalogError as e:
        typer.echo(f"Error opening catalog {db}: {e}", err=True)
        raise typer.Exit(code=1) from e

    # Create progress callback for CLI output
    def cli_progress(event_type: str, message: str):
        """Callback to handle progress events and output to CLI."""
        if "error" in event_type:
            typer.echo(message, err=True)
        else:
            typer.echo(message)

    async def execute_pipeline() -> IngestionResult:
        if extractor is not None:
            raw_text = await read_invoice(image, extractor, on_progress=cli_progress)
        else:
            raw_text = raw_response.read_text(encoding="utf-8")

        photo = None
        if attachments is not None:
            photo = PhotoBlob(
                data=image.read_bytes(),
                filename=image.name,
                mime_type=mimetypes.guess_type(image.name)[0] or "image/jpeg",
            )
        return await ingest_invoice(
            raw_text,
            catalog,
            attachments=attachments,
            photo=photo,
            dry_run=dry_run,
            on_progress=cli_progress,
        )

    typer.echo(f"Scanning invoice: {image.name}")
    try:
        result = asyncio.run(execute_pipeline())
    except Exception as e:
        typer.echo(f"Failed to process invoice: {e}", err=True)
        raise typer.Exit(code=1) from e

    print_summary(result, dry_run)
    if not result.ok:
        raise typer.Exit(code=1)


def main():
    app()


if __name__ == "__main__":
    main()
