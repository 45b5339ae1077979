"""CLI for the ``statement_extraction`` package.

Reads a local file, turns it into a :class:`StatementSource` (PDF text layer
and page renders via ``pdfplumber``, CSV and plain text decoded as UTF-8,
images passed through) and prints the :class:`ExtractionResult` as JSON.
Environment variables (``OPENAI_API_KEY`` and any ``SE_*`` settings) are
loaded from a local ``.env`` using ``python-dotenv`` first.
"""

from __future__ import annotations

import base64
import json
import mimetypes
import os
from datetime import date
from pathlib import Path
from typing import Annotated

import typer
from dotenv import load_dotenv
from typer.models import OptionInfo

from .client import OpenAIModelClient
from .config import ExtractionSettings
from .logging_setup import configure_logging, get_logger
from .models import DocumentType, ExtractionResult, MonthRange
from .months import partition_months
from .pdf_text import extract_pdf_text, render_page_images
from .pipeline import (
    CSV_MIMES,
    PDF_MIME,
    StatementSource,
    extract_specific_months,
    extract_transactions,
)

_logger = get_logger("statement_extraction.cli")


# ---- Source building ----------------------------------------------------------


def _guess_mime_type(path: Path) -> str:
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


def build_source(
    path: Path, settings: ExtractionSettings, mime_type: str | None = None
) -> StatementSource:
    """Read ``path`` into a :class:`StatementSource`.

    PDFs carry their text layer when it is usable; scanned PDFs larger than
    ``large_document_bytes`` also carry one JPEG render per page so the
    page-by-page pipeline can run.
    """

    data = path.read_bytes()
    mime = mime_type or _guess_mime_type(path)
    encoded = base64.b64encode(data).decode("ascii")

    if mime == PDF_MIME:
        pdf = extract_pdf_text(data)
        page_images: tuple[str, ...] = ()
        if pdf.is_image_based and len(data) > settings.large_document_bytes:
            page_images = tuple(render_page_images(data))
        return StatementSource(
            document=encoded,
            mime_type=mime,
            size_bytes=len(data),
            text=None if pdf.is_image_based else pdf.text,
            page_images=page_images,
        )
    if mime.startswith("image/"):
        return StatementSource(document=encoded, mime_type=mime, size_bytes=len(data))
    # CSV and anything else text-like
    text = data.decode("utf-8", errors="replace")
    if mime not in CSV_MIMES and path.suffix.lower() == ".csv":
        mime = "text/csv"
    return StatementSource(mime_type=mime, size_bytes=len(data), text=text)


def parse_month(value: str) -> MonthRange:
    """``"2024-01"`` → the whole of January 2024."""

    try:
        first = date.fromisoformat(f"{value.strip()}-01")
    except ValueError as e:
        raise typer.BadParameter(f"expected YYYY-MM, got {value!r}") from e
    next_first = date(first.year + first.month // 12, first.month % 12 + 1, 1)
    return partition_months(first, date.fromordinal(next_first.toordinal() - 1))[0]


# ---- Typer-based console interface -------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Extract transactions from bank statements, receipts and invoices using "
        "OpenAI (Responses API). Loads OPENAI_API_KEY from a local .env before running."
    ),
)


# Module-level option objects to satisfy ruff B008 (no calls in parameter
# defaults). Typer reads them from the ``Annotated`` metadata below.
FILE_OPTION: OptionInfo = typer.Option(
    ...,  # required
    "--file",
    help="Path to the PDF, CSV, image or text document to extract",
    dir_okay=False,
    file_okay=True,
    exists=False,  # the handler reports a missing file itself
    readable=True,
)

DOCUMENT_TYPE_OPTION: OptionInfo = typer.Option("--document-type", help="Kind of document.")
MIME_TYPE_OPTION: OptionInfo = typer.Option(
    "--mime-type", help="Override the MIME type guessed from the file name."
)
MONTH_OPTION: OptionInfo = typer.Option(
    "--month", help="Re-extract only this month (YYYY-MM); repeatable. Bank statements only."
)
OUT_OPTION: OptionInfo = typer.Option("--out", help="Write the JSON result here.")


def _emit(result: ExtractionResult, out: Path | None) -> None:
    payload = json.dumps(result.to_dict(), indent=2)
    if out is None:
        typer.echo(payload)
    else:
        out.write_text(payload + "\n", encoding="utf-8")
        typer.echo(f"Wrote {len(result.transactions)} transactions to {out}", err=True)


@app.command("extract")
def extract_cmd(
    file: Annotated[Path, FILE_OPTION],
    *,
    document_type: Annotated[DocumentType, DOCUMENT_TYPE_OPTION] = DocumentType.BANK_STATEMENT,
    mime_type: Annotated[str | None, MIME_TYPE_OPTION] = None,
    month: Annotated[list[str] | None, MONTH_OPTION] = None,
    out: Annotated[Path | None, OUT_OPTION] = None,
) -> None:
    """Extract transactions from one document and print the result as JSON."""

    if not os.getenv("OPENAI_API_KEY"):
        typer.echo("Error: OPENAI_API_KEY is not set in the environment.", err=True)
        raise typer.Exit(1)
    if not file.is_file():
        typer.echo(f"Error: file not found: {file}", err=True)
        raise typer.Exit(1)

    try:
        settings = ExtractionSettings.from_env()
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e

    months = [parse_month(m) for m in month or []]
    if months and document_type is not DocumentType.BANK_STATEMENT:
        raise typer.BadParameter("--month only applies to bank statements", param_hint="--month")

    source = build_source(file, settings, mime_type)
    _logger.info(
        "cli:extract file=%s document_type=%s mime=%s size_bytes=%s months=%d",
        file,
        document_type.value,
        source.mime_type,
        source.size_bytes,
        len(months),
    )
    client = OpenAIModelClient()
    if months:
        result = extract_specific_months(client, source, months, settings)
    else:
        result = extract_transactions(client, document_type.value, source, settings)

    _emit(result, out)
    if not result.success:
        typer.echo(f"Error: {result.error}", err=True)
        raise typer.Exit(1)
    if result.error:
        typer.echo(f"Warning: {result.error}", err=True)


@app.callback(invoke_without_command=True)
def _root(ctx: typer.Context) -> None:
    """Root command.

    Loads ``.env`` from the current working directory (without overriding any
    already-set environment variables) and configures package logging.
    """

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)

    # Central logging setup so child loggers inherit configuration
    configure_logging()

    if ctx.invoked_subcommand is None:
        typer.echo("No subcommand provided. Use --help to see available commands.")
        raise typer.Exit(1)


if __name__ == "__main__":  # pragma: no cover
    # Running as a module: `python -m statement_extraction.cli`
    app()
