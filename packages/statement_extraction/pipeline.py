"""Pipeline selection and document-type routing.

Public API:
    - :func:`extract_transactions` (routes by document type)
    - :func:`extract_bank_statement`
    - :func:`extract_receipt` / :func:`extract_invoice`
    - :func:`extract_specific_months`
    - :func:`select_strategy`

Bank statements are routed through the first matching strategy:

1. CSV text → fixed-size row chunks on the cheap tier.
2. Short text (below ``single_pass_char_limit``), or a small document with no
   usable text → one single-pass call.
3. A large PDF without usable text for which page images were supplied →
   page-by-page images, cheap tier first.
4. Date range undetectable (regex on the text, then the model on a PDF) →
   single pass, with a truncation-risk warning.
5. Range within one calendar month → single pass.
6. Otherwise month by month: text chunks on the cheap tier when text is
   available, the attached document on the strong tier when it is not.

Units run strictly one after another with a pause between model calls. A
unit that fails on the cheap tier is retried once on the strong tier. A
terminal failure (bad credentials) stops the run.
"""

from __future__ import annotations

import base64
import binascii
import time
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import TypeAlias

from . import prompting
from .aggregate import aggregate
from .chunking import detect_date_range_from_text, is_csv_text, split_csv_rows, split_text_by_month
from .client import Attachment, ModelClient
from .config import ExtractionSettings, ModelTier
from .csv_text import csv_to_structured_text
from .invoker import (
    AUTH_MESSAGE,
    TerminalModelError,
    UnitKind,
    UnitOutcome,
    WorkUnit,
    detect_statement_date_range,
    extract_unit,
    skipped_unit,
)
from .logging_setup import get_logger
from .models import DateRange, DocumentType, ExtractionResult, MonthRange, TransactionType
from .months import partition_months, spans_single_month

PDF_MIME = "application/pdf"
CSV_MIMES = frozenset({"text/csv", "application/csv", "application/vnd.ms-excel"})

_logger = get_logger("statement_extraction.pipeline")


class Strategy(StrEnum):
    CSV_ROWS = "csv-rows"
    SINGLE_PASS = "single-pass"
    PAGE_IMAGES = "page-images"
    MONTH_TEXT = "month-text"
    MONTH_DOCUMENT = "month-document"
    SINGLE_DOCUMENT = "single-document"


# Pipelines whose units can overlap and so may return the same line twice.
_DEDUP_STRATEGIES = frozenset({Strategy.MONTH_TEXT, Strategy.MONTH_DOCUMENT, Strategy.PAGE_IMAGES})


@dataclass(frozen=True, slots=True)
class StatementSource:
    """Whatever the caller has for one document.

    Attributes
    ----------
    document:
        Base64-encoded file content.
    mime_type:
        MIME type of ``document`` (``application/pdf``, ``text/csv``,
        ``image/png``…).
    size_bytes:
        Size of the original file; derived from ``document`` when omitted.
    text:
        Pre-extracted plain text (PDF text layer, structured CSV text…).
    page_images:
        Base64 page renders, in page order.
    """

    document: str | None = None
    mime_type: str | None = None
    size_bytes: int | None = None
    text: str | None = None
    page_images: tuple[str, ...] = ()
    page_image_media_type: str = "image/jpeg"

    @property
    def is_pdf(self) -> bool:
        return self.document is not None and self.mime_type == PDF_MIME

    @property
    def is_csv(self) -> bool:
        return self.mime_type in CSV_MIMES

    @property
    def is_image(self) -> bool:
        return self.document is not None and (self.mime_type or "").startswith("image/")

    def effective_size(self) -> int:
        if self.size_bytes is not None:
            return self.size_bytes
        if self.document is not None:
            return len(self.document) * 3 // 4
        return len((self.text or "").encode("utf-8"))

    def attachment(self) -> Attachment | None:
        """The document as a model attachment (PDFs and images only)."""

        if self.document is None or self.mime_type is None:
            return None
        if self.is_pdf:
            return Attachment(kind="document", data=self.document, media_type=PDF_MIME)
        if self.is_image:
            return Attachment(kind="image", data=self.document, media_type=self.mime_type)
        return None


# ---------------------------------------------------------------------------
# Source preparation and strategy selection
# ---------------------------------------------------------------------------


def _decode_text_document(source: StatementSource) -> str | None:
    if source.document is None:
        return None
    try:
        raw = base64.b64decode(source.document, validate=True)
    except (binascii.Error, ValueError):
        _logger.warning("pipeline:undecodable_document mime=%s", source.mime_type)
        return None
    return raw.decode("utf-8", errors="replace")


def prepare_text(source: StatementSource, settings: ExtractionSettings) -> str | None:
    """Return the usable text for ``source``, or ``None``.

    CSV sources are converted to structured row text (raw CSV in ``text`` or a
    base64 CSV ``document``). Non-PDF, non-image documents without ``text``
    are decoded as UTF-8 text. Text of ``min_text_chars`` characters or fewer
    counts as unusable (structured CSV text is always kept).
    """

    text = source.text
    if text is None and source.document is not None and not (source.is_pdf or source.is_image):
        text = _decode_text_document(source)
    if text is None:
        return None
    if source.is_csv and not is_csv_text(text):
        text = csv_to_structured_text(text)
    if not is_csv_text(text) and len(text.strip()) <= settings.min_text_chars:
        return None
    return text


def select_strategy(
    source: StatementSource,
    settings: ExtractionSettings,
    *,
    text: str | None,
    date_range: DateRange | None = None,
) -> Strategy | None:
    """Pick the bank-statement strategy.

    Returns ``None`` when the choice depends on the statement's date range
    and ``date_range`` is not known yet; the caller detects it and asks again.
    Pass ``text`` as returned by :func:`prepare_text`.
    """

    if text is not None and is_csv_text(text):
        return Strategy.CSV_ROWS
    if text is not None and len(text) < settings.single_pass_char_limit:
        return Strategy.SINGLE_PASS
    large = source.effective_size() > settings.large_document_bytes
    if text is None:
        if not large or not source.is_pdf:
            return Strategy.SINGLE_PASS
        if source.page_images:
            return Strategy.PAGE_IMAGES
    if date_range is None:
        return None
    if spans_single_month(date_range.start_date, date_range.end_date):
        return Strategy.SINGLE_PASS
    return Strategy.MONTH_TEXT if text is not None else Strategy.MONTH_DOCUMENT


def _detect_range(
    client: ModelClient,
    source: StatementSource,
    text: str | None,
    settings: ExtractionSettings,
) -> DateRange | None:
    date_range = detect_date_range_from_text(text) if text is not None else None
    if date_range is None and source.is_pdf:
        _logger.info("pipeline:date_range_fallback method=model")
        attachment = source.attachment()
        if attachment is not None:
            date_range = detect_statement_date_range(client, attachment, settings)
    return date_range


# ---------------------------------------------------------------------------
# Sequential unit runner
# ---------------------------------------------------------------------------


def _pause(seconds: float, reason: str) -> None:
    if seconds > 0:
        _logger.debug("pipeline:pause seconds=%.1f reason=%s", seconds, reason)
        time.sleep(seconds)


def _terminal(outcome: UnitOutcome) -> TerminalModelError:
    return TerminalModelError(outcome.error or AUTH_MESSAGE, outcome.status_code)


def _run_with_fallback(
    client: ModelClient,
    unit: WorkUnit,
    settings: ExtractionSettings,
    fallback: WorkUnit | None,
) -> UnitOutcome:
    """Run ``unit``; on failure run ``fallback`` (usually the strong tier) once."""

    outcome = extract_unit(client, unit, settings)
    if outcome.terminal:
        raise _terminal(outcome)
    if not outcome.failed or fallback is None:
        return outcome
    _logger.warning(
        "pipeline:fallback label=%s from_tier=%s to_tier=%s status=%s",
        unit.label,
        unit.tier.value,
        fallback.tier.value,
        outcome.status.value,
    )
    _pause(settings.tier(fallback.tier).call_spacing_seconds, "fallback")
    retried = extract_unit(client, fallback, settings)
    if retried.terminal:
        raise _terminal(retried)
    return retried


UnitPlan: TypeAlias = tuple[WorkUnit, WorkUnit | None] | UnitOutcome


def _run_sequential(
    client: ModelClient,
    plans: Iterator[UnitPlan] | Sequence[UnitPlan],
    settings: ExtractionSettings,
    *,
    after: Callable[[UnitOutcome], None] | None = None,
) -> list[UnitOutcome]:
    """Run planned units in order with the tier's spacing between calls.

    A plan is either ``(unit, fallback)`` or an already-decided outcome (a
    skipped unit). ``after`` sees each outcome before the next plan is drawn,
    which lets page runs seed the next page's opening balance.
    """

    outcomes: list[UnitOutcome] = []
    called = False
    for plan in plans:
        if isinstance(plan, UnitOutcome):
            _logger.warning("pipeline:unit_skipped label=%s reason=%s", plan.label, plan.error)
            outcomes.append(plan)
            continue
        unit, fallback = plan
        if called:
            _pause(settings.tier(unit.tier).call_spacing_seconds, "spacing")
        called = True
        outcome = _run_with_fallback(client, unit, settings, fallback)
        outcomes.append(outcome)
        if after is not None:
            after(outcome)
    return outcomes


# ---------------------------------------------------------------------------
# Bank statement strategies
# ---------------------------------------------------------------------------


def _single_pass_units(source: StatementSource, text: str | None) -> list[UnitPlan]:
    attachment = source.attachment()
    text = text if text is not None else source.text
    if attachment is not None:
        prompt = prompting.build_single_pass_prompt()
    elif text and text.strip():
        prompt = prompting.build_single_pass_prompt(text)
    else:
        return []
    unit = WorkUnit(
        kind=UnitKind.DOCUMENT,
        label="statement",
        prompt=prompt,
        tier=ModelTier.STRONG,
        attachment=attachment,
    )
    return [(unit, None)]


def _csv_units(text: str, settings: ExtractionSettings) -> list[UnitPlan]:
    chunks = split_csv_rows(
        text, rows_per_chunk=settings.csv_rows_per_chunk, max_chars=settings.csv_chunk_max_chars
    )
    plans: list[UnitPlan] = []
    for chunk in chunks:
        unit = WorkUnit(
            kind=UnitKind.ROW_CHUNK,
            label=chunk.label,
            prompt=prompting.build_row_chunk_prompt(chunk, len(chunks)),
            tier=ModelTier.CHEAP,
            expected_rows=chunk.row_count,
        )
        plans.append((unit, unit.with_tier(ModelTier.STRONG)))
    _logger.info(
        "pipeline:csv_rows chunks=%d rows_per_chunk=%d", len(chunks), settings.csv_rows_per_chunk
    )
    return plans


def _month_text_units(
    source: StatementSource, text: str, months: Sequence[MonthRange]
) -> list[UnitPlan]:
    chunks = split_text_by_month(text, months)
    attachment = source.attachment() if source.is_pdf else None
    plans: list[UnitPlan] = []
    for i, month in enumerate(months):
        chunk = chunks.get(month.label, "")
        unit = WorkUnit(
            kind=UnitKind.MONTH,
            label=month.label,
            prompt=prompting.build_month_text_prompt(month, i, len(months), chunk),
            tier=ModelTier.CHEAP,
            month=month,
        )
        document_unit = None
        if attachment is not None:
            document_unit = WorkUnit(
                kind=UnitKind.MONTH,
                label=month.label,
                prompt=prompting.build_month_document_prompt(month, i, len(months)),
                tier=ModelTier.STRONG,
                attachment=attachment,
                month=month,
            )
        if not chunk.strip():
            if document_unit is not None:
                # No line of the text could be dated into this month: read the PDF instead.
                _logger.info("pipeline:month_text_empty label=%s using=document", month.label)
                plans.append((document_unit, None))
            else:
                plans.append(skipped_unit(unit, "No statement text found for this month"))
            continue
        plans.append((unit, document_unit or unit.with_tier(ModelTier.STRONG)))
    return plans


def _month_document_units(
    source: StatementSource, months: Sequence[MonthRange]
) -> list[UnitPlan]:
    attachment = source.attachment()
    plans: list[UnitPlan] = []
    for i, month in enumerate(months):
        unit = WorkUnit(
            kind=UnitKind.MONTH,
            label=month.label,
            prompt=prompting.build_month_document_prompt(month, i, len(months)),
            tier=ModelTier.STRONG,
            attachment=attachment,
            month=month,
        )
        plans.append((unit, None))
    return plans


def _run_pages(
    client: ModelClient, source: StatementSource, settings: ExtractionSettings
) -> list[UnitOutcome]:
    total = len(source.page_images)
    seed: list[UnitOutcome] = []

    def plans() -> Iterator[UnitPlan]:
        for i, image in enumerate(source.page_images):
            hint = None
            for prev in reversed(seed):
                if prev.last_balance is not None:
                    hint = prev.last_balance
                    break
            unit = WorkUnit(
                kind=UnitKind.PAGE,
                label=f"page {i + 1}",
                prompt=prompting.build_page_image_prompt(i + 1, total),
                tier=ModelTier.CHEAP,
                attachment=Attachment(
                    kind="image", data=image, media_type=source.page_image_media_type
                ),
                opening_balance_hint=hint,
            )
            yield unit, unit.with_tier(ModelTier.STRONG)

    return _run_sequential(client, plans(), settings, after=seed.append)


def _strategy_plans(
    strategy: Strategy,
    source: StatementSource,
    text: str | None,
    months: Sequence[MonthRange],
    settings: ExtractionSettings,
) -> list[UnitPlan]:
    if strategy is Strategy.CSV_ROWS and text is not None:
        return _csv_units(text, settings)
    if strategy is Strategy.MONTH_TEXT and text is not None:
        return _month_text_units(source, text, months)
    if strategy is Strategy.MONTH_DOCUMENT:
        return _month_document_units(source, months)
    return _single_pass_units(source, text)


def _failure(error: str, document_type: str, started_at: float) -> ExtractionResult:
    return ExtractionResult.failure(
        error,
        document_type=document_type,
        processing_time_ms=int((time.perf_counter() - started_at) * 1000),
    )


def extract_bank_statement(
    client: ModelClient,
    source: StatementSource,
    settings: ExtractionSettings | None = None,
) -> ExtractionResult:
    """Extract every transaction of a bank statement.

    Never raises for model or document problems: failures are reported through
    ``success``/``error`` on the returned :class:`ExtractionResult`.
    """

    settings = settings or ExtractionSettings()
    started_at = time.perf_counter()
    document_type = DocumentType.BANK_STATEMENT.value
    warnings: list[str] = []

    try:
        text = prepare_text(source, settings)
    except ValueError as e:
        return _failure(f"Failed to parse CSV file: {e}", document_type, started_at)

    try:
        strategy = select_strategy(source, settings, text=text)
        months: list[MonthRange] = []
        if strategy is None:
            date_range = _detect_range(client, source, text, settings)
            if date_range is None:
                warning = (
                    "Statement period could not be detected; extracted in a single pass, "
                    "long statements may be truncated"
                )
                _logger.warning("pipeline:date_range_undetected fallback=single-pass")
                warnings.append(warning)
                strategy = Strategy.SINGLE_PASS
            else:
                strategy = select_strategy(source, settings, text=text, date_range=date_range)
                if strategy is None:
                    strategy = Strategy.SINGLE_PASS
                months = partition_months(date_range.start_date, date_range.end_date)

        _logger.info(
            "pipeline:selected strategy=%s text_chars=%d size_bytes=%d months=%d",
            strategy.value,
            0 if text is None else len(text),
            source.effective_size(),
            len(months),
        )

        if strategy is Strategy.PAGE_IMAGES:
            outcomes = _run_pages(client, source, settings)
        else:
            plans = _strategy_plans(strategy, source, text, months, settings)
            if strategy is Strategy.MONTH_TEXT and all(isinstance(p, UnitOutcome) for p in plans):
                warning = (
                    "Statement lines could not be assigned to months; extracted in a single "
                    "pass, long statements may be truncated"
                )
                _logger.warning("pipeline:month_routing_failed fallback=single-pass")
                warnings.append(warning)
                strategy = Strategy.SINGLE_PASS
                plans = _single_pass_units(source, text)
            if not plans:
                return _failure("No extractable content in document", document_type, started_at)
            if strategy is Strategy.MONTH_DOCUMENT:
                _pause(settings.document_warmup_seconds, "warmup")
            outcomes = _run_sequential(client, plans, settings)
    except TerminalModelError as e:
        return _failure(e.message, document_type, started_at)

    return aggregate(
        outcomes,
        pipeline=strategy.value,
        document_type=document_type,
        started_at=started_at,
        deduplicate=settings.deduplicate and strategy in _DEDUP_STRATEGIES,
        tolerance=settings.balance_tolerance,
        warnings=warnings,
    )


def extract_specific_months(
    client: ModelClient,
    source: StatementSource,
    months: Sequence[MonthRange],
    settings: ExtractionSettings | None = None,
) -> ExtractionResult:
    """Re-extract only ``months`` (e.g. the ones a previous run could not process).

    Uses the text pipeline when usable text is available, the document
    pipeline otherwise.
    """

    settings = settings or ExtractionSettings()
    started_at = time.perf_counter()
    document_type = DocumentType.BANK_STATEMENT.value
    if not months:
        return _failure("No months requested", document_type, started_at)

    try:
        text = prepare_text(source, settings)
    except ValueError as e:
        return _failure(f"Failed to parse CSV file: {e}", document_type, started_at)

    if text is not None:
        strategy = Strategy.MONTH_TEXT
        plans = _month_text_units(source, text, months)
    elif source.is_pdf:
        strategy = Strategy.MONTH_DOCUMENT
        plans = _month_document_units(source, months)
    else:
        return _failure("No extractable content in document", document_type, started_at)

    _logger.info(
        "pipeline:re_extract strategy=%s months=%s",
        strategy.value,
        ",".join(m.label for m in months),
    )
    try:
        outcomes = _run_sequential(client, plans, settings)
    except TerminalModelError as e:
        return _failure(e.message, document_type, started_at)

    return aggregate(
        outcomes,
        pipeline=strategy.value,
        document_type=document_type,
        started_at=started_at,
        deduplicate=settings.deduplicate,
        tolerance=settings.balance_tolerance,
    )


# ---------------------------------------------------------------------------
# Receipts and invoices
# ---------------------------------------------------------------------------


def _extract_single_document(
    client: ModelClient,
    source: StatementSource,
    settings: ExtractionSettings,
    *,
    document_type: str,
    prompt_for: Callable[[str | None], str],
    forced_type: TransactionType,
) -> ExtractionResult:
    started_at = time.perf_counter()
    attachment = source.attachment()
    text = None
    if attachment is None:
        text = source.text if source.text is not None else _decode_text_document(source)
        if not text or not text.strip():
            return _failure("No extractable content in document", document_type, started_at)

    unit = WorkUnit(
        kind=UnitKind.DOCUMENT,
        label=document_type,
        prompt=prompt_for(text),
        tier=ModelTier.CHEAP,
        attachment=attachment,
        forced_type=forced_type,
        max_output_tokens=settings.single_document_max_output_tokens,
    )
    outcome = extract_unit(client, unit, settings)
    return aggregate(
        [outcome],
        pipeline=Strategy.SINGLE_DOCUMENT.value,
        document_type=document_type,
        started_at=started_at,
        tolerance=settings.balance_tolerance,
    )


def extract_receipt(
    client: ModelClient,
    source: StatementSource,
    settings: ExtractionSettings | None = None,
) -> ExtractionResult:
    """Single cheap-tier call; every receipt line is a debit."""

    return _extract_single_document(
        client,
        source,
        settings or ExtractionSettings(),
        document_type=DocumentType.RECEIPT.value,
        prompt_for=prompting.build_receipt_prompt,
        forced_type=TransactionType.DEBIT,
    )


def extract_invoice(
    client: ModelClient,
    source: StatementSource,
    invoice_type: str,
    settings: ExtractionSettings | None = None,
) -> ExtractionResult:
    """Single cheap-tier call; sales invoices are credits, purchase invoices debits."""

    if invoice_type not in ("sales", "purchase"):
        raise ValueError(f"invoice_type must be 'sales' or 'purchase', got {invoice_type!r}")
    return _extract_single_document(
        client,
        source,
        settings or ExtractionSettings(),
        document_type=f"invoice_{invoice_type}",
        prompt_for=lambda text: prompting.build_invoice_prompt(invoice_type, text),
        forced_type=TransactionType.CREDIT if invoice_type == "sales" else TransactionType.DEBIT,
    )


def extract_transactions(
    client: ModelClient,
    document_type: str,
    source: StatementSource,
    settings: ExtractionSettings | None = None,
) -> ExtractionResult:
    """Route a document to the extractor for its type.

    Unknown document types yield ``success=False`` rather than raising.
    """

    if document_type == DocumentType.BANK_STATEMENT:
        return extract_bank_statement(client, source, settings)
    if document_type == DocumentType.RECEIPT:
        return extract_receipt(client, source, settings)
    if document_type == DocumentType.INVOICE_SALES:
        return extract_invoice(client, source, "sales", settings)
    if document_type == DocumentType.INVOICE_PURCHASE:
        return extract_invoice(client, source, "purchase", settings)
    return ExtractionResult.failure(
        f"Unsupported document type: {document_type}",
        document_type=str(document_type),
        processing_time_ms=0,
    )


__all__ = [
    "CSV_MIMES",
    "PDF_MIME",
    "StatementSource",
    "Strategy",
    "extract_bank_statement",
    "extract_invoice",
    "extract_receipt",
    "extract_specific_months",
    "extract_transactions",
    "prepare_text",
    "select_strategy",
]
