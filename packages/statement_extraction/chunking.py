"""Text-side partitioning: date-range detection, month split, CSV row chunks.

Everything here is pure string work with zero model calls. Numeric dates are
read day-first (``DD/MM/YYYY``) since the statements this targets are UK
issued.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date

from .logging_setup import get_logger
from .models import DateRange, MonthRange
from .months import months_between

CSV_BANNER = "=== BANK STATEMENT DATA (CSV) ==="

_HEADER_CONTEXT_LINES = 5
_MAX_RANGE_MONTHS = 24

_MONTH_NAMES: dict[str, int] = {
    "january": 1,
    "february": 2,
    "march": 3,
    "april": 4,
    "may": 5,
    "june": 6,
    "july": 7,
    "august": 8,
    "september": 9,
    "october": 10,
    "november": 11,
    "december": 12,
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "sept": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}
_MONTH_ALT = "|".join(sorted(_MONTH_NAMES, key=len, reverse=True))

_DMY_RE = re.compile(r"(\d{1,2})[/\-](\d{1,2})[/\-](\d{4})")
_D_MON_Y_RE = re.compile(rf"(\d{{1,2}})\s+({_MONTH_ALT})\.?\s+(\d{{4}})", re.IGNORECASE)
_MON_D_Y_RE = re.compile(rf"({_MONTH_ALT})\.?\s+(\d{{1,2}}),?\s+(\d{{4}})", re.IGNORECASE)
_ISO_RE = re.compile(r"(\d{4})-(\d{2})-(\d{2})")

_PERIOD_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"statement\s*period[:\s]+(.+?)\s+to\s+(.+?)(?:\s|$)", re.IGNORECASE),
    re.compile(r"statement\s*period[:\s]+(.+?)\s*[-–]\s*(.+?)(?:\s|$)", re.IGNORECASE),
    re.compile(r"period[:\s]+(.+?)\s+to\s+(.+?)(?:\s|$)", re.IGNORECASE),
    re.compile(r"from\s+(.+?)\s+to\s+(.+?)(?:\s|$)", re.IGNORECASE),
    re.compile(r"between\s+(.+?)\s+and\s+(.+?)(?:\s|$)", re.IGNORECASE),
)

_ANY_DATE_RE = re.compile(
    rf"(\d{{4}}-\d{{2}}-\d{{2}}|\d{{1,2}}[/\-]\d{{1,2}}[/\-]\d{{4}}"
    rf"|\d{{1,2}}\s+(?:{_MONTH_ALT})\s+\d{{4}})",
    re.IGNORECASE,
)

_CSV_DATE_ISO_RE = re.compile(r"\bDate:\s*(\d{4})-(\d{2})-(\d{2})")
_CSV_DATE_DMY_RE = re.compile(r"\bDate:\s*(\d{1,2})[/\-](\d{1,2})[/\-](\d{4})")
_LINE_DMY_RE = re.compile(r"^(\d{1,2})[/\-](\d{1,2})[/\-](\d{4})")
_LINE_D_MON_Y_RE = re.compile(rf"^(\d{{1,2}})\s+({_MONTH_ALT})\.?\s+(\d{{4}})", re.IGNORECASE)
_LINE_ISO_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")

_ROW_RE = re.compile(r"^Row\s+(\d+):")

_logger = get_logger("statement_extraction.chunking")


# ---------------------------------------------------------------------------
# Date parsing
# ---------------------------------------------------------------------------


def _safe_date(year: str | int, month: str | int, day: str | int) -> date | None:
    try:
        return date(int(year), int(month), int(day))
    except ValueError:
        return None


def parse_date_text(value: str) -> date | None:
    """Find and parse the first date in ``value``.

    Recognised, in order: ``DD/MM/YYYY`` (or dashes), ``DD Month YYYY``,
    ``Month DD, YYYY`` and ISO ``YYYY-MM-DD``. Impossible calendar dates are
    rejected.
    """

    m = _DMY_RE.search(value)
    if m is not None:
        parsed = _safe_date(m.group(3), m.group(2), m.group(1))
        if parsed is not None:
            return parsed

    m = _D_MON_Y_RE.search(value)
    if m is not None:
        parsed = _safe_date(m.group(3), _MONTH_NAMES[m.group(2).lower()], m.group(1))
        if parsed is not None:
            return parsed

    m = _MON_D_Y_RE.search(value)
    if m is not None:
        parsed = _safe_date(m.group(3), _MONTH_NAMES[m.group(1).lower()], m.group(2))
        if parsed is not None:
            return parsed

    m = _ISO_RE.search(value)
    if m is not None:
        return _safe_date(m.group(1), m.group(2), m.group(3))
    return None


def detect_date_range_from_text(text: str) -> DateRange | None:
    """Detect the statement period from text, or ``None``.

    Explicit period phrases win ("Statement period 01/01/2024 to
    31/03/2024", "from … to …", "between … and …"). Otherwise the earliest
    and latest dates anywhere in the text are used, provided they span
    between 1 and 24 calendar months; a same-month span is not trusted here.
    """

    normalized = re.sub(r"\s+", " ", text or "")

    for pattern in _PERIOD_PATTERNS:
        m = pattern.search(normalized)
        if m is None:
            continue
        start = parse_date_text(m.group(1).strip())
        end = parse_date_text(m.group(2).strip())
        if start is not None and end is not None and start <= end:
            _logger.info(
                "chunking:date_range source=period start=%s end=%s",
                start.isoformat(),
                end.isoformat(),
            )
            return DateRange(start_date=start, end_date=end)

    found: list[date] = []
    for m in _ANY_DATE_RE.finditer(normalized):
        parsed = parse_date_text(m.group(1))
        if parsed is not None:
            found.append(parsed)

    if len(found) >= 2:
        start, end = min(found), max(found)
        span = months_between(start, end)
        if 0 < span <= _MAX_RANGE_MONTHS:
            _logger.info(
                "chunking:date_range source=all_dates start=%s end=%s dates=%d",
                start.isoformat(),
                end.isoformat(),
                len(found),
            )
            return DateRange(start_date=start, end_date=end)

    _logger.warning("chunking:date_range_undetected chars=%d", len(text or ""))
    return None


def extract_date_from_line(line: str) -> date | None:
    """Return the transaction date a line starts with (or its ``Date:`` field).

    Structured CSV rows (``Row 3: Date: 15/01/2024 | …``) are checked first
    since they never start with a date.
    """

    trimmed = line.strip()
    if not trimmed:
        return None

    m = _CSV_DATE_ISO_RE.search(trimmed)
    if m is not None:
        return _safe_date(m.group(1), m.group(2), m.group(3))
    m = _CSV_DATE_DMY_RE.search(trimmed)
    if m is not None:
        return _safe_date(m.group(3), m.group(2), m.group(1))

    m = _LINE_DMY_RE.match(trimmed)
    if m is not None:
        return _safe_date(m.group(3), m.group(2), m.group(1))
    m = _LINE_D_MON_Y_RE.match(trimmed)
    if m is not None:
        return _safe_date(m.group(3), _MONTH_NAMES[m.group(2).lower()], m.group(1))
    m = _LINE_ISO_RE.match(trimmed)
    if m is not None:
        return _safe_date(m.group(1), m.group(2), m.group(3))
    return None


# ---------------------------------------------------------------------------
# Month split
# ---------------------------------------------------------------------------


def _find_month(day: date, months: Sequence[MonthRange]) -> MonthRange | None:
    for month in months:
        if month.contains(day):
            return month
    return None


def split_text_by_month(text: str, months: Sequence[MonthRange]) -> dict[str, str]:
    """Route each line of ``text`` to the month of the date it carries.

    Returns ``{label: chunk}`` with a key for every month, in month order.
    Lines without a date continue the month of the most recent dated line.
    Dated lines outside every month (with their continuation lines) are held
    back and attached to the current month once the next in-range date is
    seen; trailing ones are dropped. Lines before the first in-range date are
    never routed to a month. The last few non-empty lines
    before the first dated line (column headers, account details) are
    prepended to every non-empty chunk; empty chunks stay ``""``.
    """

    lines = text.split("\n")
    buckets: dict[str, list[str]] = {m.label: [] for m in months}

    header: list[str] = []
    for line in lines:
        if extract_date_from_line(line) is not None:
            break
        if line.strip():
            header.append(line)
    header_text = "\n".join(header[-_HEADER_CONTEXT_LINES:])

    current: str | None = None
    pending: list[str] = []
    for line in lines:
        day = extract_date_from_line(line)
        if day is None:
            if not line.strip() or current is None:
                continue
            if pending:
                pending.append(line)
            else:
                buckets[current].append(line)
            continue
        month = _find_month(day, months)
        if month is None:
            pending.append(line)
            continue
        if pending and current is not None:
            buckets[current].extend(pending)
        pending = []
        current = month.label
        buckets[current].append(line)

    out: dict[str, str] = {}
    for label, chunk_lines in buckets.items():
        body = "\n".join(chunk_lines)
        out[label] = f"{header_text}\n\n{body}\n" if body.strip() else ""
    return out


# ---------------------------------------------------------------------------
# CSV row chunks
# ---------------------------------------------------------------------------


def is_csv_text(text: str) -> bool:
    """True for structured CSV text as produced by :mod:`statement_extraction.csv_text`."""

    if not text:
        return False
    if text.lstrip().startswith(CSV_BANNER):
        return True
    lines = [ln for ln in text.splitlines() if ln.strip()]
    rows = sum(1 for ln in lines if _ROW_RE.match(ln))
    return rows >= 2 and rows >= len(lines) // 2


@dataclass(frozen=True, slots=True)
class RowChunk:
    """A contiguous batch of ``Row N:`` lines plus the column header line."""

    index: int
    header: str
    rows: tuple[str, ...]
    first_row: int
    last_row: int

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def label(self) -> str:
        return f"rows {self.first_row}-{self.last_row}"

    @property
    def text(self) -> str:
        parts = [CSV_BANNER, ""]
        if self.header:
            parts.extend([self.header, "---"])
        parts.extend(self.rows)
        parts.extend(["", f"Rows in this chunk: {self.row_count}"])
        return "\n".join(parts)


def _row_number(line: str, fallback: int) -> int:
    m = _ROW_RE.match(line)
    return int(m.group(1)) if m is not None else fallback


def split_csv_rows(
    text: str, rows_per_chunk: int = 60, max_chars: int = 24_000
) -> list[RowChunk]:
    """Batch the ``Row N:`` lines of structured CSV text.

    A batch closes at ``rows_per_chunk`` rows, or earlier when adding the next
    row would push its rows past ``max_chars`` characters (a single oversized
    row still gets a batch of its own). The ``Columns:`` line (or the
    ``Detected …`` line for headerless CSVs) is repeated in every batch.
    """

    if rows_per_chunk <= 0:
        raise ValueError("rows_per_chunk must be a positive integer")
    if max_chars <= 0:
        raise ValueError("max_chars must be a positive integer")

    header = ""
    rows: list[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if _ROW_RE.match(stripped):
            rows.append(stripped)
        elif not header and (stripped.startswith("Columns:") or stripped.startswith("Detected ")):
            header = stripped

    chunks: list[RowChunk] = []
    batch: list[str] = []
    batch_chars = 0

    def _close() -> None:
        first = _row_number(batch[0], 0)
        last = _row_number(batch[-1], first)
        chunks.append(
            RowChunk(
                index=len(chunks),
                header=header,
                rows=tuple(batch),
                first_row=first,
                last_row=last,
            )
        )

    for row in rows:
        size = len(row) + 1
        if batch and (len(batch) >= rows_per_chunk or batch_chars + size > max_chars):
            _close()
            batch = []
            batch_chars = 0
        batch.append(row)
        batch_chars += size
    if batch:
        _close()

    _logger.debug("chunking:csv_rows rows=%d chunks=%d", len(rows), len(chunks))
    return chunks


__all__ = [
    "CSV_BANNER",
    "RowChunk",
    "detect_date_range_from_text",
    "extract_date_from_line",
    "is_csv_text",
    "parse_date_text",
    "split_csv_rows",
    "split_text_by_month",
]
