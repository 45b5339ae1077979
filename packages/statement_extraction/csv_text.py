"""CSV bank exports → structured row text the model can read.

Output shape::

    === BANK STATEMENT DATA (CSV) ===

    Columns: Date | Description | Amount | Balance
    ---
    Row 1: Date: 15/01/2024 | Description: TESCO | Amount: -45.50 | Balance: 954.50
    ...

    Total rows: 42

Each ``Row N:`` line names its columns so the model never has to line values
up with a header many rows above; row numbers are what the row-chunk prompt
asks the model to account for.
"""

from __future__ import annotations

import csv
import io
import re

from .chunking import CSV_BANNER
from .logging_setup import get_logger

_HEADER_RE = re.compile(
    r"^(date|transaction|description|amount|debit|credit|balance|reference|type"
    r"|merchant|details|particulars|money\s*(in|out))",
    re.IGNORECASE,
)

_logger = get_logger("statement_extraction.csv_text")


def looks_like_header(row: list[str]) -> bool:
    return any(_HEADER_RE.match(cell.strip()) for cell in row)


def csv_to_structured_text(csv_text: str) -> str:
    """Render raw CSV text as structured ``Row N:`` lines.

    Raises ``ValueError`` when the CSV holds no non-empty rows.
    """

    text = csv_text.lstrip("\ufeff")
    rows = [
        row
        for row in csv.reader(io.StringIO(text))
        if any(cell.strip() for cell in row)
    ]
    if not rows:
        raise ValueError("CSV file is empty")

    first = rows[0]
    has_header = looks_like_header(first)
    lines: list[str] = [CSV_BANNER, ""]

    if has_header:
        headers = [h.strip() for h in first]
        lines.append(f"Columns: {' | '.join(headers)}")
        lines.append("---")
        for i, row in enumerate(rows[1:], start=1):
            parts = [
                f"{headers[j]}: {row[j].strip()}"
                for j in range(min(len(headers), len(row)))
                if row[j].strip()
            ]
            if parts:
                lines.append(f"Row {i}: {' | '.join(parts)}")
        total = len(rows) - 1
    else:
        lines.append(f"Detected {len(rows)} rows, {len(first)} columns")
        lines.append("---")
        for i, row in enumerate(rows, start=1):
            vals = [v.strip() for v in row if v.strip()]
            if vals:
                lines.append(f"Row {i}: {' | '.join(vals)}")
        total = len(rows)

    lines.append("")
    lines.append(f"Total rows: {total}")

    structured = "\n".join(lines)
    _logger.info(
        "csv_text:parsed rows=%d columns=%d header=%s chars=%d",
        len(rows),
        len(first),
        has_header,
        len(structured),
    )
    return structured


__all__ = ["csv_to_structured_text", "looks_like_header"]
