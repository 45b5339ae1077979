"""Raw model records → :class:`~statement_extraction.models.ExtractedTransaction`.

Rules are applied per record, in order:

1. ``amount`` is parsed as a decimal (currency symbols, thousands separators,
   accounting parentheses tolerated); anything unparsable becomes ``0``.
2. A negative amount forces ``type=debit`` and is replaced by its absolute
   value, overriding whatever type the record stated. Single signed
   "amount" columns (common in CSV exports) rely on this.
3. ``balance`` becomes a decimal or ``None``; empty or unparsable values are
   ``None``, never an error.
4. A blank ``merchant`` becomes ``"Unknown"``.
5. ``description`` is dropped when it duplicates ``merchant``.
6. ``categoryConfidence``, ``vatAmount``, ``vatRate`` and
   ``extractionConfidence`` are converted; confidences are clamped to
   ``[0, 1]`` and ``extractionConfidence`` defaults to ``0.8``.

Post-filter: records with ``amount <= 0``, an empty date, or a date that is
not a real ``YYYY-MM-DD`` calendar date are excluded silently. The model
occasionally emits totals/header rows despite instructions; this filter is the
last line of defence, not the primary one.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from .logging_setup import get_logger
from .models import (
    CATEGORY_TAXONOMY,
    DEFAULT_EXTRACTION_CONFIDENCE,
    DEFAULT_MERCHANT,
    ExtractedTransaction,
    TransactionType,
)

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_CENT = Decimal("0.01")
_CURRENCY_CHARS = "£$€"

_logger = get_logger("statement_extraction.normalize")


# ---------------------------------------------------------------------------
# Value coercion helpers
# ---------------------------------------------------------------------------


def to_decimal(raw: Any) -> Decimal | None:
    """Best-effort decimal parse; ``None`` when the value is blank or unparsable.

    Accepts ints/floats/Decimals and strings like ``"-£1,234.56"``,
    ``"(45.00)"`` or ``"+12"``. Booleans are rejected.
    """

    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, Decimal):
        return raw if raw.is_finite() else None
    if isinstance(raw, int):
        return Decimal(raw)
    if isinstance(raw, float):
        d = Decimal(str(raw))
        return d if d.is_finite() else None
    if not isinstance(raw, str):
        return None

    s = raw.strip()
    if not s:
        return None
    negative = False

    # Strip sign, currency symbol and surrounding parentheses in any order.
    while True:
        changed = False
        if s.startswith("+"):
            s = s[1:].lstrip()
            changed = True
        elif s.startswith("-"):
            negative = True
            s = s[1:].lstrip()
            changed = True
        if s and s[0] in _CURRENCY_CHARS:
            s = s[1:].lstrip()
            changed = True
        if s.startswith("(") and s.endswith(")") and len(s) >= 2:
            negative = True
            s = s[1:-1].strip()
            changed = True
        if not changed:
            break

    s = s.replace(",", "").strip()
    if not s:
        return None
    try:
        d = Decimal(s)
    except InvalidOperation:
        return None
    if not d.is_finite():
        return None
    return -abs(d) if negative else d


def to_money(raw: Any) -> Decimal | None:
    d = to_decimal(raw)
    return None if d is None else d.quantize(_CENT, rounding=ROUND_HALF_UP)


def _to_probability(raw: Any) -> float | None:
    d = to_decimal(raw)
    if d is None:
        return None
    return min(1.0, max(0.0, float(d)))


def _clean_str(raw: Any) -> str | None:
    if raw is None:
        return None
    s = str(raw).strip()
    return s or None


def _parse_iso_date(raw: Any) -> date | None:
    s = _clean_str(raw)
    if s is None or not _ISO_DATE_RE.match(s):
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def _resolve_category(raw: Any) -> str | None:
    label = _clean_str(raw)
    if label is None or label.lower() == "null":
        return None
    if label in CATEGORY_TAXONOMY:
        return label
    # Keep the fallback inside the taxonomy, case-insensitively first.
    for known in CATEGORY_TAXONOMY:
        if known.casefold() == label.casefold():
            return known
    return "Other"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def normalize_record(
    record: Mapping[str, Any], *, forced_type: TransactionType | None = None
) -> ExtractedTransaction | None:
    """Normalize one raw record; ``None`` when the post-filter excludes it.

    ``forced_type`` pins the direction for single-document extractions
    (receipts are always debits, sales invoices credits); a negative amount
    still wins over it.
    """

    amount = to_money(record.get("amount")) or Decimal("0.00")
    stated = str(record.get("type") or "").strip().lower()
    if forced_type is not None:
        tx_type = forced_type
    else:
        tx_type = TransactionType.CREDIT if stated == "credit" else TransactionType.DEBIT
    if amount < 0:
        tx_type = TransactionType.DEBIT
        amount = abs(amount)

    balance = to_money(record.get("balance"))

    merchant = _clean_str(record.get("merchant")) or DEFAULT_MERCHANT
    description = _clean_str(record.get("description"))
    if description is not None and (
        description.casefold() == merchant.casefold() or description.lower() == "null"
    ):
        description = None

    extraction_confidence = _to_probability(record.get("extractionConfidence"))
    if extraction_confidence is None:
        extraction_confidence = DEFAULT_EXTRACTION_CONFIDENCE

    tx_date = _parse_iso_date(record.get("date"))
    if amount <= 0 or tx_date is None:
        return None

    return ExtractedTransaction(
        date=tx_date,
        merchant=merchant,
        description=description,
        amount=amount,
        type=tx_type,
        category=_resolve_category(record.get("category")),
        category_confidence=_to_probability(record.get("categoryConfidence")),
        vat_amount=to_money(record.get("vatAmount")),
        vat_rate=to_decimal(record.get("vatRate")),
        extraction_confidence=extraction_confidence,
        balance=balance,
    )


def normalize_transactions(
    records: Iterable[Any], *, forced_type: TransactionType | None = None
) -> list[ExtractedTransaction]:
    """Normalize a list of loosely-typed records, preserving their order.

    Non-mapping entries and records rejected by the post-filter are skipped;
    the number of skipped records is logged at debug level.
    """

    out: list[ExtractedTransaction] = []
    skipped = 0
    for record in records:
        if not isinstance(record, Mapping):
            skipped += 1
            continue
        tx = normalize_record(record, forced_type=forced_type)
        if tx is None:
            skipped += 1
            continue
        out.append(tx)
    if skipped:
        _logger.debug("normalize:skipped count=%d kept=%d", skipped, len(out))
    return out


__all__ = ["normalize_record", "normalize_transactions", "to_decimal", "to_money"]
