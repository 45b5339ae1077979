"""Data models for ``statement_extraction``.

Every value here is created fresh per extraction request and is immutable
after construction. The only sanctioned "mutation" is the balance-chain
correction path, which builds a replacement :class:`ExtractedTransaction`
via :func:`dataclasses.replace` touching ``amount``, ``type`` and
``extraction_confidence`` only.

Money is carried as :class:`~decimal.Decimal` with two decimal places;
probabilities (confidences) are plain floats in ``[0, 1]``.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import StrEnum
from typing import Any

# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class TransactionType(StrEnum):
    """Direction of a movement: ``debit`` is money out, ``credit`` money in."""

    DEBIT = "debit"
    CREDIT = "credit"


# Fixed category taxonomy offered to the model. Labels outside this list are
# coerced to ``Other`` by the normalizer.
CATEGORY_TAXONOMY: tuple[str, ...] = (
    "Office Supplies",
    "Travel",
    "Meals & Entertainment",
    "Professional Fees",
    "Utilities",
    "Rent",
    "Salaries",
    "Marketing",
    "Software",
    "Other",
)

DEFAULT_MERCHANT = "Unknown"
DEFAULT_EXTRACTION_CONFIDENCE = 0.8


def _money(value: Decimal | None) -> str | None:
    return None if value is None else f"{value:.2f}"


@dataclass(frozen=True, slots=True)
class ExtractedTransaction:
    """One financial movement as returned by the extraction core.

    Invariants (enforced by :mod:`statement_extraction.normalize`):

    - ``amount`` is strictly positive; the direction lives only in ``type``.
    - ``merchant`` is non-empty (``"Unknown"`` when the source had none).
    - ``description`` is ``None`` or differs from ``merchant``.
    - ``balance`` is the running account balance immediately after this
      transaction, or ``None`` when the source did not show one.
    """

    date: date
    merchant: str
    amount: Decimal
    type: TransactionType
    description: str | None = None
    category: str | None = None
    category_confidence: float | None = None
    vat_amount: Decimal | None = None
    vat_rate: Decimal | None = None
    extraction_confidence: float = DEFAULT_EXTRACTION_CONFIDENCE
    balance: Decimal | None = None

    @property
    def signed_amount(self) -> Decimal:
        """Amount with the sign implied by ``type`` (credits positive)."""

        return self.amount if self.type is TransactionType.CREDIT else -self.amount

    def to_dict(self) -> dict[str, Any]:
        """Render the camelCase wire form consumed downstream."""

        return {
            "date": self.date.isoformat(),
            "merchant": self.merchant,
            "description": self.description,
            "amount": _money(self.amount),
            "type": self.type.value,
            "category": self.category,
            "categoryConfidence": self.category_confidence,
            "vatAmount": _money(self.vat_amount),
            "vatRate": None if self.vat_rate is None else str(self.vat_rate),
            "extractionConfidence": self.extraction_confidence,
            "balance": _money(self.balance),
        }


# ---------------------------------------------------------------------------
# Balance verification
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BalanceChainLink:
    """Result of checking one transaction against the running balance.

    ``corrected_amount`` is derived purely from balance arithmetic
    (``|actual_balance - previous_balance|``) and is only set for broken links.
    """

    index: int
    date: date
    merchant: str
    amount: Decimal
    type: TransactionType
    expected_balance: Decimal
    actual_balance: Decimal
    discrepancy: Decimal
    is_valid: bool
    corrected_amount: Decimal | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "date": self.date.isoformat(),
            "merchant": self.merchant,
            "amount": _money(self.amount),
            "type": self.type.value,
            "expectedBalance": _money(self.expected_balance),
            "actualBalance": _money(self.actual_balance),
            "discrepancy": _money(self.discrepancy),
            "isValid": self.is_valid,
            "correctedAmount": _money(self.corrected_amount),
        }


@dataclass(frozen=True, slots=True)
class BalanceVerificationResult:
    """Aggregate of a balance-chain walk over one sequence of transactions.

    ``is_fully_verified`` is true only when no link is broken and
    ``coverage`` exceeds the configured threshold (0.9 by default).
    ``closing_discrepancy`` is diagnostic only: it records the gap between
    the last observed balance and the stated closing balance and never
    affects ``is_fully_verified``.
    """

    label: str
    opening_balance: Decimal | None
    closing_balance: Decimal | None
    chain_length: int
    valid_links: int
    broken_links: tuple[BalanceChainLink, ...]
    coverage: float
    is_fully_verified: bool
    closing_discrepancy: Decimal | None = None

    @property
    def broken_count(self) -> int:
        return len(self.broken_links)

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "openingBalance": _money(self.opening_balance),
            "closingBalance": _money(self.closing_balance),
            "chainLength": self.chain_length,
            "validLinks": self.valid_links,
            "brokenLinks": [link.to_dict() for link in self.broken_links],
            "balanceCoverage": self.coverage,
            "isFullyVerified": self.is_fully_verified,
            "closingDiscrepancy": _money(self.closing_discrepancy),
        }


class CorrectionAction(StrEnum):
    CORRECTED = "corrected"
    CORRECTED_LARGE = "corrected_large"
    TYPE_MISMATCH = "type_mismatch"


@dataclass(frozen=True, slots=True)
class CorrectionEntry:
    """Audit record for one balance-derived correction (or refusal to correct)."""

    index: int
    date: date
    merchant: str
    original_amount: Decimal
    corrected_amount: Decimal
    original_type: TransactionType
    inferred_type: TransactionType
    action: CorrectionAction
    extraction_confidence: float
    flagged_for_review: bool
    reason: str
    label: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "index": self.index,
            "date": self.date.isoformat(),
            "merchant": self.merchant,
            "originalAmount": _money(self.original_amount),
            "correctedAmount": _money(self.corrected_amount),
            "originalType": self.original_type.value,
            "inferredType": self.inferred_type.value,
            "action": self.action.value,
            "extractionConfidence": self.extraction_confidence,
            "flaggedForReview": self.flagged_for_review,
            "reason": self.reason,
        }


# ---------------------------------------------------------------------------
# Date ranges
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DateRange:
    """A statement-wide period, inclusive on both ends."""

    start_date: date
    end_date: date


@dataclass(frozen=True, slots=True)
class MonthRange:
    """One calendar month clipped to the overall statement period.

    Attributes
    ----------
    start_date:
        First day covered (the statement's first date when the statement
        starts mid-month).
    end_date:
        Last day covered (the statement's last date when it ends mid-month).
    label:
        Human-readable month label, e.g. ``"January 2024"``.
    """

    start_date: date
    end_date: date
    label: str

    def contains(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date


# ---------------------------------------------------------------------------
# Extraction result
# ---------------------------------------------------------------------------


class DocumentType(StrEnum):
    BANK_STATEMENT = "bank_statement"
    RECEIPT = "receipt"
    INVOICE_SALES = "invoice_sales"
    INVOICE_PURCHASE = "invoice_purchase"


@dataclass(frozen=True, slots=True)
class ExtractionResult:
    """Outcome of one extraction request.

    ``success`` may be true while ``error`` is set: that combination means
    some units of work failed but others produced transactions.
    """

    success: bool
    transactions: tuple[ExtractedTransaction, ...] = ()
    error: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(
        cls, error: str, *, document_type: str, processing_time_ms: int, **extra: Any
    ) -> ExtractionResult:
        return cls(
            success=False,
            transactions=(),
            error=error,
            metadata={
                "documentType": document_type,
                "totalTransactions": 0,
                "processingTime": processing_time_ms,
                **extra,
            },
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "transactions": [t.to_dict() for t in self.transactions],
            "error": self.error,
            "metadata": dict(self.metadata),
        }


def sort_by_date(transactions: Sequence[ExtractedTransaction]) -> list[ExtractedTransaction]:
    """Stable sort by transaction date (same-day order is preserved)."""

    return sorted(transactions, key=lambda t: t.date)
