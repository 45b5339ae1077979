"""Fold the ordered unit outcomes of one request into an :class:`ExtractionResult`.

The fold is explicit: each :class:`~statement_extraction.invoker.UnitOutcome`
is folded into an immutable accumulator in unit order, then the accumulated
transactions are sorted, optionally de-duplicated and summarised.
"""

from __future__ import annotations

import re
import time
from collections.abc import Iterable, Sequence
from decimal import Decimal
from functools import reduce
from typing import Any, NamedTuple

from .balance_chain import DEFAULT_TOLERANCE
from .invoker import UnitOutcome
from .logging_setup import get_logger
from .models import (
    BalanceVerificationResult,
    CorrectionEntry,
    ExtractedTransaction,
    ExtractionResult,
    sort_by_date,
)

NO_TRANSACTIONS_ERROR = "No transactions extracted"

_EXACT_MERCHANT_PREFIX = 20
_BOUNDARY_MERCHANT_PREFIX = 15
_BOUNDARY_MAX_DAYS = 2
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")

_logger = get_logger("statement_extraction.aggregate")


# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------


def _merchant_key(merchant: str, length: int) -> str:
    return _NON_ALNUM_RE.sub("", merchant.lower())[:length]


def deduplicate_transactions(
    transactions: Sequence[ExtractedTransaction],
) -> tuple[list[ExtractedTransaction], list[str]]:
    """Remove duplicates produced by overlapping units of work.

    Two passes:

    1. Exact duplicates: same date, amount, type and the first 20 alphanumeric
       characters of the lower-cased merchant. The first occurrence is kept.
    2. Month-boundary duplicates: same amount and type, the same 15-character
       merchant prefix, 1-2 days apart and in different calendar months (one
       unit read the line as the last day of a month, the next as the first
       day of the next). The earlier one is kept.

    Returns the surviving transactions in date order and a description of
    every removal.
    """

    removed: list[str] = []
    seen: set[tuple[Any, ...]] = set()
    unique: list[ExtractedTransaction] = []
    for tx in transactions:
        key = (tx.date, tx.amount, tx.type, _merchant_key(tx.merchant, _EXACT_MERCHANT_PREFIX))
        if key in seen:
            removed.append(f"Same-day duplicate: {tx.date} | {tx.amount:.2f} | {tx.merchant}")
            continue
        seen.add(key)
        unique.append(tx)

    ordered = sort_by_date(unique)
    drop: set[int] = set()
    for i, first in enumerate(ordered):
        if i in drop:
            continue
        for j in range(i + 1, len(ordered)):
            if j in drop:
                continue
            second = ordered[j]
            gap = (second.date - first.date).days
            if gap > _BOUNDARY_MAX_DAYS:
                break
            if gap < 1:
                continue
            if (first.date.year, first.date.month) == (second.date.year, second.date.month):
                continue
            if first.amount != second.amount or first.type is not second.type:
                continue
            if _merchant_key(first.merchant, _BOUNDARY_MERCHANT_PREFIX) == _merchant_key(
                second.merchant, _BOUNDARY_MERCHANT_PREFIX
            ):
                drop.add(j)
                removed.append(
                    f"Cross-month duplicate: {first.date} & {second.date} | "
                    f"{first.amount:.2f} | {first.merchant}"
                )

    kept = [tx for idx, tx in enumerate(ordered) if idx not in drop]
    if removed:
        _logger.info("aggregate:dedup removed=%d kept=%d", len(removed), len(kept))
    return kept, removed


# ---------------------------------------------------------------------------
# Fold
# ---------------------------------------------------------------------------


class _Accumulator(NamedTuple):
    transactions: tuple[ExtractedTransaction, ...] = ()
    verifications: tuple[BalanceVerificationResult, ...] = ()
    corrections: tuple[CorrectionEntry, ...] = ()
    units: tuple[dict[str, Any], ...] = ()
    failed: tuple[UnitOutcome, ...] = ()
    succeeded: int = 0
    out_of_range: int = 0
    warnings: tuple[str, ...] = ()
    previous: tuple[str, Decimal | None] | None = None


def _in_scope(outcome: UnitOutcome) -> tuple[tuple[ExtractedTransaction, ...], int]:
    if outcome.month is None:
        return outcome.transactions, 0
    kept = tuple(t for t in outcome.transactions if outcome.month.contains(t.date))
    dropped = len(outcome.transactions) - len(kept)
    if dropped:
        _logger.info(
            "aggregate:out_of_month label=%s dropped=%d kept=%d",
            outcome.label,
            dropped,
            len(kept),
        )
    return kept, dropped


def _ending_balance(
    outcome: UnitOutcome, kept: tuple[ExtractedTransaction, ...]
) -> Decimal | None:
    if len(kept) == len(outcome.transactions):
        return outcome.ending_balance
    # Out-of-month lines were dropped: only balances printed on kept lines count.
    for tx in reversed(kept):
        if tx.balance is not None:
            return tx.balance
    return None


def _balance_gap(
    prev_label: str, closing: Decimal | None, cur: UnitOutcome, tolerance: Decimal
) -> str | None:
    opening = cur.opening_balance
    if closing is None or opening is None:
        return None
    diff = abs(closing - opening)
    if diff <= tolerance:
        return None
    return (
        f"Balance gap: {prev_label} closing {closing:.2f} != {cur.label} opening "
        f"{opening:.2f} (diff {diff:.2f})"
    )


def _fold(tolerance: Decimal):
    def step(acc: _Accumulator, outcome: UnitOutcome) -> _Accumulator:
        kept, dropped = _in_scope(outcome)
        warnings = acc.warnings
        if outcome.row_mismatch:
            warnings += (
                f"{outcome.label}: expected {outcome.expected_rows} rows, model returned "
                f"{outcome.returned_count}",
            )
        previous = acc.previous
        if outcome.succeeded:
            if previous is not None:
                gap = _balance_gap(*previous, outcome, tolerance)
                if gap is not None:
                    _logger.warning("aggregate:balance_gap %s", gap)
                    warnings += (gap,)
            previous = (outcome.label, _ending_balance(outcome, kept))
        return _Accumulator(
            transactions=acc.transactions + kept,
            verifications=acc.verifications
            + (() if outcome.verification is None else (outcome.verification,)),
            corrections=acc.corrections + outcome.corrections,
            units=acc.units + (outcome.to_dict(),),
            failed=acc.failed + ((outcome,) if outcome.failed else ()),
            succeeded=acc.succeeded + (1 if outcome.succeeded else 0),
            out_of_range=acc.out_of_range + dropped,
            warnings=warnings,
            previous=previous,
        )

    return step


def _most_relevant_error(failed: Sequence[UnitOutcome]) -> str:
    for outcome in failed:
        if outcome.terminal and outcome.error:
            return outcome.error
    for outcome in failed:
        if outcome.error:
            return outcome.error
    return NO_TRANSACTIONS_ERROR


def _balance_summary(
    acc: _Accumulator, transactions: Sequence[ExtractedTransaction]
) -> dict[str, Any] | None:
    if not acc.verifications:
        return None
    coverage = sum(v.coverage for v in acc.verifications) / len(acc.verifications)
    return {
        "totalTransactions": len(transactions),
        "transactionsWithBalance": sum(1 for t in transactions if t.balance is not None),
        "balanceCoverage": coverage,
        "chainBreaks": sum(v.broken_count for v in acc.verifications),
        "autoCorrections": len(acc.corrections),
        "flaggedForReview": sum(1 for c in acc.corrections if c.flagged_for_review),
        "isFullyVerified": all(v.is_fully_verified for v in acc.verifications),
        "correctedTransactions": [c.to_dict() for c in acc.corrections],
    }


def aggregate(
    outcomes: Iterable[UnitOutcome],
    *,
    pipeline: str,
    document_type: str,
    started_at: float,
    deduplicate: bool = False,
    tolerance: Decimal = DEFAULT_TOLERANCE,
    warnings: Sequence[str] = (),
) -> ExtractionResult:
    """Merge unit outcomes (in unit order) into the final result.

    Parameters
    ----------
    outcomes:
        Unit outcomes in the order the units ran.
    pipeline:
        Pipeline identifier recorded in metadata.
    document_type:
        Document type recorded in metadata.
    started_at:
        ``time.perf_counter()`` value taken when the request started.
    deduplicate:
        Apply :func:`deduplicate_transactions` (month and page pipelines).
    warnings:
        Pipeline-level warnings to carry into metadata.

    Success rules: no successful unit → failure carrying the most relevant
    unit error; zero transactions → failure ``"No transactions extracted"``;
    some failed units → success with a partial-extraction ``error``.
    """

    acc = reduce(_fold(tolerance), outcomes, _Accumulator(warnings=tuple(warnings)))

    ordered = sort_by_date(acc.transactions)
    removed: list[str] = []
    if deduplicate:
        ordered, removed = deduplicate_transactions(ordered)

    processing_ms = int((time.perf_counter() - started_at) * 1000)
    metadata: dict[str, Any] = {
        "documentType": document_type,
        "totalTransactions": len(ordered),
        "processingTime": processing_ms,
        "pipeline": pipeline,
        "units": list(acc.units),
        "failedUnits": [o.label for o in acc.failed],
        "duplicatesRemoved": len(removed),
        "outOfRangeRemoved": acc.out_of_range,
        "warnings": list(acc.warnings),
    }
    summary = _balance_summary(acc, ordered)
    if summary is not None:
        metadata["balanceVerification"] = summary

    error: str | None = None
    if acc.succeeded == 0:
        success = False
        error = _most_relevant_error(acc.failed)
    elif not ordered:
        success = False
        error = NO_TRANSACTIONS_ERROR
    else:
        success = True
        if acc.failed:
            labels = ", ".join(o.label for o in acc.failed)
            error = (
                f"Partial extraction: {labels} could not be processed. "
                "All other units extracted successfully."
            )

    _logger.info(
        "aggregate:done pipeline=%s units=%d failed=%d transactions=%d duplicates=%d "
        "success=%s processing_ms=%d",
        pipeline,
        len(acc.units),
        len(acc.failed),
        len(ordered),
        len(removed),
        success,
        processing_ms,
    )
    return ExtractionResult(
        success=success,
        transactions=tuple(ordered),
        error=error,
        metadata=metadata,
    )


__all__ = ["NO_TRANSACTIONS_ERROR", "aggregate", "deduplicate_transactions"]
