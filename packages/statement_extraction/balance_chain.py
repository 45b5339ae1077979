"""Balance-chain verification.

A bank statement's running balance is an independent check on the amount and
direction the model extracted for each line. :func:`verify_balance_chain`
walks a sequence in order and reports every link where
``previous ± amount`` does not land on the printed balance.
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import ROUND_HALF_UP, Decimal

from .logging_setup import get_logger
from .models import (
    BalanceChainLink,
    BalanceVerificationResult,
    ExtractedTransaction,
    TransactionType,
)

DEFAULT_TOLERANCE = Decimal("0.015")
DEFAULT_COVERAGE_THRESHOLD = 0.9

_CENT = Decimal("0.01")

_logger = get_logger("statement_extraction.balance_chain")


def expected_balance(
    previous: Decimal, amount: Decimal, tx_type: TransactionType
) -> Decimal:
    """Return ``previous + amount`` for credits, ``previous - amount`` for debits (2 dp)."""

    raw = previous + amount if tx_type is TransactionType.CREDIT else previous - amount
    return raw.quantize(_CENT, rounding=ROUND_HALF_UP)


def verify_balance_chain(
    transactions: Sequence[ExtractedTransaction],
    opening_balance: Decimal | None = None,
    closing_balance: Decimal | None = None,
    label: str = "statement",
    *,
    tolerance: Decimal = DEFAULT_TOLERANCE,
    coverage_threshold: float = DEFAULT_COVERAGE_THRESHOLD,
) -> BalanceVerificationResult:
    """Walk ``transactions`` and check each printed balance against the arithmetic.

    Parameters
    ----------
    transactions:
        Sequence in statement order (the order the model returned them in).
    opening_balance:
        Balance before the first transaction, when known. Seeds the chain.
    closing_balance:
        Stated closing balance. Compared to the last observed balance for a
        diagnostic warning only.
    label:
        Free-form scope label (``"January 2024"``, ``"page 3"``) used in logs.
    tolerance:
        A link is valid when ``|actual - expected| < tolerance``.
    coverage_threshold:
        ``is_fully_verified`` requires coverage strictly above this value.

    Notes
    -----
    A transaction without a balance resets the previous balance to unknown:
    the chain cannot be checked across a gap. The next transaction carrying a
    balance is a valid link (it re-anchors the chain). The observed balance
    always becomes the previous balance for the next step, even on a broken
    link.
    """

    total = len(transactions)
    with_balance = sum(1 for t in transactions if t.balance is not None)
    coverage = (with_balance / total) if total else 0.0

    if with_balance == 0:
        return BalanceVerificationResult(
            label=label,
            opening_balance=opening_balance,
            closing_balance=closing_balance,
            chain_length=0,
            valid_links=0,
            broken_links=(),
            coverage=coverage,
            is_fully_verified=False,
        )

    previous = opening_balance
    valid = 0
    broken: list[BalanceChainLink] = []

    for idx, tx in enumerate(transactions):
        actual = tx.balance
        if actual is None:
            previous = None
            continue
        if previous is None:
            valid += 1
            previous = actual
            continue

        expected = expected_balance(previous, tx.amount, tx.type)
        discrepancy = actual - expected
        if abs(discrepancy) < tolerance:
            valid += 1
        else:
            broken.append(
                BalanceChainLink(
                    index=idx,
                    date=tx.date,
                    merchant=tx.merchant,
                    amount=tx.amount,
                    type=tx.type,
                    expected_balance=expected,
                    actual_balance=actual,
                    discrepancy=discrepancy,
                    is_valid=False,
                    corrected_amount=abs(actual - previous),
                )
            )
        previous = actual

    closing_discrepancy: Decimal | None = None
    if closing_balance is not None and previous is not None:
        diff = closing_balance - previous
        if abs(diff) > tolerance:
            closing_discrepancy = diff
            _logger.warning(
                "balance_chain:closing_mismatch label=%s last_balance=%s closing=%s diff=%s",
                label,
                previous,
                closing_balance,
                diff,
            )

    is_fully_verified = not broken and coverage > coverage_threshold
    if broken:
        _logger.info(
            "balance_chain:breaks label=%s broken=%d valid=%d coverage=%.2f",
            label,
            len(broken),
            valid,
            coverage,
        )

    return BalanceVerificationResult(
        label=label,
        opening_balance=opening_balance,
        closing_balance=closing_balance,
        chain_length=valid + len(broken),
        valid_links=valid,
        broken_links=tuple(broken),
        coverage=coverage,
        is_fully_verified=is_fully_verified,
        closing_discrepancy=closing_discrepancy,
    )


__all__ = [
    "DEFAULT_COVERAGE_THRESHOLD",
    "DEFAULT_TOLERANCE",
    "expected_balance",
    "verify_balance_chain",
]
