"""Balance-derived corrections for broken chain links.

For every broken link the true movement is ``current_balance -
previous_balance``. What happens next depends on how far that is from what the
model extracted:

=====================================  ======================  ==========  =======
Situation                              Amount                  Confidence  Flagged
=====================================  ======================  ==========  =======
same direction, difference < cutoff    replaced by inferred    0.70        no
same direction, difference >= cutoff   replaced by inferred    0.40        yes
direction mismatch                     unchanged               0.30        yes
=====================================  ======================  ==========  =======

The cutoff defaults to 10 currency units.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Sequence
from decimal import Decimal
from typing import NamedTuple

from .logging_setup import get_logger
from .models import (
    BalanceVerificationResult,
    CorrectionAction,
    CorrectionEntry,
    ExtractedTransaction,
    TransactionType,
)

DEFAULT_LARGE_CORRECTION_THRESHOLD = Decimal("10")

CONFIDENCE_CORRECTED = 0.70
CONFIDENCE_CORRECTED_LARGE = 0.40
CONFIDENCE_TYPE_MISMATCH = 0.30

_logger = get_logger("statement_extraction.corrections")


class CorrectionOutcome(NamedTuple):
    corrected: list[ExtractedTransaction]
    corrections: list[CorrectionEntry]

    @property
    def flagged_count(self) -> int:
        return sum(1 for c in self.corrections if c.flagged_for_review)

    @property
    def applied_count(self) -> int:
        return sum(1 for c in self.corrections if c.action is not CorrectionAction.TYPE_MISMATCH)


def apply_balance_corrections(
    transactions: Sequence[ExtractedTransaction],
    verification: BalanceVerificationResult,
    opening_balance: Decimal | None = None,
    *,
    large_correction_threshold: Decimal = DEFAULT_LARGE_CORRECTION_THRESHOLD,
) -> CorrectionOutcome:
    """Return a corrected copy of ``transactions`` plus an audit log.

    The previous balance for a broken link at index ``i`` is the opening
    balance when ``i == 0`` and otherwise the balance printed on transaction
    ``i - 1``. Links whose previous or current balance is unknown are skipped.
    The input sequence is never modified.
    """

    corrected = list(transactions)
    log: list[CorrectionEntry] = []

    for link in verification.broken_links:
        idx = link.index
        if idx < 0 or idx >= len(corrected):
            continue
        tx = corrected[idx]
        previous = opening_balance if idx == 0 else transactions[idx - 1].balance
        current = tx.balance
        if previous is None or current is None:
            continue

        delta = current - previous
        inferred_type = TransactionType.CREDIT if delta >= 0 else TransactionType.DEBIT
        inferred_amount = abs(delta)

        if inferred_type is tx.type:
            if inferred_amount <= 0:
                # A zero movement cannot be stored as a positive amount.
                continue
            difference = abs(inferred_amount - tx.amount)
            large = difference >= large_correction_threshold
            confidence = CONFIDENCE_CORRECTED_LARGE if large else CONFIDENCE_CORRECTED
            action = CorrectionAction.CORRECTED_LARGE if large else CorrectionAction.CORRECTED
            reason = (
                f"Balance chain implies {inferred_type.value} of {inferred_amount:.2f} "
                f"(extracted {tx.amount:.2f}, difference {difference:.2f})"
            )
            if large:
                reason += "; large correction, review for a missing adjacent transaction"
            corrected[idx] = dataclasses.replace(
                tx, amount=inferred_amount, extraction_confidence=confidence
            )
            new_amount = inferred_amount
            flagged = large
        else:
            confidence = CONFIDENCE_TYPE_MISMATCH
            action = CorrectionAction.TYPE_MISMATCH
            reason = (
                f"Balance moved by {delta:+.2f} which implies {inferred_type.value}, "
                f"but the line was extracted as {tx.type.value}; amount left unchanged"
            )
            corrected[idx] = dataclasses.replace(tx, extraction_confidence=confidence)
            new_amount = tx.amount
            flagged = True

        entry = CorrectionEntry(
            index=idx,
            date=tx.date,
            merchant=tx.merchant,
            original_amount=tx.amount,
            corrected_amount=new_amount,
            original_type=tx.type,
            inferred_type=inferred_type,
            action=action,
            extraction_confidence=confidence,
            flagged_for_review=flagged,
            reason=reason,
            label=verification.label,
        )
        log.append(entry)
        _logger.info(
            "corrections:%s label=%s index=%d merchant=%s original=%s inferred=%s flagged=%s",
            action.value,
            verification.label,
            idx,
            tx.merchant,
            tx.amount,
            inferred_amount,
            flagged,
        )

    return CorrectionOutcome(corrected=corrected, corrections=log)


__all__ = [
    "CONFIDENCE_CORRECTED",
    "CONFIDENCE_CORRECTED_LARGE",
    "CONFIDENCE_TYPE_MISMATCH",
    "DEFAULT_LARGE_CORRECTION_THRESHOLD",
    "CorrectionOutcome",
    "apply_balance_corrections",
]
