"""Builders for :class:`ExtractedTransaction` values used across tests."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from statement_extraction.models import ExtractedTransaction, TransactionType


def make_tx(
    day: str,
    amount: str,
    type: str = "debit",
    balance: str | None = None,
    merchant: str = "Shop",
) -> ExtractedTransaction:
    return ExtractedTransaction(
        date=date.fromisoformat(day),
        merchant=merchant,
        amount=Decimal(amount),
        type=TransactionType(type),
        balance=None if balance is None else Decimal(balance),
    )
