"""Prompt construction for every unit-of-work kind.

This module builds:
- The shared per-transaction field contract (the JSON transaction schema the
  model is asked to emit).
- Bank-statement prompts for a whole document, one month (document- or
  text-based), one CSV row chunk and one page image.
- The statement date-range detection prompt.
- Receipt and invoice prompts.

All prompts ask for a single JSON object with a ``transactions`` array;
statement prompts additionally ask for ``openingBalance`` and a
``verification`` block the invoker compares against what it parsed.
"""

from __future__ import annotations

from .chunking import RowChunk
from .models import CATEGORY_TAXONOMY, MonthRange

_PREAMBLE = (
    "You are extracting bank statement transactions for professional accounting "
    "software. Accuracy is critical: every transaction and every penny must be "
    "captured exactly."
)


def _category_list() -> str:
    return ", ".join(f'"{c}"' for c in CATEGORY_TAXONOMY)


def transaction_fields() -> str:
    """Return the per-transaction field contract shared by every prompt."""

    return (
        "For each transaction provide: date (YYYY-MM-DD), merchant (exactly as shown), "
        "description (additional details or null), amount (positive number exactly as "
        'shown), type ("debit" = money out, "credit" = money in), balance (running '
        "balance after this transaction as printed on the same row, or null if not "
        f"visible), category (one of {_category_list()}, or null), categoryConfidence "
        "(0-1), vatAmount (or null), vatRate (or null), extractionConfidence (0-1)."
    )


def _statement_rules(scope: str) -> str:
    return (
        "RULES:\n"
        f"1. Extract EVERY transaction row {scope}. Do not skip any rows.\n"
        "2. Amounts must be exactly as shown. Do not round or estimate.\n"
        '3. "debit" = money OUT (payments, purchases, direct debits, standing orders, '
        'transfers out). "credit" = money IN (deposits, income, transfers in, refunds, '
        "interest).\n"
        "4. A description spanning several lines is one transaction.\n"
        "5. Include the RUNNING BALANCE printed after each transaction.\n"
        "6. Include the OPENING BALANCE (the balance before the first transaction in "
        "scope).\n"
        "7. Never output summary rows (totals, brought/carried forward, headers) as "
        "transactions."
    )


def _statement_shape(month_label: str | None = None) -> str:
    label_line = f',\n    "monthLabel": "{month_label}"' if month_label else ""
    return (
        "Return ONLY this JSON structure:\n"
        "{\n"
        '  "openingBalance": 5167.17,\n'
        '  "transactions": [\n'
        "    {\n"
        '      "date": "YYYY-MM-DD",\n'
        '      "merchant": "Name exactly as shown",\n'
        '      "description": "Details or null",\n'
        '      "amount": 123.45,\n'
        '      "type": "debit",\n'
        '      "balance": 5043.72,\n'
        '      "category": "Category or null",\n'
        '      "categoryConfidence": 0.85,\n'
        '      "vatAmount": null,\n'
        '      "vatRate": null,\n'
        '      "extractionConfidence": 0.95\n'
        "    }\n"
        "  ],\n"
        '  "verification": {\n'
        '    "transactionCount": 85,\n'
        '    "totalDebits": "1234.56",\n'
        '    "totalCredits": "5678.90",\n'
        f'    "closingBalance": 5206.95{label_line}\n'
        "  }\n"
        "}\n"
        "No markdown. No explanation."
    )


_VERIFY = (
    "After extracting, verify your work: count the transactions, sum debits and "
    "credits separately, and note the closing balance (balance after the last "
    "transaction)."
)


def _with_text(prompt: str, heading: str, text: str) -> str:
    return f"{prompt}\n\n--- {heading} ---\n{text}\n--- END ---"


def build_single_pass_prompt(text: str | None = None) -> str:
    """Whole-statement prompt; ``text`` is appended when no document is attached."""

    prompt = "\n\n".join(
        [
            _PREAMBLE,
            "TASK: Extract EVERY SINGLE transaction from this bank statement. Work page "
            "by page, line by line.",
            _statement_rules("on the statement"),
            transaction_fields(),
            _VERIFY,
            _statement_shape(),
        ]
    )
    return prompt if text is None else _with_text(prompt, "BANK STATEMENT TEXT", text)


def _month_scope(month: MonthRange, index: int, total: int) -> str:
    start = month.start_date.isoformat()
    end = month.end_date.isoformat()
    return (
        f"CRITICAL: This is month {index + 1} of {total}. Only include transactions "
        f"dated {start} to {end}."
    )


def build_month_document_prompt(month: MonthRange, index: int, total: int) -> str:
    """Prompt for one month of an attached PDF statement."""

    start = month.start_date.isoformat()
    end = month.end_date.isoformat()
    return "\n\n".join(
        [
            _PREAMBLE,
            f"TASK: Extract EVERY transaction from the attached bank statement for the "
            f"period {start} to {end} ({month.label}).",
            _statement_rules("for this date range"),
            transaction_fields(),
            _VERIFY,
            _statement_shape(month.label),
            _month_scope(month, index, total),
        ]
    )


def build_month_text_prompt(month: MonthRange, index: int, total: int, chunk: str) -> str:
    """Prompt for one month of pre-extracted statement text."""

    start = month.start_date.isoformat()
    end = month.end_date.isoformat()
    prompt = "\n\n".join(
        [
            _PREAMBLE,
            f"TASK: Extract EVERY transaction from the bank statement text below for the "
            f"period {start} to {end} ({month.label}).",
            _statement_rules("in the text"),
            transaction_fields(),
            _VERIFY,
            _statement_shape(month.label),
            _month_scope(month, index, total),
        ]
    )
    return _with_text(prompt, "BANK STATEMENT TEXT", chunk)


def build_row_chunk_prompt(chunk: RowChunk, total_chunks: int) -> str:
    """Prompt for one batch of structured CSV rows.

    The exact row count is stated so an omission shows up as a count mismatch.
    """

    n = chunk.row_count
    prompt = "\n\n".join(
        [
            _PREAMBLE,
            f"TASK: The text below contains EXACTLY {n} CSV rows (Row {chunk.first_row} "
            f"to Row {chunk.last_row}, chunk {chunk.index + 1} of {total_chunks}). Each "
            "row is one transaction. Return exactly one transaction per row, in row "
            f"order: {n} transactions in total.",
            "Signed amounts: a negative value is money out (debit). Separate money-in / "
            "money-out columns decide the type. Use the row's balance column if present.",
            transaction_fields(),
            f'Set "verification.transactionCount" to the number of transactions you '
            f"returned; it must equal {n}.",
            _statement_shape(),
        ]
    )
    return _with_text(prompt, "CSV ROWS", chunk.text)


def build_page_image_prompt(page_number: int, total_pages: int) -> str:
    """Prompt for one rendered statement page."""

    return "\n\n".join(
        [
            _PREAMBLE,
            f"TASK: The attached image is page {page_number} of {total_pages} of a bank "
            "statement. Extract EVERY transaction row visible on this page only.",
            _statement_rules("on this page"),
            transaction_fields(),
            "If the page shows a balance brought forward, use it as openingBalance; "
            "otherwise set openingBalance to null. A page with no transactions returns "
            'an empty "transactions" array.',
            _statement_shape(),
        ]
    )


def build_date_range_prompt() -> str:
    return (
        "Look at this bank statement and find the statement period (the first and last "
        "dates it covers). Dates on this statement are day-first.\n\n"
        "Return ONLY this JSON:\n"
        '{"startDate": "YYYY-MM-DD", "endDate": "YYYY-MM-DD"}\n\n'
        "Examples:\n"
        '- "01/09/2023 to 28/02/2024" -> {"startDate": "2023-09-01", "endDate": '
        '"2024-02-28"}\n'
        '- "Sep 1 2023 - Feb 28 2024" -> {"startDate": "2023-09-01", "endDate": '
        '"2024-02-28"}\n'
        "No other text."
    )


_SINGLE_SHAPE = (
    "Return ONLY a valid JSON object:\n"
    '{"transactions": [{"date": "2024-01-15", "merchant": "Coffee Shop", '
    '"description": "Client meeting refreshments", "amount": 45.50, "type": "debit", '
    '"category": "Meals & Entertainment", "categoryConfidence": 0.9, "vatAmount": 9.10, '
    '"vatRate": 0.20, "extractionConfidence": 0.95}]}\n'
    "No markdown."
)


def build_receipt_prompt(text: str | None = None) -> str:
    prompt = "\n\n".join(
        [
            "You are an expert accounting assistant. Extract the transaction details "
            "from this receipt.",
            "Provide: date (YYYY-MM-DD), merchant (business name), description (what was "
            "purchased, or null), amount (total amount paid), type (always \"debit\"), "
            f"category (one of {_category_list()}, or null), categoryConfidence (0-1), "
            "vatAmount (VAT/tax amount if shown, or null), vatRate (VAT rate as a "
            "decimal, or null), extractionConfidence (0-1).",
            _SINGLE_SHAPE,
        ]
    )
    return prompt if text is None else _with_text(prompt, "RECEIPT CONTENT", text)


def build_invoice_prompt(invoice_type: str, text: str | None = None) -> str:
    """``invoice_type`` is ``"sales"`` (money in) or ``"purchase"`` (money out)."""

    sales = invoice_type == "sales"
    counterparty = "customer name" if sales else "supplier name"
    tx_type = "credit" if sales else "debit"
    prompt = "\n\n".join(
        [
            "You are an expert accounting assistant. Extract the transaction details "
            f"from this {invoice_type} invoice.",
            f"Provide: date (invoice date, YYYY-MM-DD), merchant ({counterparty}), "
            "description (invoice description or line-item summary, or null), amount "
            f'(total invoice amount including VAT), type (always "{tx_type}"), category '
            f"(one of {_category_list()}, or null), categoryConfidence (0-1), vatAmount "
            "(or null), vatRate (as a decimal, or null), extractionConfidence (0-1).",
            _SINGLE_SHAPE,
        ]
    )
    return prompt if text is None else _with_text(prompt, "INVOICE CONTENT", text)


__all__ = [
    "build_date_range_prompt",
    "build_invoice_prompt",
    "build_month_document_prompt",
    "build_month_text_prompt",
    "build_page_image_prompt",
    "build_receipt_prompt",
    "build_row_chunk_prompt",
    "build_single_pass_prompt",
    "transaction_fields",
]
