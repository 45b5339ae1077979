from __future__ import annotations

from datetime import date

from statement_extraction import prompting
from statement_extraction.chunking import RowChunk
from statement_extraction.months import partition_months


def test_row_chunk_prompt_states_exact_row_count() -> None:
    chunk = RowChunk(
        index=1,
        header="Columns: Date | Amount",
        rows=(
            "Row 61: Date: 01/02/2024 | Amount: -3.00",
            "Row 62: Date: 02/02/2024 | Amount: 9.00",
        ),
        first_row=61,
        last_row=62,
    )
    prompt = prompting.build_row_chunk_prompt(chunk, total_chunks=3)
    assert "EXACTLY 2 CSV rows (Row 61 to Row 62, chunk 2 of 3)" in prompt
    assert "it must equal 2." in prompt
    assert prompt.endswith("Rows in this chunk: 2\n--- END ---")
    assert "Columns: Date | Amount" in prompt


def test_month_prompts_scope_the_period() -> None:
    months = partition_months(date(2024, 1, 10), date(2024, 3, 5))
    february = months[1]
    doc = prompting.build_month_document_prompt(february, 1, len(months))
    assert "period 2024-02-01 to 2024-02-29 (February 2024)" in doc
    assert "month 2 of 3" in doc
    assert "--- BANK STATEMENT TEXT ---" not in doc

    text = prompting.build_month_text_prompt(february, 1, len(months), "01/02/2024 SHOP 1.00")
    assert "--- BANK STATEMENT TEXT ---\n01/02/2024 SHOP 1.00\n--- END ---" in text


def test_single_pass_prompt_appends_text_only_when_given() -> None:
    assert "BANK STATEMENT TEXT" not in prompting.build_single_pass_prompt()
    assert "BANK STATEMENT TEXT" in prompting.build_single_pass_prompt("line")


def test_invoice_prompt_direction() -> None:
    sales = prompting.build_invoice_prompt("sales")
    purchase = prompting.build_invoice_prompt("purchase", "ACME LTD total 120.00")
    assert 'always "credit"' in sales and "customer name" in sales
    assert 'always "debit"' in purchase and "supplier name" in purchase
    assert "--- INVOICE CONTENT ---" in purchase


def test_page_prompt_names_the_page() -> None:
    assert "page 2 of 5" in prompting.build_page_image_prompt(2, 5)
