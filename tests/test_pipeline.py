from __future__ import annotations

import base64
from datetime import date
from decimal import Decimal

import pytest

from statement_extraction.client import ModelRequest
from statement_extraction.invoker import AUTH_MESSAGE
from statement_extraction.models import DateRange, TransactionType
from statement_extraction.months import partition_months
from statement_extraction.pipeline import (
    PDF_MIME,
    StatementSource,
    Strategy,
    extract_bank_statement,
    extract_invoice,
    extract_receipt,
    extract_specific_months,
    extract_transactions,
    prepare_text,
    select_strategy,
)
from tests.helpers.model_stub import ApiError, ScriptedModel, payload, tx

_LARGE = 200 * 1024


def _csv(n: int) -> str:
    rows = "\n".join(f"{d:02d}/01/2024,SHOP {d},-{d}.00" for d in range(1, n + 1))
    return "Date,Description,Amount\n" + rows + "\n"


def _echo_rows(request: ModelRequest) -> str:
    """Answer a row-chunk prompt with one transaction per ``Row N:`` line."""

    records = []
    for line in request.prompt.splitlines():
        if not line.startswith("Row "):
            continue
        fields = dict(part.split(": ", 1) for part in line.split(": ", 1)[1].split(" | "))
        day, month, year = fields["Date"].split("/")
        records.append(tx(f"{year}-{month}-{day}", fields["Description"], fields["Amount"]))
    return payload(*records)


_STATEMENT_TEXT = "\n".join(
    [
        "ACME BANK STATEMENT",
        "Statement period 01/01/2024 to 31/03/2024",
        "Date Description Amount Balance",
        "02/01/2024 TESCO 10.00 990.00",
        "15/01/2024 SHELL 40.00 950.00",
        "03/02/2024 RENT 500.00 450.00",
        "20/02/2024 SALARY 1500.00 1950.00",
    ]
)


def _month_reply(request: ModelRequest) -> str:
    if "(January 2024)" in request.prompt:
        return payload(
            tx("2024-01-02", "TESCO", 10, "debit", 990),
            tx("2024-01-15", "SHELL", 40, "debit", 950),
            # Spilled over from the next month: dropped by the month filter.
            tx("2024-02-03", "RENT", 500, "debit", 450),
            opening=1000,
        )
    return payload(
        tx("2024-02-03", "RENT", 500, "debit", 450),
        tx("2024-02-20", "SALARY", 1500, "credit", 1950),
        opening=950,
    )


# ---- Source preparation and strategy selection ---------------------------------


def test_prepare_text_converts_csv(settings) -> None:
    text = prepare_text(StatementSource(mime_type="text/csv", text=_csv(2)), settings)
    assert text is not None and "Row 2: Date: 02/01/2024" in text


def test_prepare_text_decodes_base64_text_documents(settings) -> None:
    encoded = base64.b64encode(_csv(2).encode()).decode()
    text = prepare_text(StatementSource(document=encoded, mime_type="text/csv"), settings)
    assert text is not None and text.startswith("=== BANK STATEMENT DATA (CSV) ===")


def test_prepare_text_rejects_short_text(settings) -> None:
    assert prepare_text(StatementSource(text="  tiny  "), settings) is None
    assert prepare_text(StatementSource(document="JVBERi0=", mime_type=PDF_MIME), settings) is None


def test_select_strategy_order(settings) -> None:
    csv_source = StatementSource(mime_type="text/csv", text=_csv(3))
    csv_text = prepare_text(csv_source, settings)
    assert select_strategy(csv_source, settings, text=csv_text) is Strategy.CSV_ROWS

    short = StatementSource(text="x" * 500)
    assert select_strategy(short, settings, text=short.text) is Strategy.SINGLE_PASS

    small_pdf = StatementSource(document="JVBERi0=", mime_type=PDF_MIME, size_bytes=1_000)
    assert select_strategy(small_pdf, settings, text=None) is Strategy.SINGLE_PASS

    scanned = StatementSource(
        document="JVBERi0=", mime_type=PDF_MIME, size_bytes=_LARGE, page_images=("a", "b")
    )
    assert select_strategy(scanned, settings, text=None) is Strategy.PAGE_IMAGES

    large_pdf = StatementSource(document="JVBERi0=", mime_type=PDF_MIME, size_bytes=_LARGE)
    assert select_strategy(large_pdf, settings, text=None) is None
    quarter = DateRange(date(2024, 1, 1), date(2024, 3, 31))
    assert (
        select_strategy(large_pdf, settings, text=None, date_range=quarter)
        is Strategy.MONTH_DOCUMENT
    )

    long_text = "y" * (settings.single_pass_char_limit + 1)
    long_source = StatementSource(text=long_text)
    assert select_strategy(long_source, settings, text=long_text) is None
    assert (
        select_strategy(long_source, settings, text=long_text, date_range=quarter)
        is Strategy.MONTH_TEXT
    )
    one_month = DateRange(date(2024, 1, 1), date(2024, 1, 31))
    assert (
        select_strategy(long_source, settings, text=long_text, date_range=one_month)
        is Strategy.SINGLE_PASS
    )


# ---- CSV row chunks --------------------------------------------------------------


def test_csv_rows_pipeline(settings) -> None:
    settings = settings.model_copy(update={"csv_rows_per_chunk": 2})
    model = ScriptedModel(default=_echo_rows)
    result = extract_bank_statement(
        model, StatementSource(mime_type="text/csv", text=_csv(5)), settings
    )
    assert result.success, result.error
    assert result.metadata["pipeline"] == "csv-rows"
    assert model.models == ["cheap-model"] * 3
    assert "EXACTLY 2 CSV rows" in model.requests[0].prompt
    assert "EXACTLY 1 CSV rows" in model.requests[2].prompt
    assert [t.merchant for t in result.transactions] == [f"SHOP {d}" for d in range(1, 6)]
    assert all(t.type is TransactionType.DEBIT for t in result.transactions)
    assert [u["label"] for u in result.metadata["units"]] == ["rows 1-2", "rows 3-4", "rows 5-5"]


def test_failed_unit_falls_back_to_strong_tier(settings) -> None:
    settings = settings.model_copy(update={"csv_rows_per_chunk": 2})
    model = ScriptedModel([ApiError(500)], default=_echo_rows)
    result = extract_bank_statement(
        model, StatementSource(mime_type="text/csv", text=_csv(5)), settings
    )
    assert result.success and result.error is None
    assert model.models == ["cheap-model", "strong-model", "cheap-model", "cheap-model"]
    assert result.metadata["units"][0]["tier"] == "strong"
    assert len(result.transactions) == 5


@pytest.mark.parametrize("first", ["not json at all", ApiError(429)])
def test_unparseable_and_rate_limited_units_fall_back(settings, first) -> None:
    settings = settings.model_copy(update={"csv_rows_per_chunk": 5})
    replies = [first] * (settings.max_attempts if isinstance(first, ApiError) else 1)
    model = ScriptedModel(replies, default=_echo_rows)
    result = extract_bank_statement(
        model, StatementSource(mime_type="text/csv", text=_csv(5)), settings
    )
    assert result.success and result.error is None
    assert model.models[-1] == "strong-model"
    assert len(result.transactions) == 5


def test_unit_failing_on_both_tiers_gives_partial_success(settings) -> None:
    settings = settings.model_copy(update={"csv_rows_per_chunk": 2})
    model = ScriptedModel([ApiError(500), ApiError(500)], default=_echo_rows)
    result = extract_bank_statement(
        model, StatementSource(mime_type="text/csv", text=_csv(5)), settings
    )
    assert result.success
    assert result.error is not None and result.error.startswith("Partial extraction: rows 1-2")
    assert result.metadata["failedUnits"] == ["rows 1-2"]
    assert len(result.transactions) == 3


def test_authentication_failure_aborts_the_run(settings) -> None:
    settings = settings.model_copy(update={"csv_rows_per_chunk": 2})
    model = ScriptedModel([ApiError(401)], default=_echo_rows)
    result = extract_bank_statement(
        model, StatementSource(mime_type="text/csv", text=_csv(5)), settings
    )
    assert not result.success
    assert result.error == AUTH_MESSAGE
    assert len(model.requests) == 1


def test_empty_csv_is_reported(settings) -> None:
    model = ScriptedModel()
    result = extract_bank_statement(model, StatementSource(mime_type="text/csv", text=""), settings)
    assert not result.success
    assert result.error == "Failed to parse CSV file: CSV file is empty"
    assert model.requests == []


def test_nothing_to_extract(settings) -> None:
    result = extract_bank_statement(ScriptedModel(), StatementSource(), settings)
    assert not result.success
    assert result.error == "No extractable content in document"


# ---- Month pipelines -------------------------------------------------------------


def test_month_text_pipeline(settings) -> None:
    settings = settings.model_copy(update={"single_pass_char_limit": 100})
    model = ScriptedModel(default=_month_reply)
    result = extract_bank_statement(model, StatementSource(text=_STATEMENT_TEXT), settings)

    assert result.success, result.error
    assert result.metadata["pipeline"] == "month-text"
    # March has no lines and is skipped without a model call.
    assert model.models == ["cheap-model", "cheap-model"]
    assert "02/01/2024 TESCO" in model.requests[0].prompt
    assert "03/02/2024 RENT" not in model.requests[0].prompt
    assert "03/02/2024 RENT" in model.requests[1].prompt
    assert [u["status"] for u in result.metadata["units"]] == ["ok", "ok", "skipped"]
    assert [t.merchant for t in result.transactions] == ["TESCO", "SHELL", "RENT", "SALARY"]
    assert result.metadata["outOfRangeRemoved"] == 1
    # January ends on SHELL (950.00), not on the dropped February line.
    assert result.metadata["warnings"] == []
    assert result.metadata["balanceVerification"]["isFullyVerified"] is True


def test_undetectable_period_degrades_to_single_pass(settings) -> None:
    settings = settings.model_copy(update={"single_pass_char_limit": 100})
    text = "\n".join(f"{d:02d}/01/2024 PAYMENT {d} 1.00" for d in range(1, 20))
    model = ScriptedModel([payload(tx("2024-01-01", "PAYMENT 1", 1))])
    result = extract_bank_statement(model, StatementSource(text=text), settings)
    assert result.success
    assert result.metadata["pipeline"] == "single-pass"
    assert model.models == ["strong-model"]
    assert "PAYMENT 19" in model.requests[0].prompt
    assert any("could not be detected" in w for w in result.metadata["warnings"])


_YEARLESS_TEXT = "\n".join(
    [
        "ACME BANK STATEMENT",
        "Statement period 01/01/2024 to 29/02/2024",
        "Date Description Amount Balance",
        "02 Jan TESCO 10.00 990.00",
        "15 Jan SHELL 40.00 950.00",
        "03 Feb RENT 500.00 450.00",
        "20 Feb SALARY 1500.00 1950.00",
    ]
)


def test_undated_month_chunks_read_the_attached_pdf(settings) -> None:
    settings = settings.model_copy(update={"single_pass_char_limit": 100})
    model = ScriptedModel(default=_month_reply)
    source = StatementSource(
        document="JVBERi0=", mime_type=PDF_MIME, size_bytes=_LARGE, text=_YEARLESS_TEXT
    )
    result = extract_bank_statement(model, source, settings)

    assert result.success, result.error
    assert result.metadata["pipeline"] == "month-text"
    assert model.models == ["strong-model", "strong-model"]
    assert all(r.attachment is not None and r.attachment.kind == "document" for r in model.requests)
    assert "(January 2024)" in model.requests[0].prompt
    assert "BANK STATEMENT TEXT" not in model.requests[0].prompt
    assert [u["status"] for u in result.metadata["units"]] == ["ok", "ok"]
    assert [t.merchant for t in result.transactions] == ["TESCO", "SHELL", "RENT", "SALARY"]


def test_undated_month_chunks_without_pdf_use_single_pass(settings) -> None:
    settings = settings.model_copy(update={"single_pass_char_limit": 100})
    model = ScriptedModel([payload(tx("2024-01-02", "TESCO", 10, "debit", 990))])
    result = extract_bank_statement(model, StatementSource(text=_YEARLESS_TEXT), settings)

    assert result.success, result.error
    assert result.metadata["pipeline"] == "single-pass"
    assert model.models == ["strong-model"]
    assert "20 Feb SALARY" in model.requests[0].prompt
    assert any("could not be assigned to months" in w for w in result.metadata["warnings"])


def test_month_document_pipeline_paces_calls(settings, sleeps: list[float]) -> None:
    settings = settings.model_copy(
        update={
            "document_warmup_seconds": 5.0,
            "strong": settings.strong.model_copy(update={"call_spacing_seconds": 10.0}),
        }
    )

    def reply(request: ModelRequest) -> str:
        if "find the statement period" in request.prompt:
            return '{"startDate": "2024-01-01", "endDate": "2024-02-29"}'
        return _month_reply(request)

    model = ScriptedModel(default=reply)
    source = StatementSource(document="JVBERi0=", mime_type=PDF_MIME, size_bytes=_LARGE)
    result = extract_bank_statement(model, source, settings)

    assert result.success, result.error
    assert result.metadata["pipeline"] == "month-document"
    assert model.models == ["strong-model"] * 3
    assert all(r.attachment is not None and r.attachment.kind == "document" for r in model.requests)
    assert sleeps == [5.0, 10.0]
    assert len(result.transactions) == 4


def test_undetectable_pdf_period_uses_single_pass(settings) -> None:
    model = ScriptedModel(["no idea", payload(tx("2024-01-02", "A", 1))])
    source = StatementSource(document="JVBERi0=", mime_type=PDF_MIME, size_bytes=_LARGE)
    result = extract_bank_statement(model, source, settings)
    assert result.success
    assert result.metadata["pipeline"] == "single-pass"
    assert len(model.requests) == 2


def test_period_detection_auth_failure_aborts(settings) -> None:
    model = ScriptedModel([ApiError(403)])
    source = StatementSource(document="JVBERi0=", mime_type=PDF_MIME, size_bytes=_LARGE)
    result = extract_bank_statement(model, source, settings)
    assert not result.success
    assert result.error == AUTH_MESSAGE


def test_extract_specific_months(settings) -> None:
    model = ScriptedModel(default=_month_reply)
    february = partition_months(date(2024, 2, 1), date(2024, 2, 29))
    source = StatementSource(text=_STATEMENT_TEXT)
    result = extract_specific_months(model, source, february, settings)
    assert result.success
    assert len(model.requests) == 1
    assert "(February 2024)" in model.requests[0].prompt
    assert [t.merchant for t in result.transactions] == ["RENT", "SALARY"]


def test_extract_specific_months_requires_months(settings) -> None:
    source = StatementSource(text=_STATEMENT_TEXT)
    result = extract_specific_months(ScriptedModel(), source, [], settings)
    assert not result.success
    assert result.error == "No months requested"


# ---- Page images -----------------------------------------------------------------


def test_page_images_carry_balance_across_pages(settings) -> None:
    model = ScriptedModel(
        [
            payload(tx("2024-01-02", "A", 10, "debit", 500), opening=510),
            # No opening balance on page 2: the previous page's last balance seeds the chain.
            payload(tx("2024-01-05", "B", 10, "debit", 480)),
        ]
    )
    source = StatementSource(
        document="JVBERi0=", mime_type=PDF_MIME, size_bytes=_LARGE, page_images=("img1", "img2")
    )
    result = extract_bank_statement(model, source, settings)

    assert result.success, result.error
    assert result.metadata["pipeline"] == "page-images"
    assert [r.attachment.data for r in model.requests] == ["img1", "img2"]
    assert all(r.attachment.kind == "image" for r in model.requests)
    assert "page 2 of 2" in model.requests[1].prompt
    assert [t.amount for t in result.transactions] == [Decimal("10.00"), Decimal("20.00")]
    assert result.metadata["balanceVerification"]["autoCorrections"] == 1


def test_small_pdf_single_pass_sends_document(settings) -> None:
    model = ScriptedModel([payload(tx("2024-01-02", "A", 1))])
    source = StatementSource(document="JVBERi0=", mime_type=PDF_MIME, size_bytes=1_000)
    result = extract_bank_statement(model, source, settings)
    assert result.success
    request = model.requests[0]
    assert request.model == "strong-model"
    assert request.attachment is not None and request.attachment.media_type == PDF_MIME
    assert "--- BANK STATEMENT TEXT ---" not in request.prompt


# ---- Receipts, invoices and routing ------------------------------------------------


def test_receipt_is_always_a_debit(settings) -> None:
    model = ScriptedModel([payload(tx("2024-01-15", "Coffee Shop", 45.5, "credit", vatAmount=9.1))])
    result = extract_receipt(model, StatementSource(text="COFFEE SHOP\nTotal 45.50"), settings)
    assert result.success
    (receipt,) = result.transactions
    assert receipt.type is TransactionType.DEBIT
    assert receipt.vat_amount == Decimal("9.10")
    assert result.metadata["documentType"] == "receipt"
    assert result.metadata["pipeline"] == "single-document"
    assert "balanceVerification" not in result.metadata
    request = model.requests[0]
    assert request.model == "cheap-model"
    assert request.max_output_tokens == settings.single_document_max_output_tokens
    assert "--- RECEIPT CONTENT ---" in request.prompt


def test_image_receipt_is_attached(settings) -> None:
    model = ScriptedModel([payload(tx("2024-01-15", "Shop", 1))])
    extract_receipt(model, StatementSource(document="aW1n", mime_type="image/png"), settings)
    attachment = model.requests[0].attachment
    assert attachment is not None and attachment.kind == "image"
    assert attachment.media_type == "image/png"


@pytest.mark.parametrize(("invoice_type", "expected"), [("sales", "credit"), ("purchase", "debit")])
def test_invoice_direction(settings, invoice_type: str, expected: str) -> None:
    model = ScriptedModel([payload(tx("2024-01-15", "Client Ltd", 1200))])
    result = extract_invoice(model, StatementSource(text="INVOICE 42"), invoice_type, settings)
    assert result.transactions[0].type is TransactionType(expected)
    assert result.metadata["documentType"] == f"invoice_{invoice_type}"
    assert f"{invoice_type} invoice" in model.requests[0].prompt


def test_invoice_type_is_validated(settings) -> None:
    with pytest.raises(ValueError):
        extract_invoice(ScriptedModel(), StatementSource(text="x"), "refund", settings)


def test_extract_transactions_routes_by_document_type(settings) -> None:
    model = ScriptedModel([payload(tx("2024-01-15", "Supplier", 80, "credit"))])
    result = extract_transactions(model, "invoice_purchase", StatementSource(text="INV"), settings)
    assert result.transactions[0].type is TransactionType.DEBIT

    unknown = extract_transactions(ScriptedModel(), "payslip", StatementSource(text="x"), settings)
    assert not unknown.success
    assert unknown.error == "Unsupported document type: payslip"
