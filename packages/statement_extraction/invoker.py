"""Model calls for one unit of work, with rate-limit retry.

Public API:
    - :func:`call_model` / :func:`call_with_retry` (tagged call outcomes)
    - :func:`extract_unit` (call → parse → normalize → verify → correct)
    - :func:`detect_statement_date_range`
    - :func:`user_error_message`

Call failures are never raised past this module as SDK exceptions: each call is
reduced to a :class:`CallOutcome` tagged ``ok``, ``rate_limited`` or
``fatal``, and the retry decision is a function of that tag alone. The one
exception used for control flow is :class:`TerminalModelError`, for failures
(bad credentials) that no fallback can fix.
"""

from __future__ import annotations

import dataclasses
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import StrEnum
from typing import Any

from . import prompting
from .balance_chain import verify_balance_chain
from .client import Attachment, ModelClient, ModelRequest, ModelResponse
from .config import ExtractionSettings, ModelTier
from .corrections import apply_balance_corrections
from .json_repair import parse_model_json
from .logging_setup import get_logger
from .models import (
    BalanceVerificationResult,
    CorrectionEntry,
    DateRange,
    ExtractedTransaction,
    MonthRange,
    TransactionType,
)
from .normalize import normalize_transactions, to_decimal, to_money

_logger = get_logger("statement_extraction.invoker")

_TERMINAL_STATUS_CODES = frozenset({401, 403})

RATE_LIMIT_MESSAGE = "Model API rate limit exceeded. Please wait a few minutes and try again."
AUTH_MESSAGE = "API authentication failed. Please check API key configuration."
BAD_REQUEST_MESSAGE = (
    "Invalid request to model API. The document may be corrupted or unsupported."
)
UNAVAILABLE_MESSAGE = "Model API is temporarily unavailable. Please try again later."
UNPARSEABLE_MESSAGE = "Model output could not be parsed as transaction JSON."


# ---------------------------------------------------------------------------
# Tagged call outcomes
# ---------------------------------------------------------------------------


class CallStatus(StrEnum):
    OK = "ok"
    RATE_LIMITED = "rate_limited"
    FATAL = "fatal"


@dataclass(frozen=True, slots=True)
class CallOutcome:
    """Result of one (possibly retried) model call.

    ``terminal`` marks a fatal outcome that must abort the whole extraction
    run rather than fall back to another tier (authentication failures).
    """

    status: CallStatus
    response: ModelResponse | None = None
    reason: str | None = None
    status_code: int | None = None
    terminal: bool = False
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.status is CallStatus.OK


class TerminalModelError(RuntimeError):
    """Raised when a failure makes every further model call pointless.

    ``message`` is the user-facing text for the failure.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


def _is_rate_limit(exc: BaseException, status_code: int | None) -> bool:
    if status_code == 429:
        return True
    code = getattr(exc, "code", None)
    if isinstance(code, str) and "rate_limit" in code:
        return True
    body = getattr(exc, "body", None)
    if isinstance(body, Mapping):
        err = body.get("error", body)
        if isinstance(err, Mapping) and "rate_limit" in str(err.get("type", "")):
            return True
    return False


def classify_exception(exc: BaseException) -> CallOutcome:
    """Map an exception raised by a model client onto a call outcome tag."""

    sc = getattr(exc, "status_code", None)
    status_code = sc if isinstance(sc, int) else None
    reason = f"{exc.__class__.__name__}: {exc}"
    if _is_rate_limit(exc, status_code):
        return CallOutcome(CallStatus.RATE_LIMITED, reason=reason, status_code=status_code)
    return CallOutcome(
        CallStatus.FATAL,
        reason=reason,
        status_code=status_code,
        terminal=status_code in _TERMINAL_STATUS_CODES,
    )


def call_model(client: ModelClient, request: ModelRequest) -> CallOutcome:
    """Issue a single call and return its tag; never raises for call failures."""

    try:
        response = client.complete(request)
    except Exception as e:  # noqa: BLE001 - every call failure becomes a tagged outcome
        return classify_exception(e)
    return CallOutcome(CallStatus.OK, response=response)


def should_retry(outcome: CallOutcome, attempt: int, max_attempts: int) -> bool:
    return outcome.status is CallStatus.RATE_LIMITED and attempt < max_attempts


def call_with_retry(
    client: ModelClient,
    request: ModelRequest,
    *,
    max_attempts: int = 3,
    base_delay: float = 30.0,
    label: str = "",
) -> CallOutcome:
    """Call the model, sleeping ``attempt * base_delay`` after each rate limit.

    Only ``rate_limited`` outcomes are retried; ``fatal`` outcomes return
    immediately. When attempts run out the last ``rate_limited`` outcome is
    returned as-is.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    attempt = 1
    while True:
        t0 = time.perf_counter()
        outcome = call_model(client, request)
        dt_ms = (time.perf_counter() - t0) * 1000.0
        if not should_retry(outcome, attempt, max_attempts):
            if not outcome.ok:
                _logger.error(
                    "call_with_retry:failed label=%s model=%s status=%s code=%s attempts=%d "
                    "latency_ms=%.2f reason=%s",
                    label,
                    request.model,
                    outcome.status.value,
                    outcome.status_code,
                    attempt,
                    dt_ms,
                    outcome.reason,
                )
            return dataclasses.replace(outcome, attempts=attempt)
        delay = attempt * base_delay
        _logger.warning(
            "call_with_retry:rate_limited label=%s model=%s attempt=%d wait_s=%.1f",
            label,
            request.model,
            attempt,
            delay,
        )
        if delay > 0:
            time.sleep(delay)
        attempt += 1


def user_error_message(outcome: CallOutcome) -> str:
    """Return the message shown to end users for a failed call."""

    if outcome.status is CallStatus.RATE_LIMITED:
        return RATE_LIMIT_MESSAGE
    sc = outcome.status_code
    if sc in _TERMINAL_STATUS_CODES:
        return AUTH_MESSAGE
    if sc == 400:
        return BAD_REQUEST_MESSAGE
    if sc is not None and 500 <= sc < 600:
        return UNAVAILABLE_MESSAGE
    return outcome.reason or "Unknown error occurred during extraction"


# ---------------------------------------------------------------------------
# Units of work
# ---------------------------------------------------------------------------


class UnitKind(StrEnum):
    DOCUMENT = "document"
    MONTH = "month"
    PAGE = "page"
    ROW_CHUNK = "row_chunk"


@dataclass(frozen=True, slots=True)
class WorkUnit:
    """One model call's scope.

    Attributes
    ----------
    month:
        Set for month-scoped units; the aggregator drops any transaction the
        model returns outside it.
    expected_rows:
        Exact row count for CSV row chunks; a different returned count is
        recorded as a mismatch.
    opening_balance_hint:
        Used as the chain's opening balance when the model reports none (the
        previous page's last balance for page units).
    forced_type:
        Direction forced on every transaction (receipts, invoices). Units with
        a forced type skip balance verification.
    """

    kind: UnitKind
    label: str
    prompt: str
    tier: ModelTier
    attachment: Attachment | None = None
    month: MonthRange | None = None
    expected_rows: int | None = None
    opening_balance_hint: Decimal | None = None
    forced_type: TransactionType | None = None
    max_output_tokens: int | None = None

    def with_tier(self, tier: ModelTier) -> WorkUnit:
        return dataclasses.replace(self, tier=tier)


class UnitStatus(StrEnum):
    OK = "ok"
    RATE_LIMITED = "rate_limited"
    FATAL = "fatal"
    UNPARSEABLE = "unparseable"
    SKIPPED = "skipped"


_FAILED_STATUSES = frozenset({UnitStatus.RATE_LIMITED, UnitStatus.FATAL, UnitStatus.UNPARSEABLE})


@dataclass(frozen=True, slots=True)
class ReportedVerification:
    """The model's own count/totals for what it extracted."""

    transaction_count: int | None
    total_debits: Decimal | None
    total_credits: Decimal | None
    closing_balance: Decimal | None

    @classmethod
    def from_payload(cls, raw: Any) -> ReportedVerification | None:
        if not isinstance(raw, Mapping):
            return None
        count = to_decimal(raw.get("transactionCount"))
        return cls(
            transaction_count=None if count is None else int(count),
            total_debits=to_money(raw.get("totalDebits")),
            total_credits=to_money(raw.get("totalCredits")),
            closing_balance=to_money(raw.get("closingBalance")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "transactionCount": self.transaction_count,
            "totalDebits": None if self.total_debits is None else f"{self.total_debits:.2f}",
            "totalCredits": None if self.total_credits is None else f"{self.total_credits:.2f}",
            "closingBalance": (
                None if self.closing_balance is None else f"{self.closing_balance:.2f}"
            ),
        }


@dataclass(frozen=True, slots=True)
class UnitOutcome:
    label: str
    kind: UnitKind
    status: UnitStatus
    tier: ModelTier | None = None
    month: MonthRange | None = None
    transactions: tuple[ExtractedTransaction, ...] = ()
    verification: BalanceVerificationResult | None = None
    corrections: tuple[CorrectionEntry, ...] = ()
    opening_balance: Decimal | None = None
    closing_balance: Decimal | None = None
    reported: ReportedVerification | None = None
    truncated: bool = False
    expected_rows: int | None = None
    returned_count: int | None = None
    error: str | None = None
    status_code: int | None = None
    terminal: bool = False
    attempts: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status is UnitStatus.OK

    @property
    def failed(self) -> bool:
        return self.status in _FAILED_STATUSES

    @property
    def row_mismatch(self) -> bool:
        return (
            self.expected_rows is not None
            and self.returned_count is not None
            and self.returned_count != self.expected_rows
        )

    @property
    def last_balance(self) -> Decimal | None:
        for tx in reversed(self.transactions):
            if tx.balance is not None:
                return tx.balance
        return None

    @property
    def ending_balance(self) -> Decimal | None:
        """Stated closing balance, else the last printed running balance."""

        return self.closing_balance if self.closing_balance is not None else self.last_balance

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "label": self.label,
            "kind": self.kind.value,
            "status": self.status.value,
            "tier": None if self.tier is None else self.tier.value,
            "count": len(self.transactions),
            "error": self.error,
            "truncated": self.truncated,
        }
        if self.expected_rows is not None:
            out["expectedRows"] = self.expected_rows
            out["returnedRows"] = self.returned_count
            out["rowMismatch"] = self.row_mismatch
        if self.reported is not None:
            out["reported"] = self.reported.to_dict()
        return out


def skipped_unit(unit: WorkUnit, reason: str) -> UnitOutcome:
    return UnitOutcome(
        label=unit.label, kind=unit.kind, status=UnitStatus.SKIPPED, month=unit.month, error=reason
    )


def _failed_outcome(unit: WorkUnit, call: CallOutcome) -> UnitOutcome:
    status = UnitStatus.RATE_LIMITED if call.status is CallStatus.RATE_LIMITED else UnitStatus.FATAL
    return UnitOutcome(
        label=unit.label,
        kind=unit.kind,
        status=status,
        tier=unit.tier,
        month=unit.month,
        error=user_error_message(call),
        status_code=call.status_code,
        terminal=call.terminal,
        attempts=call.attempts,
    )


def _sum_by_type(transactions: Sequence[ExtractedTransaction], tx_type: TransactionType) -> Decimal:
    return sum((t.amount for t in transactions if t.type is tx_type), Decimal("0.00"))


def _log_reported_vs_parsed(
    unit: WorkUnit, reported: ReportedVerification, transactions: Sequence[ExtractedTransaction]
) -> None:
    _logger.info(
        "extract_unit:self_check label=%s reported_count=%s parsed_count=%d "
        "reported_debits=%s parsed_debits=%s reported_credits=%s parsed_credits=%s",
        unit.label,
        reported.transaction_count,
        len(transactions),
        reported.total_debits,
        _sum_by_type(transactions, TransactionType.DEBIT),
        reported.total_credits,
        _sum_by_type(transactions, TransactionType.CREDIT),
    )


def extract_unit(
    client: ModelClient, unit: WorkUnit, settings: ExtractionSettings
) -> UnitOutcome:
    """Run one unit of work end to end.

    Steps: call (with rate-limit retry) → truncation warning → parse (with
    JSON repair) → normalize → balance-chain verification → corrections.
    Output that cannot be parsed yields an ``unparseable`` outcome with zero
    transactions; nothing here raises for model misbehaviour.
    """

    tier = settings.tier(unit.tier)
    request = ModelRequest(
        model=tier.model,
        prompt=unit.prompt,
        max_output_tokens=unit.max_output_tokens or tier.max_output_tokens,
        attachment=unit.attachment,
    )
    t0 = time.perf_counter()
    call = call_with_retry(
        client,
        request,
        max_attempts=settings.max_attempts,
        base_delay=tier.backoff_base_seconds,
        label=unit.label,
    )
    if not call.ok or call.response is None:
        return _failed_outcome(unit, call)

    response = call.response
    if response.truncated:
        _logger.warning(
            "extract_unit:truncated label=%s chars=%d max_output_tokens=%d",
            unit.label,
            len(response.text),
            request.max_output_tokens,
        )

    payload = parse_model_json(response.text)
    raw = None if payload is None else payload.get("transactions")
    if payload is None or not isinstance(raw, list):
        _logger.error(
            "extract_unit:unparseable label=%s chars=%d preview=%r",
            unit.label,
            len(response.text),
            response.text[:200],
        )
        return UnitOutcome(
            label=unit.label,
            kind=unit.kind,
            status=UnitStatus.UNPARSEABLE,
            tier=unit.tier,
            month=unit.month,
            truncated=response.truncated,
            error=UNPARSEABLE_MESSAGE,
            attempts=call.attempts,
        )

    transactions = normalize_transactions(raw, forced_type=unit.forced_type)
    opening = to_money(payload.get("openingBalance"))
    if opening is None:
        opening = unit.opening_balance_hint
    reported = ReportedVerification.from_payload(payload.get("verification"))
    closing = None if reported is None else reported.closing_balance
    if reported is not None:
        _log_reported_vs_parsed(unit, reported, transactions)

    if unit.expected_rows is not None and len(raw) != unit.expected_rows:
        _logger.warning(
            "extract_unit:row_mismatch label=%s expected=%d returned=%d",
            unit.label,
            unit.expected_rows,
            len(raw),
        )

    verification: BalanceVerificationResult | None = None
    corrections: tuple[CorrectionEntry, ...] = ()
    if unit.forced_type is None:
        verification = verify_balance_chain(
            transactions,
            opening,
            closing,
            unit.label,
            tolerance=settings.balance_tolerance,
            coverage_threshold=settings.coverage_threshold,
        )
        if verification.broken_links:
            outcome = apply_balance_corrections(
                transactions,
                verification,
                opening,
                large_correction_threshold=settings.large_correction_threshold,
            )
            transactions = outcome.corrected
            corrections = tuple(outcome.corrections)

    dt_ms = (time.perf_counter() - t0) * 1000.0
    _logger.info(
        "extract_unit:done label=%s kind=%s tier=%s count=%d coverage=%s broken=%s "
        "corrections=%d latency_ms=%.2f",
        unit.label,
        unit.kind.value,
        unit.tier.value,
        len(transactions),
        "n/a" if verification is None else f"{verification.coverage:.2f}",
        "n/a" if verification is None else verification.broken_count,
        len(corrections),
        dt_ms,
    )
    return UnitOutcome(
        label=unit.label,
        kind=unit.kind,
        status=UnitStatus.OK,
        tier=unit.tier,
        month=unit.month,
        transactions=tuple(transactions),
        verification=verification,
        corrections=corrections,
        opening_balance=opening,
        closing_balance=closing,
        reported=reported,
        truncated=response.truncated,
        expected_rows=unit.expected_rows,
        returned_count=len(raw) if unit.expected_rows is not None else None,
        attempts=call.attempts,
    )


# ---------------------------------------------------------------------------
# Date range detection
# ---------------------------------------------------------------------------


def _iso_date(raw: Any) -> date | None:
    if not isinstance(raw, str):
        return None
    try:
        return date.fromisoformat(raw.strip())
    except ValueError:
        return None


def detect_statement_date_range(
    client: ModelClient,
    document: Attachment,
    settings: ExtractionSettings,
) -> DateRange | None:
    """Ask the strong tier for the statement period of an attached document.

    Returns ``None`` when the call fails or the answer is unusable. Raises
    :class:`TerminalModelError` when the failure is terminal.
    """

    tier = settings.tier(ModelTier.STRONG)
    request = ModelRequest(
        model=tier.model,
        prompt=prompting.build_date_range_prompt(),
        max_output_tokens=settings.date_detection_max_output_tokens,
        attachment=document,
    )
    call = call_with_retry(
        client,
        request,
        max_attempts=settings.max_attempts,
        base_delay=tier.backoff_base_seconds,
        label="date-range",
    )
    if not call.ok or call.response is None:
        if call.terminal:
            raise TerminalModelError(user_error_message(call), call.status_code)
        return None

    payload = parse_model_json(call.response.text)
    if payload is None:
        return None
    start = _iso_date(payload.get("startDate"))
    end = _iso_date(payload.get("endDate"))
    if start is None or end is None or start > end:
        _logger.warning("detect_statement_date_range:unusable payload=%r", dict(payload))
        return None
    _logger.info(
        "detect_statement_date_range:detected start=%s end=%s",
        start.isoformat(),
        end.isoformat(),
    )
    return DateRange(start_date=start, end_date=end)


__all__ = [
    "AUTH_MESSAGE",
    "BAD_REQUEST_MESSAGE",
    "RATE_LIMIT_MESSAGE",
    "UNAVAILABLE_MESSAGE",
    "UNPARSEABLE_MESSAGE",
    "CallOutcome",
    "CallStatus",
    "ReportedVerification",
    "TerminalModelError",
    "UnitKind",
    "UnitOutcome",
    "UnitStatus",
    "WorkUnit",
    "call_model",
    "call_with_retry",
    "classify_exception",
    "detect_statement_date_range",
    "extract_unit",
    "should_retry",
    "skipped_unit",
    "user_error_message",
]
