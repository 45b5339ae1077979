"""Public interface for the ``statement_extraction`` package.

This module exposes the extraction entry points and the public models/types as
the stable import surface. There is no runtime logic here, only re-exports.
"""

from .aggregate import aggregate, deduplicate_transactions
from .balance_chain import verify_balance_chain
from .client import Attachment, ModelClient, ModelRequest, ModelResponse, OpenAIModelClient
from .config import ExtractionSettings, ModelTier, TierSettings
from .corrections import CorrectionOutcome, apply_balance_corrections
from .json_repair import parse_model_json, repair_truncated_json
from .models import (
    BalanceChainLink,
    BalanceVerificationResult,
    CorrectionAction,
    CorrectionEntry,
    DateRange,
    DocumentType,
    ExtractedTransaction,
    ExtractionResult,
    MonthRange,
    TransactionType,
)
from .months import partition_months
from .normalize import normalize_transactions
from .pipeline import (
    StatementSource,
    Strategy,
    extract_bank_statement,
    extract_invoice,
    extract_receipt,
    extract_specific_months,
    extract_transactions,
    select_strategy,
)

__all__ = [
    # Entry points
    "extract_transactions",
    "extract_bank_statement",
    "extract_receipt",
    "extract_invoice",
    "extract_specific_months",
    "select_strategy",
    # Building blocks
    "aggregate",
    "apply_balance_corrections",
    "deduplicate_transactions",
    "normalize_transactions",
    "parse_model_json",
    "partition_months",
    "repair_truncated_json",
    "verify_balance_chain",
    # Model client
    "Attachment",
    "ModelClient",
    "ModelRequest",
    "ModelResponse",
    "OpenAIModelClient",
    # Settings
    "ExtractionSettings",
    "ModelTier",
    "TierSettings",
    # Types
    "BalanceChainLink",
    "BalanceVerificationResult",
    "CorrectionAction",
    "CorrectionEntry",
    "CorrectionOutcome",
    "DateRange",
    "DocumentType",
    "ExtractedTransaction",
    "ExtractionResult",
    "MonthRange",
    "StatementSource",
    "Strategy",
    "TransactionType",
]
