"""Pytest configuration shared by the whole suite.

Makes ``packages/`` importable without an install and keeps tests hermetic:
no test may sleep for real (retry backoff and call spacing are recorded
instead) and no ``SE_*`` variable from the developer's shell leaks into
:meth:`ExtractionSettings.from_env`.
"""

from __future__ import annotations

import os
import sys
import time
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parents[1]
_PKG_DIR = _ROOT / "packages"
# Ensure `packages/` precedes the repo root on sys.path so local packages resolve first.
sys.path[:0] = [p for p in [str(_PKG_DIR), str(_ROOT)] if p not in sys.path]

from statement_extraction.config import ExtractionSettings, TierSettings  # noqa: E402


@pytest.fixture(autouse=True)
def sleeps(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    """Record every ``time.sleep`` call instead of sleeping."""

    recorded: list[float] = []
    monkeypatch.setattr(time, "sleep", recorded.append)
    return recorded


@pytest.fixture(autouse=True)
def _clean_settings_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("SE_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings() -> ExtractionSettings:
    """Default thresholds with every pause and backoff set to zero."""

    return ExtractionSettings(
        cheap=TierSettings(
            model="cheap-model",
            max_output_tokens=1_000,
            backoff_base_seconds=0,
            call_spacing_seconds=0,
        ),
        strong=TierSettings(
            model="strong-model",
            max_output_tokens=2_000,
            backoff_base_seconds=0,
            call_spacing_seconds=0,
        ),
        document_warmup_seconds=0,
    )
