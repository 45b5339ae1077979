"""Runtime settings for the extraction core.

All numeric thresholds used by the verifier, the correction engine and the
pipeline selector are empirically tuned; they are exposed here rather than
hard-coded so deployments can adjust them without touching the algorithms.

``ExtractionSettings()`` gives the defaults. ``ExtractionSettings.from_env()``
overlays any ``SE_*`` environment variables (e.g. ``SE_CHEAP_MODEL``,
``SE_BALANCE_TOLERANCE``, ``SE_CSV_ROWS_PER_CHUNK``). No environment reads
happen at import time.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

_ENV_PREFIX = "SE_"


class ModelTier(StrEnum):
    """Inference tiers: ``cheap`` for text/images, ``strong`` for whole documents."""

    CHEAP = "cheap"
    STRONG = "strong"


class TierSettings(BaseModel):
    """Per-tier model choice and pacing.

    ``backoff_base_seconds`` is multiplied by the attempt number after a rate
    limit; ``call_spacing_seconds`` is slept between consecutive units of work.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    model: str
    max_output_tokens: int = Field(gt=0)
    backoff_base_seconds: float = Field(ge=0)
    call_spacing_seconds: float = Field(ge=0)


class ExtractionSettings(BaseModel):
    """Every tunable of the extraction pipeline."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Balance verification / correction
    balance_tolerance: Decimal = Field(default=Decimal("0.015"), gt=0)
    large_correction_threshold: Decimal = Field(default=Decimal("10"), gt=0)
    coverage_threshold: float = Field(default=0.9, ge=0, le=1)

    # Pipeline selection
    single_pass_char_limit: int = Field(default=20_000, gt=0)
    min_text_chars: int = Field(default=100, ge=0)
    large_document_bytes: int = Field(default=100 * 1024, gt=0)
    csv_rows_per_chunk: int = Field(default=60, gt=0)
    csv_chunk_max_chars: int = Field(default=24_000, gt=0)

    # Model tiers
    cheap: TierSettings = TierSettings(
        model="gpt-5-mini",
        max_output_tokens=16_000,
        backoff_base_seconds=15.0,
        call_spacing_seconds=2.0,
    )
    strong: TierSettings = TierSettings(
        model="gpt-5",
        max_output_tokens=32_000,
        backoff_base_seconds=30.0,
        call_spacing_seconds=10.0,
    )
    document_warmup_seconds: float = Field(default=5.0, ge=0)
    single_document_max_output_tokens: int = Field(default=2_000, gt=0)
    date_detection_max_output_tokens: int = Field(default=1_000, gt=0)

    # Retry / aggregation
    max_attempts: int = Field(default=3, ge=1)
    deduplicate: bool = True

    def tier(self, tier: ModelTier) -> TierSettings:
        return self.cheap if tier is ModelTier.CHEAP else self.strong

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ExtractionSettings:
        """Return defaults overlaid with ``SE_*`` environment variables.

        Top-level fields map to ``SE_<FIELD>`` (upper-cased). Tier fields map to
        ``SE_CHEAP_<FIELD>`` / ``SE_STRONG_<FIELD>``; ``SE_CHEAP_MODEL`` and
        ``SE_STRONG_MODEL`` pick the model names.

        Raises ``ValueError`` naming the offending variable when a value cannot
        be validated.
        """

        env = os.environ if environ is None else environ
        overrides: dict[str, Any] = {}
        for name in cls.model_fields:
            if name in ("cheap", "strong"):
                continue
            raw = env.get(f"{_ENV_PREFIX}{name.upper()}")
            if raw is not None and raw.strip():
                overrides[name] = raw.strip()

        defaults = cls()
        for tier_name in ("cheap", "strong"):
            tier_overrides: dict[str, Any] = {}
            for name in TierSettings.model_fields:
                raw = env.get(f"{_ENV_PREFIX}{tier_name.upper()}_{name.upper()}")
                if raw is not None and raw.strip():
                    tier_overrides[name] = raw.strip()
            if tier_overrides:
                base = getattr(defaults, tier_name).model_dump()
                overrides[tier_name] = {**base, **tier_overrides}

        try:
            return cls.model_validate(overrides)
        except ValidationError as e:
            bad = ", ".join(
                _env_name_for(err.get("loc", ())) for err in e.errors()
            )
            raise ValueError(f"Invalid extraction settings in environment: {bad}") from e


def _env_name_for(loc: tuple[Any, ...]) -> str:
    return _ENV_PREFIX + "_".join(str(p).upper() for p in loc)


__all__ = ["ExtractionSettings", "ModelTier", "TierSettings"]
