"""Recover parseable JSON from truncated or fenced model output.

Public API:
    - :func:`repair_truncated_json`
    - :func:`parse_model_json`

The dominant failure mode is output cut off at the model's length limit in the
middle of a transaction object, e.g. ``...,"merchant":"Shop","amo``. Repair
keeps every complete array element before the cut and closes the open
brackets/braces so the document parses again.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .logging_setup import get_logger

EMPTY_DOCUMENT = '{"transactions":[]}'

_START_RE = re.compile(r'\{\s*"transactions"')
_FENCE_RE = re.compile(r"```(?:json|JSON)?")
_GREEDY_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
_DECODER = json.JSONDecoder()

_logger = get_logger("statement_extraction.json_repair")


class ScanState(Enum):
    NORMAL = "normal"
    IN_STRING = "in_string"
    ESCAPED = "escaped"


@dataclass(frozen=True, slots=True)
class BracketTally:
    """Unmatched openers found outside string literals."""

    open_braces: int
    open_brackets: int


def scan_brackets(text: str) -> BracketTally:
    """Count unmatched ``{`` and ``[`` in ``text``, ignoring string contents.

    A three-state scanner: ``NORMAL`` counts structural characters,
    ``IN_STRING`` ignores everything until the closing quote, and ``ESCAPED``
    consumes exactly one character after a backslash inside a string.
    Closers never drive a count below zero.
    """

    state = ScanState.NORMAL
    braces = 0
    brackets = 0
    for ch in text:
        if state is ScanState.ESCAPED:
            state = ScanState.IN_STRING
        elif state is ScanState.IN_STRING:
            if ch == "\\":
                state = ScanState.ESCAPED
            elif ch == '"':
                state = ScanState.NORMAL
        else:
            if ch == '"':
                state = ScanState.IN_STRING
            elif ch == "{":
                braces += 1
            elif ch == "}":
                braces = max(0, braces - 1)
            elif ch == "[":
                brackets += 1
            elif ch == "]":
                brackets = max(0, brackets - 1)
    return BracketTally(open_braces=braces, open_brackets=brackets)


def _strip_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def _locate_start(text: str) -> int:
    m = _START_RE.search(text)
    if m is not None:
        return m.start()
    return text.find("{")


def _parses(text: str) -> bool:
    try:
        json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return False
    return True


def repair_truncated_json(text: str) -> str:
    """Return a best-effort parseable JSON string; never raises.

    Steps:

    1. Locate the object start at ``{"transactions"`` (whitespace tolerant),
       falling back to the first ``{``. No ``{`` at all yields
       ``{"transactions":[]}``.
    2. Strip markdown code fences.
    3. Return the text unchanged when it already parses.
    4. When the array has no closing ``}]`` but a complete ``},`` element
       boundary exists, cut after that last ``}`` and drop the partial tail.
    5. Append the missing ``]`` then the missing ``}`` (arrays nested in the
       object close first).

    The result may still fail to parse (e.g. garbage inside an element); the
    caller treats that as a parse failure.
    """

    if not isinstance(text, str):
        return EMPTY_DOCUMENT

    cleaned = _strip_fences(text)
    start = _locate_start(cleaned)
    if start < 0:
        return EMPTY_DOCUMENT
    candidate = cleaned[start:].strip()

    if _parses(candidate):
        return candidate

    if "}]" not in candidate:
        cut = candidate.rfind("},")
        if cut != -1:
            dropped = len(candidate) - (cut + 1)
            candidate = candidate[: cut + 1]
            _logger.debug("json_repair:truncated_tail dropped_chars=%d", dropped)

    tally = scan_brackets(candidate)
    repaired = candidate + "]" * tally.open_brackets + "}" * tally.open_braces
    _logger.debug(
        "json_repair:closed open_brackets=%d open_braces=%d",
        tally.open_brackets,
        tally.open_braces,
    )
    return repaired


def parse_model_json(text: str | None) -> Mapping[str, Any] | None:
    """Decode the JSON object embedded in a model response, or ``None``.

    The greedy ``{...}`` span is tried first (covers prose before/after a
    complete object), then a decode that stops where the first object ends;
    on failure the text goes through :func:`repair_truncated_json`. Non-object
    JSON counts as a failure.
    """

    if not text:
        return None

    stripped = _strip_fences(text)
    m = _GREEDY_OBJECT_RE.search(stripped)
    if m is not None:
        try:
            decoded = json.loads(m.group(0))
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, Mapping):
            return decoded

    start = _locate_start(stripped)
    if start >= 0:
        # A complete object followed by prose that itself contains braces.
        try:
            decoded, _ = _DECODER.raw_decode(stripped, start)
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, Mapping):
            return decoded
    else:
        # Prose only (a refusal or an apology): nothing to repair.
        _logger.warning("json_repair:no_object chars=%d", len(text))
        return None

    repaired = repair_truncated_json(text)
    try:
        decoded = json.loads(repaired)
    except json.JSONDecodeError:
        _logger.warning("json_repair:unparseable chars=%d", len(text))
        return None
    if not isinstance(decoded, Mapping):
        return None
    return decoded


__all__ = [
    "EMPTY_DOCUMENT",
    "BracketTally",
    "ScanState",
    "parse_model_json",
    "repair_truncated_json",
    "scan_brackets",
]
