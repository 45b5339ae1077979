"""Logging for the ``statement_extraction`` package.

Only entry points configure output. Library modules take their logger from
:func:`get_logger` (``get_logger("statement_extraction.invoker")``) and never
attach handlers themselves; until :func:`configure_logging` runs, the package
logger carries a ``NullHandler`` and stays silent.

Messages are short ``event key=value`` lines, e.g.
``extract_unit:retry label=January 2024 attempt=2 delay=30.0``.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import IO

PACKAGE_LOGGER = "statement_extraction"
LEVEL_ENV_VAR = "STATEMENT_EXTRACTION_LOG_LEVEL"
DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_configured = False


def resolve_level(level: int | str | None = None) -> int:
    """Turn ``level`` (or, when ``None``, the environment) into a level number.

    Accepts ints, numeric strings and level names in any case. Anything
    unrecognised resolves to ``INFO``.
    """

    if level is None:
        level = os.getenv(LEVEL_ENV_VAR)
    if isinstance(level, int):
        return level
    if not level:
        return logging.INFO
    name = level.strip().upper()
    if name.isdigit():
        return int(name)
    value = logging.getLevelNamesMapping().get(name)
    return value if value is not None else logging.INFO


def configure_logging(
    level: int | str | None = None,
    *,
    fmt: str | None = None,
    stream: IO[str] | None = None,
    force: bool = False,
) -> logging.Logger:
    """Attach one ``StreamHandler`` to the package logger.

    Parameters
    ----------
    level:
        Level number or name. ``None`` reads ``STATEMENT_EXTRACTION_LOG_LEVEL``
        and falls back to ``INFO``.
    fmt:
        Format string, :data:`DEFAULT_FORMAT` when omitted.
    stream:
        Destination, ``sys.stderr`` when omitted (stdout is kept free for the
        CLI's JSON output).
    force:
        Replace an earlier configuration instead of keeping it.

    Returns the package logger. Calls after the first are no-ops unless
    ``force`` is set.
    """

    global _configured
    logger = logging.getLogger(PACKAGE_LOGGER)
    if _configured and not force:
        return logger

    for existing in list(logger.handlers):
        logger.removeHandler(existing)

    resolved = resolve_level(level)
    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(logging.Formatter(fmt or DEFAULT_FORMAT))
    handler.setLevel(resolved)
    logger.addHandler(handler)
    logger.setLevel(resolved)
    # The host's root handlers would print every line a second time.
    logger.propagate = False

    _configured = True
    return logger


def get_logger(name: str) -> logging.Logger:
    """Logger for ``name``; silences the package until it is configured."""

    package = logging.getLogger(PACKAGE_LOGGER)
    if not _configured and not package.handlers:
        package.addHandler(logging.NullHandler())
    return logging.getLogger(name)


__all__ = [
    "DEFAULT_FORMAT",
    "LEVEL_ENV_VAR",
    "PACKAGE_LOGGER",
    "configure_logging",
    "get_logger",
    "resolve_level",
]
