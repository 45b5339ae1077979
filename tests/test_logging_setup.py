from __future__ import annotations

import io
import logging

import pytest

import statement_extraction.logging_setup as logging_mod


@pytest.fixture
def pkg_logger(monkeypatch: pytest.MonkeyPatch):
    logger = logging.getLogger(logging_mod.PACKAGE_LOGGER)
    saved = (list(logger.handlers), logger.level, logger.propagate)
    monkeypatch.setattr(logging_mod, "_configured", False)
    monkeypatch.delenv(logging_mod.LEVEL_ENV_VAR, raising=False)
    yield logger
    logger.handlers[:] = saved[0]
    logger.setLevel(saved[1])
    logger.propagate = saved[2]


def test_resolve_level() -> None:
    assert logging_mod.resolve_level(logging.DEBUG) == logging.DEBUG
    assert logging_mod.resolve_level("warning") == logging.WARNING
    assert logging_mod.resolve_level("15") == 15
    assert logging_mod.resolve_level("chatty") == logging.INFO


def test_resolve_level_reads_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(logging_mod.LEVEL_ENV_VAR, "ERROR")
    assert logging_mod.resolve_level() == logging.ERROR
    assert logging_mod.resolve_level("DEBUG") == logging.DEBUG


def test_unconfigured_package_is_silent(pkg_logger: logging.Logger) -> None:
    pkg_logger.handlers.clear()
    logging_mod.get_logger("statement_extraction.pipeline")
    assert [type(h) for h in pkg_logger.handlers] == [logging.NullHandler]


def test_configure_once_then_force(pkg_logger: logging.Logger) -> None:
    first = io.StringIO()
    logging_mod.configure_logging("DEBUG", fmt="%(name)s %(message)s", stream=first)
    logging_mod.get_logger("statement_extraction.invoker").debug("extract_unit:ok label=%s", "x")
    assert first.getvalue() == "statement_extraction.invoker extract_unit:ok label=x\n"
    assert pkg_logger.propagate is False

    ignored = io.StringIO()
    logging_mod.configure_logging("DEBUG", stream=ignored)
    assert len(pkg_logger.handlers) == 1

    second = io.StringIO()
    logging_mod.configure_logging("WARNING", fmt="%(message)s", stream=second, force=True)
    log = logging_mod.get_logger("statement_extraction.aggregate")
    log.info("hidden")
    log.warning("aggregate:balance_gap")
    assert second.getvalue() == "aggregate:balance_gap\n"
    assert ignored.getvalue() == ""
    assert len(pkg_logger.handlers) == 1
