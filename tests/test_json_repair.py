from __future__ import annotations

import json

import pytest

from statement_extraction.json_repair import (
    EMPTY_DOCUMENT,
    parse_model_json,
    repair_truncated_json,
    scan_brackets,
)


def test_truncated_mid_element_keeps_complete_elements() -> None:
    text = (
        '{"transactions":[{"date":"2024-01-01","amount":1},'
        '{"date":"2024-01-02","amount":2},{"date":"2024-01-03","amo'
    )
    repaired = repair_truncated_json(text)
    doc = json.loads(repaired)
    assert [t["amount"] for t in doc["transactions"]] == [1, 2]


def test_valid_json_is_returned_unchanged() -> None:
    text = '{"transactions": [{"amount": 1}], "openingBalance": 10}'
    assert repair_truncated_json(text) == text


def test_fences_and_preamble_are_stripped() -> None:
    text = 'Sure, here it is:\n```json\n{"transactions":[{"amount":3}]\n'
    doc = json.loads(repair_truncated_json(text))
    assert doc == {"transactions": [{"amount": 3}]}


def test_start_prefers_transactions_object() -> None:
    text = 'note {not json} then { "transactions": [{"amount": 4}'
    doc = json.loads(repair_truncated_json(text))
    assert doc == {"transactions": [{"amount": 4}]}


def test_no_brace_yields_empty_document() -> None:
    assert repair_truncated_json("no json here") == EMPTY_DOCUMENT


def test_brackets_inside_strings_are_ignored() -> None:
    text = '{"transactions":[{"merchant":"A {weird} [name] \\"quoted\\"","amount":1}'
    doc = json.loads(repair_truncated_json(text))
    assert doc["transactions"][0]["merchant"] == 'A {weird} [name] "quoted"'


@pytest.mark.parametrize(
    ("text", "braces", "brackets"),
    [
        ('{"a":[1,2', 1, 1),
        ('{"a":"}]"', 1, 0),
        ('{"a":"\\"[", "b":[{', 2, 1),
        ("}}]]", 0, 0),
    ],
)
def test_scan_brackets(text: str, braces: int, brackets: int) -> None:
    tally = scan_brackets(text)
    assert (tally.open_braces, tally.open_brackets) == (braces, brackets)


def test_parse_model_json_handles_prose_around_object() -> None:
    doc = parse_model_json('Result:\n{"transactions": [], "openingBalance": 5}\nDone.')
    assert doc == {"transactions": [], "openingBalance": 5}


def test_parse_model_json_repairs_truncation() -> None:
    doc = parse_model_json('```json\n{"transactions":[{"amount":1},{"amount":')
    assert doc is not None
    assert doc["transactions"] == [{"amount": 1}]


@pytest.mark.parametrize("text", ["", None, "I could not read this document.", "[1, 2, 3]"])
def test_parse_model_json_failures_return_none(text) -> None:
    assert parse_model_json(text) is None


def test_parse_model_json_unrepairable_returns_none() -> None:
    assert parse_model_json('{"transactions": [{"amount": 1,, }') is None


@pytest.mark.parametrize(
    "text",
    [
        '{"transactions":[{"amount":1}]}\nNote: values in {GBP}.',
        'Amounts in {GBP} below.\n{"transactions": [{"amount": 1}]}\nSee {notes}.',
    ],
)
def test_parse_model_json_ignores_braces_in_trailing_prose(text: str) -> None:
    assert parse_model_json(text) == {"transactions": [{"amount": 1}]}
