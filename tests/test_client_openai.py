from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest

import statement_extraction.client as client_mod
from statement_extraction.client import (
    Attachment,
    ModelRequest,
    ModelResponse,
    OpenAIModelClient,
)


def _make_openai_stub(response_obj: Any, calls_out: list[dict[str, Any]]):
    """Return a minimal stub class to monkeypatch ``statement_extraction.client.OpenAI``."""

    class _Responses:
        def create(self, **kwargs):
            calls_out.append(kwargs)
            if isinstance(response_obj, BaseException):
                raise response_obj
            return response_obj

    class _Client:
        def __init__(self, *a: Any, **kw: Any) -> None:
            self.responses = _Responses()

    return _Client


def _run(monkeypatch: pytest.MonkeyPatch, response_obj: Any, request: ModelRequest):
    calls: list[dict[str, Any]] = []
    monkeypatch.setattr(client_mod, "OpenAI", _make_openai_stub(response_obj, calls))
    return OpenAIModelClient().complete(request), calls


def test_document_request_shape(monkeypatch: pytest.MonkeyPatch) -> None:
    request = ModelRequest(
        model="gpt-test",
        prompt="Extract",
        max_output_tokens=123,
        attachment=Attachment(kind="document", data="JVBERi0=", media_type="application/pdf"),
    )
    response, calls = _run(monkeypatch, SimpleNamespace(output_text='{"transactions":[]}'), request)

    assert response == ModelResponse(text='{"transactions":[]}', truncated=False)
    (kwargs,) = calls
    assert kwargs["model"] == "gpt-test"
    assert kwargs["max_output_tokens"] == 123
    (message,) = kwargs["input"]
    assert message["role"] == "user"
    file_part, text_part = message["content"]
    assert file_part == {
        "type": "input_file",
        "filename": "document.pdf",
        "file_data": "data:application/pdf;base64,JVBERi0=",
    }
    assert text_part == {"type": "input_text", "text": "Extract"}


def test_image_and_text_only_requests(monkeypatch: pytest.MonkeyPatch) -> None:
    image = ModelRequest(
        model="m",
        prompt="page",
        max_output_tokens=1,
        attachment=Attachment(kind="image", data="aW1n", media_type="image/jpeg"),
    )
    _, calls = _run(monkeypatch, SimpleNamespace(output_text="x"), image)
    parts = calls[0]["input"][0]["content"]
    assert parts[0] == {"type": "input_image", "image_url": "data:image/jpeg;base64,aW1n"}

    _, calls = _run(monkeypatch, SimpleNamespace(output_text="x"), ModelRequest("m", "t", 1))
    assert calls[0]["input"][0]["content"] == [{"type": "input_text", "text": "t"}]


def test_truncation_is_reported(monkeypatch: pytest.MonkeyPatch) -> None:
    resp = SimpleNamespace(
        output_text='{"transactions":[{"amo',
        status="incomplete",
        incomplete_details=SimpleNamespace(reason="max_output_tokens"),
    )
    response, _ = _run(monkeypatch, resp, ModelRequest("m", "p", 1))
    assert response.truncated

    other = SimpleNamespace(
        output_text="x", status="incomplete", incomplete_details={"reason": "content_filter"}
    )
    response, _ = _run(monkeypatch, other, ModelRequest("m", "p", 1))
    assert not response.truncated


def test_falls_back_to_output_content(monkeypatch: pytest.MonkeyPatch) -> None:
    resp = SimpleNamespace(
        output_text="",
        output=[SimpleNamespace(content=[SimpleNamespace(text=SimpleNamespace(value="hello"))])],
    )
    response, _ = _run(monkeypatch, resp, ModelRequest("m", "p", 1))
    assert response.text == "hello"


def test_sdk_errors_propagate(monkeypatch: pytest.MonkeyPatch) -> None:
    with pytest.raises(RuntimeError, match="quota"):
        _run(monkeypatch, RuntimeError("quota"), ModelRequest("m", "p", 1))


def test_injected_client_is_used_without_creating_one(monkeypatch: pytest.MonkeyPatch) -> None:
    def _fail() -> None:
        raise AssertionError("client should not be created")

    monkeypatch.setattr(client_mod, "_create_client", _fail)
    calls: list[dict[str, Any]] = []
    injected = _make_openai_stub(SimpleNamespace(output_text="ok"), calls)()
    response = OpenAIModelClient(client=injected).complete(ModelRequest("m", "p", 1))
    assert response.text == "ok"
    assert len(calls) == 1
