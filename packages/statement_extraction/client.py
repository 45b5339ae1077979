"""Model-inference interface and the OpenAI Responses API adapter.

The pipeline depends only on :class:`ModelClient`: a prompt plus an optional
document or image goes in, free-form text and a truncation flag come out.
Entry points receive the client as an argument; there is no shared instance.
No side effects occur at import time (no client creation, no environment
reads).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Protocol, TypeAlias

from openai import OpenAI

from .logging_setup import get_logger

_logger = get_logger("statement_extraction.client")

AttachmentKind: TypeAlias = Literal["document", "image"]


@dataclass(frozen=True, slots=True)
class Attachment:
    """Base64 payload sent alongside the prompt.

    ``kind="document"`` is a whole file (``application/pdf``); ``kind="image"``
    is one rendered page (``image/jpeg``, ``image/png``…).
    """

    kind: AttachmentKind
    data: str
    media_type: str


@dataclass(frozen=True, slots=True)
class ModelRequest:
    model: str
    prompt: str
    max_output_tokens: int
    attachment: Attachment | None = None


@dataclass(frozen=True, slots=True)
class ModelResponse:
    text: str
    truncated: bool = False


class ModelClient(Protocol):
    def complete(self, request: ModelRequest) -> ModelResponse: ...


def _create_client() -> OpenAI:
    return OpenAI()


def _response_text(resp: Any) -> str:
    """Prefer ``resp.output_text``; fall back to the first output content item."""

    text: str | None = getattr(resp, "output_text", None)
    if text:
        return text
    try:
        for item in getattr(resp, "output", None) or []:
            for content in getattr(item, "content", None) or []:
                txt_obj = getattr(content, "text", None)
                if isinstance(txt_obj, str):
                    return txt_obj
                # Some SDKs expose text as an object with a ``value`` string.
                maybe_val = getattr(txt_obj, "value", None)
                if isinstance(maybe_val, str):
                    return maybe_val
    except TypeError:
        return ""
    return ""


def _is_truncated(resp: Any) -> bool:
    if getattr(resp, "status", None) != "incomplete":
        return False
    details = getattr(resp, "incomplete_details", None)
    reason = getattr(details, "reason", None)
    if reason is None and isinstance(details, dict):
        reason = details.get("reason")
    return reason == "max_output_tokens"


def _content_parts(request: ModelRequest) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = []
    att = request.attachment
    if att is not None:
        data_url = f"data:{att.media_type};base64,{att.data}"
        if att.kind == "document":
            parts.append(
                {"type": "input_file", "filename": "document.pdf", "file_data": data_url}
            )
        else:
            parts.append({"type": "input_image", "image_url": data_url})
    parts.append({"type": "input_text", "text": request.prompt})
    return parts


class OpenAIModelClient:
    """:class:`ModelClient` backed by ``client.responses.create``.

    Parameters
    ----------
    client:
        Optional preconfigured ``openai.OpenAI`` instance. When omitted one is
        created lazily on the first call (reads ``OPENAI_API_KEY``).

    SDK exceptions propagate unchanged; the invoker classifies them by their
    ``status_code``.
    """

    def __init__(self, client: OpenAI | None = None) -> None:
        self._client = client

    def _get_client(self) -> OpenAI:
        if self._client is None:
            self._client = _create_client()
        return self._client

    def complete(self, request: ModelRequest) -> ModelResponse:
        resp = self._get_client().responses.create(
            model=request.model,
            input=[{"role": "user", "content": _content_parts(request)}],
            max_output_tokens=request.max_output_tokens,
        )
        truncated = _is_truncated(resp)
        text = _response_text(resp)
        _logger.debug(
            "client:response model=%s chars=%d truncated=%s",
            request.model,
            len(text),
            truncated,
        )
        return ModelResponse(text=text, truncated=truncated)


__all__ = [
    "Attachment",
    "AttachmentKind",
    "ModelClient",
    "ModelRequest",
    "ModelResponse",
    "OpenAIModelClient",
]
