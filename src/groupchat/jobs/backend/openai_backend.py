"""HTTP backend for OpenAI-compatible chat completion services."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from groupchat.jobs.backend.base import BackendError
from groupchat.jobs.models import ChatRequest, ChatResponse

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_MAX_RETRIES = 2
ERROR_PREVIEW_CHARS = 300


class OpenAICompatibleBackend:
    """Calls ``POST {base_url}/chat/completions`` through an httpx client.

    Connection problems raise ``BackendError``. Any answer from the service that
    is not a usable completion (HTTP error, error body, malformed JSON) comes back
    as a ``ChatResponse`` with ``error_code`` set.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def chat(self, request: ChatRequest) -> ChatResponse:
        body: dict[str, Any] = {
            "model": request.model,
            "messages": [message.to_dict() for message in request.messages],
        }
        if request.max_tokens is not None:
            body["max_tokens"] = request.max_tokens

        try:
            response = self._client.post("/chat/completions", json=body)
        except httpx.TimeoutException as exc:
            logger.warning("Timeout calling chat completions for model %s", request.model)
            raise BackendError(f"timeout: {exc}") from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "HTTP error calling chat completions for model %s: %s",
                request.model,
                exc,
            )
            raise BackendError(str(exc)) from exc

        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.is_success:
            code, message = _error_fields(data)
            return ChatResponse(
                text="",
                error_code=code or f"http_{response.status_code}",
                error=message or response.text[:ERROR_PREVIEW_CHARS],
            )
        if not isinstance(data, dict):
            return ChatResponse(
                text="",
                error_code="invalid_response",
                error="response body is not a JSON object",
            )
        if data.get("error"):
            code, message = _error_fields(data)
            return ChatResponse(text="", error_code=code or "error", error=message)
        return _completion_text(data)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> OpenAICompatibleBackend:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _error_fields(data: object) -> tuple[str, str]:
    if not isinstance(data, dict):
        return "", ""
    error = data.get("error")
    if isinstance(error, dict):
        code = error.get("code") or error.get("type") or ""
        message = error.get("message") or ""
        return str(code), str(message)
    if isinstance(error, str):
        return "", error
    return "", ""


def _completion_text(data: dict[str, Any]) -> ChatResponse:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return ChatResponse(text="", error_code="invalid_response", error="no choices in response")
    first = choices[0]
    message = first.get("message") if isinstance(first, dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str):
        return ChatResponse(
            text="",
            error_code="invalid_response",
            error="first choice has no message content",
        )
    return ChatResponse(text=content)
