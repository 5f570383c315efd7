"""Local deterministic backend for demos and integration tests."""

from __future__ import annotations

from groupchat.jobs.models import ChatRequest, ChatResponse


class EchoBackend:
    """Replies with the last message of the request."""

    def __init__(self, *, prefix: str = "echo: ") -> None:
        self.prefix = prefix

    def chat(self, request: ChatRequest) -> ChatResponse:
        last = request.messages[-1].content if request.messages else ""
        return ChatResponse(text=f"{self.prefix}{last.strip()}")

    def close(self) -> None:
        pass
