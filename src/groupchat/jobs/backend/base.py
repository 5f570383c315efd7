"""Backend interface for chat inference."""

from __future__ import annotations

from typing import Protocol

from groupchat.jobs.models import ChatRequest, ChatResponse


class BackendError(RuntimeError):
    """Raised when the inference service cannot be reached or answered garbage."""


class ChatBackend(Protocol):
    """Protocol implemented by inference backends."""

    def chat(self, request: ChatRequest) -> ChatResponse:
        """Run one completion; in-band service errors go into ``error_code``."""

    def close(self) -> None:
        """Release connections held by the backend."""
