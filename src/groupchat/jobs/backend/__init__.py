"""Chat inference backend implementations."""

from __future__ import annotations

from groupchat.config import BackendSettings
from groupchat.jobs.backend.base import BackendError, ChatBackend
from groupchat.jobs.backend.echo_backend import EchoBackend
from groupchat.jobs.backend.openai_backend import OpenAICompatibleBackend


def build_backend(settings: BackendSettings) -> ChatBackend:
    """Instantiate the configured backend."""

    if settings.name == "echo":
        return EchoBackend()
    if settings.name == "openai":
        return OpenAICompatibleBackend(
            base_url=settings.base_url,
            api_key=settings.api_key,
            timeout_seconds=settings.timeout_seconds,
            max_retries=settings.max_retries,
        )
    raise ValueError(f"Unknown chat backend: {settings.name!r}")


__all__ = [
    "BackendError",
    "ChatBackend",
    "EchoBackend",
    "OpenAICompatibleBackend",
    "build_backend",
]
