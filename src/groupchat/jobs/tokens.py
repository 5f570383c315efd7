"""Chat token counting backed by tiktoken."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

import tiktoken

from groupchat.jobs.models import ChatMessage

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "cl100k_base"
TOKENS_PER_MESSAGE = 3
REPLY_PRIMING_TOKENS = 3
FALLBACK_CHARS_PER_TOKEN = 4


class Encoding(Protocol):
    def encode(self, text: str) -> list[int]: ...


class TiktokenCounter:
    """Counts chat-format tokens; falls back to a character estimate instead of raising."""

    def __init__(
        self,
        *,
        encoding_name: str = DEFAULT_ENCODING,
        encoding: Encoding | None = None,
    ) -> None:
        self.encoding_name = encoding_name
        self._fixed_encoding = encoding
        self._encoders: dict[str, Encoding] = {}

    def count_messages(self, messages: Sequence[ChatMessage], model: str) -> int:
        total = 0
        for message in messages:
            total += TOKENS_PER_MESSAGE
            total += self.count_text(message.role, model)
            total += self.count_text(message.content, model)
        return total + REPLY_PRIMING_TOKENS

    def count_text(self, text: str, model: str) -> int:
        if not text:
            return 0
        try:
            return len(self._encoding_for(model).encode(text))
        except Exception as error:  # noqa: BLE001
            logger.warning("Failed to count tokens for model %s: %s", model, error)
            return len(text) // FALLBACK_CHARS_PER_TOKEN

    def _encoding_for(self, model: str) -> Encoding:
        if self._fixed_encoding is not None:
            return self._fixed_encoding
        cached = self._encoders.get(model)
        if cached is not None:
            return cached
        try:
            encoding: Encoding = tiktoken.encoding_for_model(model)
        except KeyError:
            encoding = tiktoken.get_encoding(self.encoding_name)
        self._encoders[model] = encoding
        return encoding
