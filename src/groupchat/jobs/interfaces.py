"""Collaborator protocols consumed by the group chat job handler."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from groupchat.jobs.models import (
    ChatGroupMessageUpdate,
    ChatMessage,
    ChatModel,
    ChatRequest,
    ContextPolicy,
    QueueTaskStatus,
    QuotaUsedMeta,
    TaskResult,
)


class ModelRegistry(Protocol):
    def get_model(self, model_id: str) -> ChatModel | None:
        """Return the registered model, or None when unknown."""


class ContextPreparer(Protocol):
    def prepare(self, request: ChatRequest, policy: ContextPolicy) -> ChatRequest:
        """Bound the request history; raise on trimming failure."""


class TokenCounter(Protocol):
    def count_messages(self, messages: Sequence[ChatMessage], model: str) -> int:
        """Count prompt tokens for ``messages`` under ``model``."""


class CoinPricing(Protocol):
    def __call__(self, model: ChatModel, input_tokens: int, output_tokens: int) -> int:
        """Return the coin cost of one call."""


class FreeChatCounter(Protocol):
    def remaining(self, user_id: int, model_id: str) -> int:
        """Free requests left for the user on this model."""

    def record_usage(self, user_id: int, model_id: str) -> None:
        """Count one request against the user's free allowance."""


class MessageStore(Protocol):
    def update_chat_message(
        self,
        group_id: int,
        user_id: int,
        message_id: int,
        update: ChatGroupMessageUpdate,
    ) -> None:
        """Apply ``update`` to one message row; raise on failure."""


class QueueStatusStore(Protocol):
    def update_queue_task(self, task_id: str, status: QueueTaskStatus, result: TaskResult) -> None:
        """Record the job's terminal status; raise on failure."""


class QuotaLedger(Protocol):
    def consume(
        self,
        user_id: int,
        amount: int,
        meta: QuotaUsedMeta,
        *,
        job_id: str | None = None,
    ) -> None:
        """Permanently charge ``amount`` coins."""

    def release(self, user_id: int, amount: int) -> None:
        """Return ``amount`` of the user's frozen reservation."""
