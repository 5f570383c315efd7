"""In-memory collaborators and payload builders shared by the tests."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from groupchat.jobs.handler import GroupChatHandler
from groupchat.jobs.models import (
    ChatGroupMessageUpdate,
    ChatMessage,
    ChatModel,
    ChatRequest,
    ChatResponse,
    ContextPolicy,
    GroupChatPayload,
    ModelStatus,
    QueueTaskStatus,
    QuotaUsedMeta,
    TaskResult,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


class FakeEncoding:
    """Whitespace tokenizer standing in for a tiktoken encoding."""

    def encode(self, text: str) -> list[int]:
        return [len(word) for word in text.split()]


class FakeBackend:
    def __init__(self, response: ChatResponse | None = None, error: BaseException | None = None):
        self.response = response or ChatResponse(text="hello")
        self.error = error
        self.requests: list[ChatRequest] = []
        self.closed = False

    def chat(self, request: ChatRequest) -> ChatResponse:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.response

    def close(self) -> None:
        self.closed = True


class FakeModels:
    def __init__(self, *models: ChatModel, error: Exception | None = None) -> None:
        self.models = {model.model_id: model for model in models}
        self.error = error
        self.lookups: list[str] = []

    def get_model(self, model_id: str) -> ChatModel | None:
        self.lookups.append(model_id)
        if self.error is not None:
            raise self.error
        return self.models.get(model_id)


class FakeContext:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[ChatRequest, ContextPolicy]] = []

    def prepare(self, request: ChatRequest, policy: ContextPolicy) -> ChatRequest:
        self.calls.append((request, policy))
        if self.error is not None:
            raise self.error
        return request


class FakeTokens:
    """Counts one token per message plus one per word of content."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error

    def count_messages(self, messages: Sequence[ChatMessage], model: str) -> int:
        if self.error is not None:
            raise self.error
        return sum(1 + len(message.content.split()) for message in messages)


class FakePricing:
    def __init__(self, cost: int = 30) -> None:
        self.cost = cost
        self.calls: list[tuple[str, int, int]] = []

    def __call__(self, model: ChatModel, input_tokens: int, output_tokens: int) -> int:
        self.calls.append((model.model_id, input_tokens, output_tokens))
        return self.cost


class FakeFreeChat:
    def __init__(
        self,
        remaining: int = 0,
        *,
        remaining_error: Exception | None = None,
        record_error: Exception | None = None,
    ) -> None:
        self.left = remaining
        self.remaining_error = remaining_error
        self.record_error = record_error
        self.recorded: list[tuple[int, str]] = []

    def remaining(self, user_id: int, model_id: str) -> int:
        if self.remaining_error is not None:
            raise self.remaining_error
        return self.left

    def record_usage(self, user_id: int, model_id: str) -> None:
        if self.record_error is not None:
            raise self.record_error
        self.recorded.append((user_id, model_id))
        self.left = max(0, self.left - 1)


class FakeMessages:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.updates: list[tuple[int, int, int, ChatGroupMessageUpdate]] = []

    def update_chat_message(
        self,
        group_id: int,
        user_id: int,
        message_id: int,
        update: ChatGroupMessageUpdate,
    ) -> None:
        self.updates.append((group_id, user_id, message_id, update))
        if self.error is not None:
            raise self.error


class FakeQueue:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.updates: list[tuple[str, QueueTaskStatus, TaskResult]] = []

    def update_queue_task(self, task_id: str, status: QueueTaskStatus, result: TaskResult) -> None:
        self.updates.append((task_id, status, result))
        if self.error is not None:
            raise self.error


class FakeLedger:
    def __init__(
        self,
        *,
        consume_error: Exception | None = None,
        release_error: Exception | None = None,
    ) -> None:
        self.consume_error = consume_error
        self.release_error = release_error
        self.consumed: list[tuple[int, int, QuotaUsedMeta, str | None]] = []
        self.released: list[tuple[int, int]] = []

    def consume(
        self,
        user_id: int,
        amount: int,
        meta: QuotaUsedMeta,
        *,
        job_id: str | None = None,
    ) -> None:
        self.consumed.append((user_id, amount, meta, job_id))
        if self.consume_error is not None:
            raise self.consume_error

    def release(self, user_id: int, amount: int) -> None:
        self.released.append((user_id, amount))
        if self.release_error is not None:
            raise self.release_error


@dataclass(slots=True)
class HandlerHarness:
    """Handler wired to fakes; fields are exposed for assertions."""

    backend: FakeBackend = field(default_factory=FakeBackend)
    models: FakeModels = field(
        default_factory=lambda: FakeModels(
            ChatModel(model_id="gpt-test", name="GPT Test", status=ModelStatus.ENABLED),
        ),
    )
    context: FakeContext = field(default_factory=FakeContext)
    tokens: FakeTokens = field(default_factory=FakeTokens)
    pricing: FakePricing = field(default_factory=FakePricing)
    free_chat: FakeFreeChat = field(default_factory=FakeFreeChat)
    messages: FakeMessages = field(default_factory=FakeMessages)
    queue: FakeQueue = field(default_factory=FakeQueue)
    ledger: FakeLedger = field(default_factory=FakeLedger)
    now: datetime = NOW

    def handler(self) -> GroupChatHandler:
        return GroupChatHandler(
            backend=self.backend,
            models=self.models,
            context=self.context,
            tokens=self.tokens,
            pricing=self.pricing,
            free_chat=self.free_chat,
            messages=self.messages,
            queue=self.queue,
            ledger=self.ledger,
            clock=lambda: self.now,
        )


def make_payload(**overrides: object) -> GroupChatPayload:
    values: dict[str, object] = {
        "id": "job-1",
        "group_id": 7,
        "user_id": 42,
        "member_id": 3,
        "question_id": 11,
        "message_id": 12,
        "model_id": "gpt-test",
        "context_messages": (
            ChatMessage(role="system", content="be brief"),
            ChatMessage(role="user", content="say hello"),
        ),
        "created_at": NOW,
        "freezed_coins": 100,
    }
    values.update(overrides)
    return GroupChatPayload(**values)  # type: ignore[arg-type]
