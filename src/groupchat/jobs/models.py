"""Domain models for group chat jobs, stores and ledger."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from groupchat.storage.common import from_iso, to_utc_aware_datetime

TASK_TYPE_GROUP_CHAT = "group_chat"
GROUP_CHAT_TITLE = "Group chat"

_EPOCH_ZERO = datetime(1, 1, 1, tzinfo=UTC)


class QueueTaskStatus(str, Enum):
    """Job-status store states."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class MessageStatus(str, Enum):
    """Message store states, written in lockstep with the queue status."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ModelStatus(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"


class FailureClass(str, Enum):
    """Normalized reasons a job stops before completion."""

    STALE = "stale"
    MODEL_UNAVAILABLE = "model_unavailable"
    CONTEXT_PREPARATION_FAILED = "context_preparation_failed"
    INFERENCE_FAILED = "inference_failed"
    PERSISTENCE_FAILED = "persistence_failed"
    UNEXPECTED_CRASH = "unexpected_crash"


class JobOutcomeStatus(str, Enum):
    """Terminal job states reported by the handler."""

    DISCARDED = "discarded"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ChatMessage:
    """One role-tagged message of the prompt history."""

    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, raw: object) -> ChatMessage:
        if not isinstance(raw, dict):
            raise ValueError(f"Context message must be an object, got {type(raw).__name__}.")
        role = raw.get("role", "")
        content = raw.get("content", "")
        if not isinstance(role, str) or not isinstance(content, str):
            raise ValueError("Context message role/content must be strings.")
        return cls(role=role, content=content)


@dataclass(frozen=True, slots=True)
class GroupChatPayload:
    """Immutable job envelope decoded from a delivered queue message.

    Integer routing fields identify rows in the message store. ``freezed_coins``
    is the reservation already held against the user's balance; it is the only
    field that may legitimately be zero for a well-formed job.
    """

    id: str
    group_id: int
    user_id: int
    member_id: int
    question_id: int
    message_id: int
    model_id: str
    context_messages: tuple[ChatMessage, ...]
    created_at: datetime
    freezed_coins: int = 0

    def __post_init__(self) -> None:
        if self.freezed_coins < 0:
            raise ValueError(f"freezed_coins must be >= 0, got {self.freezed_coins}.")
        # Naive timestamps are UTC.
        object.__setattr__(self, "created_at", to_utc_aware_datetime(self.created_at))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the wire shape; zero-valued fields are omitted."""

        data: dict[str, Any] = {
            "id": self.id,
            "group_id": self.group_id,
            "user_id": self.user_id,
            "member_id": self.member_id,
            "question_id": self.question_id,
            "message_id": self.message_id,
            "model_id": self.model_id,
            "context_messages": [message.to_dict() for message in self.context_messages],
            "created_at": self.created_at.isoformat(),
            "freezed_coins": self.freezed_coins,
        }
        return {key: value for key, value in data.items() if value not in ("", 0, [])}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> GroupChatPayload:
        """Build an envelope from decoded JSON; absent fields take zero values."""

        messages_raw = raw.get("context_messages") or []
        if not isinstance(messages_raw, list):
            raise ValueError("context_messages must be a list.")
        created_raw = raw.get("created_at")
        return cls(
            id=_as_str(raw, "id"),
            group_id=_as_int(raw, "group_id"),
            user_id=_as_int(raw, "user_id"),
            member_id=_as_int(raw, "member_id"),
            question_id=_as_int(raw, "question_id"),
            message_id=_as_int(raw, "message_id"),
            model_id=_as_str(raw, "model_id"),
            context_messages=tuple(ChatMessage.from_dict(item) for item in messages_raw),
            created_at=_parse_created_at(created_raw),
            freezed_coins=_as_int(raw, "freezed_coins"),
        )

    @classmethod
    def from_json(cls, data: str | bytes) -> GroupChatPayload:
        try:
            raw = json.loads(data)
        except json.JSONDecodeError as error:
            raise ValueError(f"Invalid group chat payload JSON: {error}") from error
        if not isinstance(raw, dict):
            raise ValueError("Group chat payload must be a JSON object.")
        return cls.from_dict(raw)


@dataclass(frozen=True, slots=True)
class ChatModel:
    """Registered inference model with per-1K-token coin prices."""

    model_id: str
    name: str
    status: ModelStatus
    input_price_per_1k: float = 0.0
    output_price_per_1k: float = 0.0

    @property
    def enabled(self) -> bool:
        return self.status == ModelStatus.ENABLED


@dataclass(slots=True)
class ChatModelWrite:
    """Payload for creating/updating a registry entry."""

    model_id: str
    name: str
    input_price_per_1k: float = 0.0
    output_price_per_1k: float = 0.0
    status: ModelStatus = ModelStatus.ENABLED


@dataclass(frozen=True, slots=True)
class ContextPolicy:
    """Context window bounds handed to the context preparer."""

    max_turns: int = 5
    max_tokens: int = 1024 * 200
    target_tokens: int = 2000


@dataclass(frozen=True, slots=True)
class ChatRequest:
    """Request sent to an inference backend."""

    model: str
    messages: tuple[ChatMessage, ...]
    max_tokens: int | None = None


@dataclass(slots=True)
class ChatResponse:
    """Backend reply. A non-empty ``error_code`` is an in-band failure."""

    text: str
    error_code: str = ""
    error: str = ""


@dataclass(slots=True)
class ChatGroupMessageUpdate:
    """Message store update for a success or a failure."""

    message: str
    status: MessageStatus
    error: str | None = None
    token_consumed: int = 0
    quota_consumed: int = 0


@dataclass(frozen=True, slots=True)
class EmptyResult:
    """Queue result marker for succeeded jobs."""

    def to_dict(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True, slots=True)
class ErrorResult:
    """Queue result for failed jobs."""

    errors: tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.errors:
            raise ValueError("ErrorResult requires at least one error.")

    def to_dict(self) -> dict[str, Any]:
        return {"errors": list(self.errors)}


TaskResult = EmptyResult | ErrorResult


@dataclass(frozen=True, slots=True)
class QuotaUsedMeta:
    """Reason tag attached to a ledger consume."""

    tag: str
    model: str


@dataclass(slots=True)
class JobOutcome:
    """Terminal outcome of one handled job."""

    status: JobOutcomeStatus
    failure_class: FailureClass | None = None
    errors: list[str] = field(default_factory=list)
    token_consumed: int = 0
    quota_consumed: int = 0

    @property
    def error_summary(self) -> str:
        return "; ".join(self.errors)

    @classmethod
    def discarded(cls) -> JobOutcome:
        return cls(status=JobOutcomeStatus.DISCARDED, failure_class=FailureClass.STALE)

    @classmethod
    def failed(cls, failure_class: FailureClass, error_summary: str) -> JobOutcome:
        return cls(
            status=JobOutcomeStatus.FAILED,
            failure_class=failure_class,
            errors=[error_summary],
        )


@dataclass(slots=True)
class UserQuotaView:
    user_id: int
    balance: int
    frozen: int
    updated_at: datetime

    @property
    def available(self) -> int:
        return self.balance - self.frozen


@dataclass(slots=True)
class QuotaUsageView:
    id: int
    user_id: int
    amount: int
    reason: str
    model: str | None
    job_id: str | None
    created_at: datetime


@dataclass(slots=True)
class ChatGroupMessageView:
    id: int
    group_id: int
    user_id: int
    member_id: int | None
    question_id: int | None
    role: str
    message: str
    status: MessageStatus
    error: str | None
    token_consumed: int
    quota_consumed: int
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class QueueTaskView:
    task_id: str
    task_type: str
    title: str
    user_id: int
    payload_json: str
    status: QueueTaskStatus
    result: dict[str, Any]
    delivered_at: datetime | None
    worker_id: str | None
    created_at: datetime
    updated_at: datetime


def _as_int(raw: dict[str, Any], key: str) -> int:
    value = raw.get(key, 0)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer, got {value!r}.")
    return value


def _as_str(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string, got {value!r}.")
    return value


def _parse_created_at(value: object) -> datetime:
    # A missing timestamp decodes to the zero time, which is always stale.
    if value is None or value == "":
        return _EPOCH_ZERO
    if not isinstance(value, str):
        raise ValueError(f"created_at must be an ISO timestamp, got {value!r}.")
    try:
        return from_iso(value)
    except ValueError as error:
        raise ValueError(f"created_at is not a valid ISO timestamp: {value!r}") from error
