"""Group chat job handler: staged execution under a compensation guard.

Each dequeued job holds a coin reservation taken at enqueue time. Whatever
happens while the job runs (stale payload, missing model, failed inference,
failed persistence, or an unexpected exception), the guard reports one terminal
status and returns the reservation to the ledger exactly once.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from types import TracebackType
from typing import Generic, TypeVar

from groupchat.jobs.backend import ChatBackend
from groupchat.jobs.interfaces import (
    CoinPricing,
    ContextPreparer,
    FreeChatCounter,
    MessageStore,
    ModelRegistry,
    QueueStatusStore,
    QuotaLedger,
    TokenCounter,
)
from groupchat.jobs.models import (
    ChatGroupMessageUpdate,
    ChatMessage,
    ChatModel,
    ChatRequest,
    ChatResponse,
    ContextPolicy,
    EmptyResult,
    ErrorResult,
    FailureClass,
    GroupChatPayload,
    JobOutcome,
    JobOutcomeStatus,
    MessageStatus,
    QueueTaskStatus,
    QuotaUsedMeta,
)
from groupchat.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(minutes=15)
QUOTA_REASON_GROUP_CHAT = "group_chat"

T = TypeVar("T")


@dataclass(slots=True)
class StageResult(Generic[T]):
    """Outcome of one pipeline stage."""

    ok: bool
    value: T | None = None
    failure_class: FailureClass | None = None
    error_summary: str | None = None

    @classmethod
    def success(cls, value: T) -> StageResult[T]:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, failure_class: FailureClass, error_summary: str) -> StageResult[T]:
        return cls(ok=False, failure_class=failure_class, error_summary=error_summary)

    def to_outcome(self) -> JobOutcome:
        if self.ok or self.failure_class is None or self.error_summary is None:
            raise RuntimeError("Only failed stages can be converted into a failed outcome.")
        return JobOutcome.failed(self.failure_class, self.error_summary)


@dataclass(slots=True)
class Consumption:
    """Token and coin accounting for one successful inference."""

    input_tokens: int
    output_tokens: int
    quota_consumed: int
    free_request: bool

    @property
    def token_consumed(self) -> int:
        return self.input_tokens + self.output_tokens


class CompensationGuard:
    """Scope that settles a job's reporting and reservation on every exit.

    On exit, in order:

    1. an exception escaping the block becomes an ``unexpected_crash`` failure
       (logged with traceback) and is suppressed;
    2. a failed outcome is written to the message store and the queue store,
       each independently and best-effort;
    3. a positive reservation is released to the ledger, unconditionally.

    ``BaseException`` subclasses (``SystemExit``, ``KeyboardInterrupt``) are
    reported as an ``interrupted`` crash and released like any other failure,
    then re-raised.
    """

    def __init__(
        self,
        *,
        payload: GroupChatPayload,
        messages: MessageStore,
        queue: QueueStatusStore,
        ledger: QuotaLedger,
    ) -> None:
        self.payload = payload
        self.messages = messages
        self.queue = queue
        self.ledger = ledger
        self.outcome: JobOutcome | None = None

    def settle(self, outcome: JobOutcome) -> None:
        if self.outcome is not None:
            raise RuntimeError(f"Job {self.payload.id} outcome is already settled.")
        self.outcome = outcome

    def __enter__(self) -> CompensationGuard:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> bool:
        suppress = False
        try:
            if isinstance(exc, Exception):
                logger.error(
                    "Group chat job %s crashed: %s",
                    self.payload.id,
                    exc,
                    exc_info=(exc_type, exc, traceback),
                )
                self.outcome = JobOutcome.failed(
                    FailureClass.UNEXPECTED_CRASH,
                    str(exc) or type(exc).__name__,
                )
                suppress = True
            elif exc is not None:
                logger.error(
                    "Group chat job %s interrupted by %s",
                    self.payload.id,
                    type(exc).__name__,
                )
                self.outcome = JobOutcome.failed(
                    FailureClass.UNEXPECTED_CRASH,
                    f"interrupted: {type(exc).__name__}",
                )
            elif self.outcome is None:
                self.outcome = JobOutcome.failed(
                    FailureClass.UNEXPECTED_CRASH,
                    "job finished without reporting an outcome",
                )

            if self.outcome is not None and self.outcome.status == JobOutcomeStatus.FAILED:
                self._report_failure(self.outcome)
        finally:
            self._release_reservation()
        return suppress

    def _report_failure(self, outcome: JobOutcome) -> None:
        summary = outcome.error_summary
        try:
            self.messages.update_chat_message(
                self.payload.group_id,
                self.payload.user_id,
                self.payload.message_id,
                ChatGroupMessageUpdate(
                    message=summary,
                    status=MessageStatus.FAILED,
                    error=summary,
                ),
            )
        except Exception as error:  # noqa: BLE001
            logger.error(
                "Group chat job %s (user %d): update chat message failed: %s",
                self.payload.id,
                self.payload.user_id,
                error,
            )

        try:
            self.queue.update_queue_task(
                self.payload.id,
                QueueTaskStatus.FAILED,
                ErrorResult(errors=tuple(outcome.errors)),
            )
        except Exception as error:  # noqa: BLE001
            logger.error(
                "Group chat job %s (user %d): update queue status failed: %s",
                self.payload.id,
                self.payload.user_id,
                error,
            )

    def _release_reservation(self) -> None:
        if self.payload.freezed_coins <= 0:
            return
        try:
            self.ledger.release(self.payload.user_id, self.payload.freezed_coins)
        except Exception as error:  # noqa: BLE001
            logger.error(
                "Group chat job %s: releasing %d frozen coins for user %d failed: %s",
                self.payload.id,
                self.payload.freezed_coins,
                self.payload.user_id,
                error,
            )


class GroupChatHandler:
    """Executes group chat jobs against injected collaborators."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: ChatBackend,
        models: ModelRegistry,
        context: ContextPreparer,
        tokens: TokenCounter,
        pricing: CoinPricing,
        free_chat: FreeChatCounter,
        messages: MessageStore,
        queue: QueueStatusStore,
        ledger: QuotaLedger,
        policy: ContextPolicy | None = None,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.backend = backend
        self.models = models
        self.context = context
        self.tokens = tokens
        self.pricing = pricing
        self.free_chat = free_chat
        self.messages = messages
        self.queue = queue
        self.ledger = ledger
        self.policy = policy or ContextPolicy()
        self.stale_after = stale_after
        self.clock = clock

    def handle_raw(self, data: str | bytes) -> JobOutcome:
        """Decode a delivered payload and handle it.

        Raises ``ValueError`` for undecodable payloads: no reservation can be
        identified, so nothing is reported or released.
        """

        return self.handle(GroupChatPayload.from_json(data))

    def handle(self, payload: GroupChatPayload) -> JobOutcome:
        guard = CompensationGuard(
            payload=payload,
            messages=self.messages,
            queue=self.queue,
            ledger=self.ledger,
        )
        with guard:
            if self.is_stale(payload):
                logger.info(
                    "Group chat job %s discarded: created at %s is older than %s",
                    payload.id,
                    payload.created_at.isoformat(),
                    self.stale_after,
                )
                guard.settle(JobOutcome.discarded())
            else:
                guard.settle(self._run_pipeline(payload))

        outcome = guard.outcome
        if outcome is None:
            raise RuntimeError(f"Job {payload.id} left the guard without an outcome.")
        return outcome

    def is_stale(self, payload: GroupChatPayload) -> bool:
        return self.clock() > payload.created_at + self.stale_after

    def _run_pipeline(self, payload: GroupChatPayload) -> JobOutcome:
        resolved = self._resolve_model(payload)
        if not resolved.ok or resolved.value is None:
            return self._failed(payload, resolved)
        model = resolved.value

        prepared = self._prepare_context(payload, model)
        if not prepared.ok or prepared.value is None:
            return self._failed(payload, prepared)
        request = prepared.value

        inferred = self._invoke(request)
        if not inferred.ok or inferred.value is None:
            return self._failed(payload, inferred)
        response = inferred.value

        consumption = self._account(payload, model, request, response)

        persisted = self._persist_result(payload, response, consumption)
        if not persisted.ok:
            return self._failed(payload, persisted)

        # Past this point the message is marked succeeded; nothing below may fail the job.
        self._consume_quota(payload, model, consumption)
        self._record_free_usage(payload, model)
        self._mark_succeeded(payload)

        logger.info(
            "Group chat job %s succeeded: tokens=%d quota=%d free=%s",
            payload.id,
            consumption.token_consumed,
            consumption.quota_consumed,
            consumption.free_request,
        )
        return JobOutcome(
            status=JobOutcomeStatus.SUCCEEDED,
            token_consumed=consumption.token_consumed,
            quota_consumed=consumption.quota_consumed,
        )

    def _resolve_model(self, payload: GroupChatPayload) -> StageResult[ChatModel]:
        try:
            model = self.models.get_model(payload.model_id)
        except Exception as error:  # noqa: BLE001
            return StageResult.failure(
                FailureClass.MODEL_UNAVAILABLE,
                f"model {payload.model_id} lookup failed: {error}",
            )
        if model is None or not model.enabled:
            return StageResult.failure(
                FailureClass.MODEL_UNAVAILABLE,
                f"model {payload.model_id} not found or disabled",
            )
        return StageResult.success(model)

    def _prepare_context(
        self,
        payload: GroupChatPayload,
        model: ChatModel,
    ) -> StageResult[ChatRequest]:
        request = ChatRequest(model=model.model_id, messages=payload.context_messages)
        try:
            prepared = self.context.prepare(request, self.policy)
        except Exception as error:  # noqa: BLE001
            return StageResult.failure(
                FailureClass.CONTEXT_PREPARATION_FAILED,
                f"fix chat request failed: {error}",
            )
        return StageResult.success(prepared)

    def _invoke(self, request: ChatRequest) -> StageResult[ChatResponse]:
        try:
            response = self.backend.chat(request)
        except Exception as error:  # noqa: BLE001
            return StageResult.failure(FailureClass.INFERENCE_FAILED, f"chat failed: {error}")
        if response.error_code:
            return StageResult.failure(
                FailureClass.INFERENCE_FAILED,
                f"chat failed: {response.error_code} {response.error}".rstrip(),
            )
        return StageResult.success(response)

    def _account(
        self,
        payload: GroupChatPayload,
        model: ChatModel,
        request: ChatRequest,
        response: ChatResponse,
    ) -> Consumption:
        input_tokens = self.tokens.count_messages(request.messages, request.model)
        output_tokens = self.tokens.count_messages(
            (ChatMessage(role="assistant", content=response.text),),
            request.model,
        )

        free_left = self._remaining_free_requests(payload, model)
        if free_left > 0:
            quota_consumed = 0
        else:
            quota_consumed = self.pricing(model, input_tokens, output_tokens)
        return Consumption(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            quota_consumed=quota_consumed,
            free_request=free_left > 0,
        )

    def _remaining_free_requests(self, payload: GroupChatPayload, model: ChatModel) -> int:
        try:
            return self.free_chat.remaining(payload.user_id, model.model_id)
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Group chat job %s: free chat lookup failed, charging normally: %s",
                payload.id,
                error,
            )
            return 0

    def _persist_result(
        self,
        payload: GroupChatPayload,
        response: ChatResponse,
        consumption: Consumption,
    ) -> StageResult[None]:
        try:
            self.messages.update_chat_message(
                payload.group_id,
                payload.user_id,
                payload.message_id,
                ChatGroupMessageUpdate(
                    message=response.text,
                    status=MessageStatus.SUCCEEDED,
                    token_consumed=consumption.token_consumed,
                    quota_consumed=consumption.quota_consumed,
                ),
            )
        except Exception as error:  # noqa: BLE001
            return StageResult.failure(
                FailureClass.PERSISTENCE_FAILED,
                f"update chat message failed: {error}",
            )
        return StageResult(ok=True)

    def _consume_quota(
        self,
        payload: GroupChatPayload,
        model: ChatModel,
        consumption: Consumption,
    ) -> None:
        if consumption.quota_consumed <= 0:
            return
        try:
            self.ledger.consume(
                payload.user_id,
                consumption.quota_consumed,
                QuotaUsedMeta(tag=QUOTA_REASON_GROUP_CHAT, model=model.model_id),
                job_id=payload.id,
            )
        except Exception as error:  # noqa: BLE001
            logger.error(
                "Group chat job %s: consuming %d coins for user %d failed: %s",
                payload.id,
                consumption.quota_consumed,
                payload.user_id,
                error,
            )

    def _record_free_usage(self, payload: GroupChatPayload, model: ChatModel) -> None:
        try:
            self.free_chat.record_usage(payload.user_id, model.model_id)
        except Exception as error:  # noqa: BLE001
            logger.error(
                "Group chat job %s (user %d): update free chat count failed: %s",
                payload.id,
                payload.user_id,
                error,
            )

    def _mark_succeeded(self, payload: GroupChatPayload) -> None:
        try:
            self.queue.update_queue_task(payload.id, QueueTaskStatus.SUCCEEDED, EmptyResult())
        except Exception as error:  # noqa: BLE001
            logger.error(
                "Group chat job %s (user %d): update queue status failed: %s",
                payload.id,
                payload.user_id,
                error,
            )

    def _failed(self, payload: GroupChatPayload, stage: StageResult[T]) -> JobOutcome:
        outcome = stage.to_outcome()
        logger.warning(
            "Group chat job %s failed (%s): %s",
            payload.id,
            _failure_class_value(outcome.failure_class),
            outcome.error_summary,
        )
        return outcome


def _failure_class_value(value: FailureClass | None) -> str:
    if value is None:
        return "unknown"
    return value.value
