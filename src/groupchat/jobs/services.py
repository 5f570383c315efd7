"""Application services around the group chat queue."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from uuid import uuid4

from groupchat.jobs.ledger import QuotaRepository
from groupchat.jobs.models import (
    GROUP_CHAT_TITLE,
    TASK_TYPE_GROUP_CHAT,
    ChatMessage,
    GroupChatPayload,
    MessageStatus,
)
from groupchat.jobs.repository import GroupChatRepository
from groupchat.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EnqueueGroupChat:
    """Request to queue one group chat completion."""

    group_id: int
    user_id: int
    model_id: str
    context_messages: tuple[ChatMessage, ...]
    freezed_coins: int = 0
    member_id: int = 0
    question_id: int = 0


class GroupChatService:
    """Reserves coins and queues group chat jobs."""

    def __init__(
        self,
        *,
        repository: GroupChatRepository,
        quota: QuotaRepository,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.quota = quota
        self.clock = clock

    def enqueue(self, request: EnqueueGroupChat) -> GroupChatPayload:
        """Freeze the reservation, create the pending reply and queue the job.

        If anything after the freeze fails the reservation is released before
        the error propagates.
        """

        if request.freezed_coins < 0:
            raise ValueError(f"freezed_coins must be >= 0, got {request.freezed_coins}.")
        if request.freezed_coins > 0:
            self.quota.freeze(request.user_id, request.freezed_coins)

        try:
            message = self.repository.create_chat_message(
                group_id=request.group_id,
                user_id=request.user_id,
                member_id=request.member_id or None,
                question_id=request.question_id or None,
                role="assistant",
                message="",
                status=MessageStatus.PENDING,
            )
            payload = GroupChatPayload(
                id=str(uuid4()),
                group_id=request.group_id,
                user_id=request.user_id,
                member_id=request.member_id,
                question_id=request.question_id,
                message_id=message.id,
                model_id=request.model_id,
                context_messages=request.context_messages,
                created_at=self.clock(),
                freezed_coins=request.freezed_coins,
            )
            self.repository.create_queue_task(
                task_id=payload.id,
                task_type=TASK_TYPE_GROUP_CHAT,
                title=GROUP_CHAT_TITLE,
                user_id=request.user_id,
                payload_json=payload.to_json(),
            )
        except Exception:
            if request.freezed_coins > 0:
                self.quota.release(request.user_id, request.freezed_coins)
            raise

        logger.info(
            "Queued group chat job %s for user %d (model=%s, frozen=%d)",
            payload.id,
            request.user_id,
            request.model_id,
            request.freezed_coins,
        )
        return payload


class FreeChatService:
    """Daily free request allowance per user and model."""

    def __init__(
        self,
        *,
        quota: QuotaRepository,
        daily_limits: Mapping[str, int],
        enabled: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.quota = quota
        self.daily_limits = dict(daily_limits)
        self.enabled = enabled
        self.clock = clock

    def daily_limit(self, model_id: str) -> int:
        if not self.enabled:
            return 0
        return max(0, self.daily_limits.get(model_id, 0))

    def remaining(self, user_id: int, model_id: str) -> int:
        limit = self.daily_limit(model_id)
        if limit == 0:
            return 0
        used = self.quota.free_chat_count(user_id, model_id, self.clock().date())
        return max(0, limit - used)

    def record_usage(self, user_id: int, model_id: str) -> None:
        if self.daily_limit(model_id) == 0:
            return
        self.quota.increment_free_chat(user_id, model_id, self.clock().date())
