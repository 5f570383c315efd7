"""Persistent model registry, message store and job queue."""

from __future__ import annotations

import json
from pathlib import Path

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from groupchat.jobs.models import (
    ChatGroupMessageUpdate,
    ChatGroupMessageView,
    ChatModel,
    ChatModelWrite,
    MessageStatus,
    ModelStatus,
    QueueTaskStatus,
    QueueTaskView,
    TaskResult,
)
from groupchat.storage.alembic_runner import upgrade_head
from groupchat.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from groupchat.storage.sqlmodel_models import ChatGroupMessage, ChatModelRow, QueueTask


class GroupChatRepository:
    """Persistence facade for chat models, chat messages and queue tasks."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def upsert_model(self, payload: ChatModelWrite) -> ChatModel:
        """Create or replace a model registry entry."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(ChatModelRow, payload.model_id)
            if row is None:
                row = ChatModelRow(
                    model_id=payload.model_id,
                    name=payload.name,
                    created_at=now,
                    updated_at=now,
                )
            row.name = payload.name
            row.status = payload.status.value
            row.input_price_per_1k = payload.input_price_per_1k
            row.output_price_per_1k = payload.output_price_per_1k
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_model(row)

    def set_model_status(self, *, model_id: str, status: ModelStatus) -> bool:
        """Enable or disable a model. Returns False when the model is unknown."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ChatModelRow)
                .where(col(ChatModelRow.model_id) == model_id)
                .values(status=status.value, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()
            return result.rowcount == 1

    def get_model(self, model_id: str) -> ChatModel | None:
        with Session(self.engine) as session:
            row = session.get(ChatModelRow, model_id)
            return _to_model(row) if row is not None else None

    def list_models(self) -> list[ChatModel]:
        with Session(self.engine) as session:
            rows = session.exec(select(ChatModelRow).order_by(col(ChatModelRow.model_id))).all()
            return [_to_model(row) for row in rows]

    def create_chat_message(  # noqa: PLR0913
        self,
        *,
        group_id: int,
        user_id: int,
        role: str,
        message: str,
        status: MessageStatus,
        member_id: int | None = None,
        question_id: int | None = None,
    ) -> ChatGroupMessageView:
        """Insert a chat message row and return it with its assigned id."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = ChatGroupMessage(
                group_id=group_id,
                user_id=user_id,
                member_id=member_id,
                question_id=question_id,
                role=role,
                message=message,
                status=status.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_message_view(row)

    def update_chat_message(
        self,
        group_id: int,
        user_id: int,
        message_id: int,
        update: ChatGroupMessageUpdate,
    ) -> None:
        """Apply a result to one message row addressed by group, user and id."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ChatGroupMessage)
                .where(
                    col(ChatGroupMessage.id) == message_id,
                    col(ChatGroupMessage.group_id) == group_id,
                    col(ChatGroupMessage.user_id) == user_id,
                )
                .values(
                    message=update.message,
                    status=update.status.value,
                    error=update.error,
                    token_consumed=update.token_consumed,
                    quota_consumed=update.quota_consumed,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    f"Chat message {message_id} not found for group {group_id}, user {user_id}.",
                )
            session.commit()

    def get_chat_message(self, message_id: int) -> ChatGroupMessageView | None:
        with Session(self.engine) as session:
            row = session.get(ChatGroupMessage, message_id)
            return _to_message_view(row) if row is not None else None

    def list_chat_messages(self, *, group_id: int, limit: int = 50) -> list[ChatGroupMessageView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ChatGroupMessage)
                .where(ChatGroupMessage.group_id == group_id)
                .order_by(col(ChatGroupMessage.id).desc())
                .limit(limit),
            ).all()
            return [_to_message_view(row) for row in reversed(rows)]

    def create_queue_task(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        task_type: str,
        title: str,
        user_id: int,
        payload_json: str,
    ) -> QueueTaskView:
        """Create a pending queue record carrying the serialized payload."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = QueueTask(
                task_id=task_id,
                task_type=task_type,
                title=title,
                user_id=user_id,
                payload_json=payload_json,
                status=QueueTaskStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def claim_next_pending_task(self, *, worker_id: str) -> QueueTaskView | None:
        """Atomically mark one undelivered task as delivered to ``worker_id``.

        Delivery is recorded apart from the job status, which stays ``pending``
        until the handler reports a terminal state.
        """

        while True:
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueueTask)
                    .where(
                        QueueTask.status == QueueTaskStatus.PENDING.value,
                        col(QueueTask.delivered_at).is_(None),
                    )
                    .order_by(col(QueueTask.created_at).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                now = to_db_datetime(utc_now())
                result = session.exec(
                    sa_update(QueueTask)
                    .where(
                        col(QueueTask.task_id) == candidate.task_id,
                        col(QueueTask.delivered_at).is_(None),
                    )
                    .values(delivered_at=now, worker_id=worker_id, updated_at=now),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                session.commit()
                claimed = session.exec(
                    select(QueueTask).where(QueueTask.task_id == candidate.task_id),
                ).one()
                return _to_task_view(claimed)

    def update_queue_task(self, task_id: str, status: QueueTaskStatus, result: TaskResult) -> None:
        """Record a job's terminal status and result."""

        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(QueueTask)
                .where(col(QueueTask.task_id) == task_id)
                .values(
                    status=status.value,
                    result_json=json.dumps(result.to_dict(), ensure_ascii=False),
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                raise RuntimeError(f"Queue task not found: {task_id}")
            session.commit()

    def get_queue_task(self, task_id: str) -> QueueTaskView | None:
        with Session(self.engine) as session:
            row = session.get(QueueTask, task_id)
            return _to_task_view(row) if row is not None else None

    def list_queue_tasks(
        self,
        *,
        status: QueueTaskStatus | None = None,
        limit: int = 20,
    ) -> list[QueueTaskView]:
        with Session(self.engine) as session:
            statement = select(QueueTask)
            if status is not None:
                statement = statement.where(QueueTask.status == status.value)
            rows = session.exec(
                statement.order_by(col(QueueTask.created_at).desc()).limit(limit),
            ).all()
            return [_to_task_view(row) for row in rows]


def _to_model(row: ChatModelRow) -> ChatModel:
    return ChatModel(
        model_id=row.model_id,
        name=row.name,
        status=ModelStatus(row.status),
        input_price_per_1k=row.input_price_per_1k,
        output_price_per_1k=row.output_price_per_1k,
    )


def _to_message_view(row: ChatGroupMessage) -> ChatGroupMessageView:
    if row.id is None:
        raise RuntimeError("Chat message row has no id.")
    return ChatGroupMessageView(
        id=row.id,
        group_id=row.group_id,
        user_id=row.user_id,
        member_id=row.member_id,
        question_id=row.question_id,
        role=row.role,
        message=row.message,
        status=MessageStatus(row.status),
        error=row.error,
        token_consumed=row.token_consumed,
        quota_consumed=row.quota_consumed,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_task_view(row: QueueTask) -> QueueTaskView:
    result = json.loads(row.result_json) if row.result_json else {}
    return QueueTaskView(
        task_id=row.task_id,
        task_type=row.task_type,
        title=row.title,
        user_id=row.user_id,
        payload_json=row.payload_json,
        status=QueueTaskStatus(row.status),
        result=result if isinstance(result, dict) else {},
        delivered_at=(
            to_utc_aware_datetime(row.delivered_at) if row.delivered_at is not None else None
        ),
        worker_id=row.worker_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
