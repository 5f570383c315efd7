"""Controllers for group chat CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from functools import partial
from pathlib import Path

from groupchat.config import Settings
from groupchat.jobs.backend import ChatBackend, build_backend
from groupchat.jobs.context_window import ContextWindowPreparer
from groupchat.jobs.handler import GroupChatHandler
from groupchat.jobs.ledger import QuotaRepository
from groupchat.jobs.models import (
    ChatMessage,
    ChatModelWrite,
    GroupChatPayload,
    ModelStatus,
    QueueTaskStatus,
)
from groupchat.jobs.pricing import text_model_coins
from groupchat.jobs.repository import GroupChatRepository
from groupchat.jobs.services import EnqueueGroupChat, FreeChatService, GroupChatService
from groupchat.jobs.tokens import TiktokenCounter
from groupchat.jobs.worker import GroupChatWorker


@dataclass(slots=True)
class DbInitCommand:
    """CLI input for schema initialization."""

    db_path: Path | None


@dataclass(slots=True)
class ModelAddCommand:
    """CLI input for model registration."""

    db_path: Path | None
    model_id: str
    name: str | None
    input_price_per_1k: float
    output_price_per_1k: float


@dataclass(slots=True)
class ModelStatusCommand:
    """CLI input for enabling/disabling a model."""

    db_path: Path | None
    model_id: str
    status: ModelStatus


@dataclass(slots=True)
class ModelListCommand:
    db_path: Path | None


@dataclass(slots=True)
class QuotaGrantCommand:
    """CLI input for crediting coins."""

    db_path: Path | None
    user_id: int
    amount: int


@dataclass(slots=True)
class QuotaShowCommand:
    """CLI input for balance and usage report."""

    db_path: Path | None
    user_id: int
    limit: int


@dataclass(slots=True)
class ChatEnqueueCommand:
    """CLI input for demo job enqueue."""

    db_path: Path | None
    group_id: int
    user_id: int
    model_id: str
    prompt: str
    system_prompt: str | None
    freezed_coins: int


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None = None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for queue listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectTaskCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    task_id: str


class GroupChatCliController:
    """Coordinates registry, ledger, queue and worker CLI operations."""

    def init_db(self, command: DbInitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings):
            pass
        return [f"Database ready: {settings.db_path}"]

    def add_model(self, command: ModelAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as (repository, _):
            model = repository.upsert_model(
                ChatModelWrite(
                    model_id=command.model_id,
                    name=command.name or command.model_id,
                    input_price_per_1k=command.input_price_per_1k,
                    output_price_per_1k=command.output_price_per_1k,
                ),
            )
        return [
            f"Model saved: model_id={model.model_id} status={model.status.value} "
            f"input_per_1k={model.input_price_per_1k} output_per_1k={model.output_price_per_1k}",
        ]

    def set_model_status(self, command: ModelStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as (repository, _):
            changed = repository.set_model_status(
                model_id=command.model_id,
                status=command.status,
            )
        if not changed:
            return [f"Model not found: {command.model_id}"]
        return [f"Model {command.model_id} is now {command.status.value}"]

    def list_models(self, command: ModelListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as (repository, _):
            models = repository.list_models()

        lines = [f"Models: {len(models)}"]
        for model in models:
            free_limit = settings.free_chat.daily_limits.get(model.model_id, 0)
            lines.append(
                f"  {model.model_id} name={model.name} status={model.status.value} "
                f"input_per_1k={model.input_price_per_1k} "
                f"output_per_1k={model.output_price_per_1k} free_per_day={free_limit}",
            )
        return lines

    def grant_quota(self, command: QuotaGrantCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as (_, quota):
            account = quota.grant(command.user_id, command.amount)
        return [
            f"Granted {command.amount} coins: user_id={account.user_id} "
            f"balance={account.balance} frozen={account.frozen} available={account.available}",
        ]

    def show_quota(self, command: QuotaShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as (_, quota):
            account = quota.get_quota(command.user_id)
            usages = quota.list_usages(command.user_id, limit=command.limit)
        if account is None:
            return [f"No quota account for user {command.user_id}"]

        lines = [
            f"User: {account.user_id}",
            f"Balance: {account.balance}",
            f"Frozen: {account.frozen}",
            f"Available: {account.available}",
            f"Usages: {len(usages)}",
        ]
        for usage in usages:
            lines.append(
                f"  {usage.created_at.isoformat()} amount={usage.amount} "
                f"reason={usage.reason} model={usage.model or '-'} job_id={usage.job_id or '-'}",
            )
        return lines

    def enqueue_chat(self, command: ChatEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        messages: list[ChatMessage] = []
        if command.system_prompt:
            messages.append(ChatMessage(role="system", content=command.system_prompt))
        messages.append(ChatMessage(role="user", content=command.prompt))

        with _stores(settings) as (repository, quota):
            service = GroupChatService(repository=repository, quota=quota)
            payload = service.enqueue(
                EnqueueGroupChat(
                    group_id=command.group_id,
                    user_id=command.user_id,
                    model_id=command.model_id,
                    context_messages=tuple(messages),
                    freezed_coins=command.freezed_coins,
                ),
            )
        return [
            f"Job enqueued: task_id={payload.id} message_id={payload.message_id} "
            f"model={payload.model_id} frozen={payload.freezed_coins}",
        ]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _stores(settings) as (repository, quota), _backend(settings) as backend:
            worker = GroupChatWorker(
                repository=repository,
                handler=build_handler(
                    settings,
                    repository=repository,
                    quota=quota,
                    backend=backend,
                ),
                worker_id=settings.worker.worker_id,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls or settings.worker.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} discarded={summary.discarded} "
            f"idle_polls={summary.idle_polls}",
        ]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = QueueTaskStatus(command.status.lower()) if command.status else None
        with _stores(settings) as (repository, _):
            tasks = repository.list_queue_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            delivered = task.delivered_at.isoformat() if task.delivered_at is not None else "-"
            lines.append(
                f"  {task.task_id} type={task.task_type} status={task.status.value} "
                f"user_id={task.user_id} delivered_at={delivered} "
                f"created_at={task.created_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as (repository, quota):
            task = repository.get_queue_task(command.task_id)
            if task is None:
                return [f"Task not found: {command.task_id}"]
            try:
                payload: GroupChatPayload | None = GroupChatPayload.from_json(task.payload_json)
            except ValueError:
                payload = None
            message = (
                repository.get_chat_message(payload.message_id) if payload is not None else None
            )
            account = quota.get_quota(task.user_id)

        lines = [
            f"Task: {task.task_id}",
            f"Type: {task.task_type}",
            f"Title: {task.title}",
            f"Status: {task.status.value}",
            f"Worker: {task.worker_id or '-'}",
            f"Result: {json.dumps(task.result, ensure_ascii=False)}",
        ]
        if payload is None:
            lines.append("Payload: <undecodable>")
        else:
            lines.extend(
                [
                    f"Model: {payload.model_id}",
                    f"Group: {payload.group_id} user={payload.user_id}",
                    f"Frozen coins: {payload.freezed_coins}",
                    f"Created at: {payload.created_at.isoformat()}",
                    f"Context messages: {len(payload.context_messages)}",
                ],
            )
        if message is not None:
            lines.extend(
                [
                    f"Message: id={message.id} status={message.status.value} "
                    f"tokens={message.token_consumed} quota={message.quota_consumed}",
                    f"  {message.message or '-'}",
                ],
            )
        if account is not None:
            lines.append(
                f"Quota: balance={account.balance} frozen={account.frozen} "
                f"available={account.available}",
            )
        return lines


def build_handler(
    settings: Settings,
    *,
    repository: GroupChatRepository,
    quota: QuotaRepository,
    backend: ChatBackend,
) -> GroupChatHandler:
    """Wire a handler to the SQLite stores and the given backend."""

    counter = TiktokenCounter()
    return GroupChatHandler(
        backend=backend,
        models=repository,
        context=ContextWindowPreparer(counter),
        tokens=counter,
        pricing=partial(text_model_coins, overrides=settings.pricing.overrides),
        free_chat=FreeChatService(
            quota=quota,
            daily_limits=settings.free_chat.daily_limits,
            enabled=settings.free_chat.enabled,
        ),
        messages=repository,
        queue=repository,
        ledger=quota,
        policy=settings.context_window.to_policy(),
        stale_after=settings.worker.stale_after,
    )


@contextmanager
def _stores(settings: Settings) -> Iterator[tuple[GroupChatRepository, QuotaRepository]]:
    repository = GroupChatRepository(db_path=settings.db_path)
    repository.init_schema()
    quota = QuotaRepository(db_path=settings.db_path)
    try:
        yield repository, quota
    finally:
        quota.close()
        repository.close()


@contextmanager
def _backend(settings: Settings) -> Iterator[ChatBackend]:
    backend = build_backend(settings.backend)
    try:
        yield backend
    finally:
        backend.close()
