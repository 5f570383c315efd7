"""CLI entrypoint for groupchat."""

import logging
from pathlib import Path

import rich_click as click

from groupchat import __version__
from groupchat.jobs.controllers import (
    ChatEnqueueCommand,
    DbInitCommand,
    GroupChatCliController,
    InspectTaskCommand,
    ListTasksCommand,
    ModelAddCommand,
    ModelListCommand,
    ModelStatusCommand,
    QuotaGrantCommand,
    QuotaShowCommand,
    WorkerCommand,
)
from groupchat.jobs.ledger import QuotaExhaustedError
from groupchat.jobs.models import ModelStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = GroupChatCliController()


@click.group()
@click.version_option(version=__version__, prog_name="groupchat")
def groupchat() -> None:
    """Group chat job worker CLI."""


@groupchat.group()
def db() -> None:
    """Database commands."""


@db.command("init")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def db_init(db_path: Path | None) -> None:
    """Create or migrate the database schema."""

    _emit_lines(CONTROLLER.init_db(DbInitCommand(db_path=db_path)))


@groupchat.group()
def models() -> None:
    """Model registry commands."""


@models.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--model-id", required=True, help="Model identifier sent to the backend.")
@click.option("--name", default=None, help="Display name (defaults to model id).")
@click.option(
    "--input-price",
    type=click.FloatRange(min=0),
    default=0.0,
    show_default=True,
    help="Coins per 1K input tokens.",
)
@click.option(
    "--output-price",
    type=click.FloatRange(min=0),
    default=0.0,
    show_default=True,
    help="Coins per 1K output tokens.",
)
def models_add(  # noqa: PLR0913
    db_path: Path | None,
    model_id: str,
    name: str | None,
    input_price: float,
    output_price: float,
) -> None:
    """Register or update an enabled model."""

    _emit_lines(
        CONTROLLER.add_model(
            ModelAddCommand(
                db_path=db_path,
                model_id=model_id,
                name=name,
                input_price_per_1k=input_price,
                output_price_per_1k=output_price,
            ),
        ),
    )


@models.command("disable")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--model-id", required=True, help="Model identifier.")
def models_disable(db_path: Path | None, model_id: str) -> None:
    """Disable a model; queued jobs for it will fail and be refunded."""

    _emit_lines(
        CONTROLLER.set_model_status(
            ModelStatusCommand(db_path=db_path, model_id=model_id, status=ModelStatus.DISABLED),
        ),
    )


@models.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def models_list(db_path: Path | None) -> None:
    """List registered models."""

    _emit_lines(CONTROLLER.list_models(ModelListCommand(db_path=db_path)))


@groupchat.group()
def quota() -> None:
    """Coin ledger commands."""


@quota.command("grant")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--user-id", type=int, required=True, help="User id.")
@click.option("--amount", type=click.IntRange(min=1), required=True, help="Coins to add.")
def quota_grant(db_path: Path | None, user_id: int, amount: int) -> None:
    """Credit coins to a user's balance."""

    _emit_lines(
        CONTROLLER.grant_quota(QuotaGrantCommand(db_path=db_path, user_id=user_id, amount=amount)),
    )


@quota.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--user-id", type=int, required=True, help="User id.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max usage rows to print.",
)
def quota_show(db_path: Path | None, user_id: int, limit: int) -> None:
    """Show balance, hold and recent usage for a user."""

    _emit_lines(
        CONTROLLER.show_quota(QuotaShowCommand(db_path=db_path, user_id=user_id, limit=limit)),
    )


@groupchat.group()
def chat() -> None:
    """Group chat job commands."""


@chat.command("enqueue-test")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--group-id", type=int, default=1, show_default=True, help="Chat group id.")
@click.option("--user-id", type=int, required=True, help="User id.")
@click.option("--model-id", required=True, help="Registered model id.")
@click.option("--prompt", default="Hello, group!", show_default=True, help="User message.")
@click.option("--system-prompt", default=None, help="Optional system message.")
@click.option(
    "--freeze",
    "freezed_coins",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Coins to reserve for the job.",
)
def chat_enqueue_test(  # noqa: PLR0913
    db_path: Path | None,
    group_id: int,
    user_id: int,
    model_id: str,
    prompt: str,
    system_prompt: str | None,
    freezed_coins: int,
) -> None:
    """Reserve coins and enqueue one group chat job."""

    try:
        lines = CONTROLLER.enqueue_chat(
            ChatEnqueueCommand(
                db_path=db_path,
                group_id=group_id,
                user_id=user_id,
                model_id=model_id,
                prompt=prompt,
                system_prompt=system_prompt,
                freezed_coins=freezed_coins,
            ),
        )
    except QuotaExhaustedError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@groupchat.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Consecutive empty polls before the loop exits.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging level for worker output.",
)
def worker(
    db_path: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int | None,
    log_level: str,
) -> None:
    """Run the group chat job worker."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        lines = CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@groupchat.command("tasks")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["pending", "succeeded", "failed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks(db_path: Path | None, status: str | None, limit: int) -> None:
    """List queued group chat jobs."""

    _emit_lines(
        CONTROLLER.list_tasks(ListTasksCommand(db_path=db_path, status=status, limit=limit)),
    )


@groupchat.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one job with its reply message and the user's quota."""

    _emit_lines(CONTROLLER.inspect_task(InspectTaskCommand(db_path=db_path, task_id=task_id)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    groupchat()
