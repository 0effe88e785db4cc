"""CLI entrypoint for taskforge."""

import logging
from pathlib import Path

import rich_click as click

from taskforge import __version__
from taskforge.config import SANDBOX_BACKENDS
from taskforge.orchestrator.controllers import (
    CancelTaskCommand,
    InspectTaskCommand,
    ListTasksCommand,
    RunTaskCommand,
    TaskCliController,
)
from taskforge.orchestrator.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
TASK_CONTROLLER = TaskCliController()


@click.group()
@click.version_option(version=__version__, prog_name="taskforge")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for diagnostics on stderr.",
)
def taskforge(log_level: str) -> None:
    """Plan and run agent tasks inside an isolated workspace."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@taskforge.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project", "project_id", required=True, help="Project id; created if missing.")
@click.option(
    "--sandbox",
    "sandbox_backend",
    type=click.Choice(list(SANDBOX_BACKENDS)),
    default=None,
    help="Sandbox backend override (defaults to `TASKFORGE_SANDBOX_BACKEND`).",
)
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Iteration budget override.",
)
@click.argument("prompt")
def run_task(
    db_path: Path | None,
    project_id: str,
    sandbox_backend: str | None,
    max_iterations: int | None,
    prompt: str,
) -> None:
    """Run one task and stream its progress; agent questions are asked here."""

    lines = TASK_CONTROLLER.run_task(
        RunTaskCommand(
            db_path=db_path,
            project_id=project_id,
            prompt=prompt,
            sandbox_backend=sandbox_backend,
            max_iterations=max_iterations,
        ),
        answer=_ask,
    )
    try:
        for line in lines:
            click.echo(line)
    except ValueError as error:
        raise click.ClickException(str(error)) from error


@taskforge.command("tasks")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project", "project_id", default=None, help="Only tasks of this project.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Only tasks in this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Maximum number of tasks to list.",
)
def list_tasks(
    db_path: Path | None,
    project_id: str | None,
    status: str | None,
    limit: int,
) -> None:
    """List recent tasks, newest first."""

    _emit_lines(
        TASK_CONTROLLER.list_tasks(
            ListTasksCommand(
                db_path=db_path,
                project_id=project_id,
                status=status,
                limit=limit,
            ),
        ),
    )


@taskforge.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--messages", "show_messages", is_flag=True, help="Also print the conversation.")
@click.argument("task_id")
def inspect_task(db_path: Path | None, show_messages: bool, task_id: str) -> None:
    """Show a task with its steps in index order."""

    _emit_lines(
        TASK_CONTROLLER.inspect_task(
            InspectTaskCommand(
                db_path=db_path,
                task_id=task_id,
                show_messages=show_messages,
            ),
        ),
    )


@taskforge.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def cancel_task(db_path: Path | None, task_id: str) -> None:
    """Mark a non-terminal task as cancelled."""

    _emit_lines(
        TASK_CONTROLLER.cancel_task(
            CancelTaskCommand(
                db_path=db_path,
                task_id=task_id,
            ),
        ),
    )


def _ask(question: str) -> str:
    return click.prompt(question or "Answer", type=str)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


def main() -> None:
    taskforge()


if __name__ == "__main__":  # pragma: no cover
    main()
