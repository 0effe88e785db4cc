"""Controllers for task CLI commands."""

from __future__ import annotations

import json
import queue
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from taskforge.config import Settings
from taskforge.orchestrator.events import TERMINAL_EVENT_KINDS, EventBus, EventKind, TaskEvent
from taskforge.orchestrator.models import TaskStatus
from taskforge.orchestrator.reasoning import build_reasoning_service
from taskforge.orchestrator.repository import LedgerRepository
from taskforge.orchestrator.services import CreateTask, OrchestratorRegistry

PREVIEW_CHARS = 200


@dataclass(slots=True)
class RunTaskCommand:
    """CLI input for running one task to a terminal state."""

    db_path: Path | None
    project_id: str
    prompt: str
    sandbox_backend: str | None = None
    max_iterations: int | None = None


@dataclass(slots=True)
class ListTasksCommand:
    db_path: Path | None
    project_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectTaskCommand:
    db_path: Path | None
    task_id: str
    show_messages: bool = False


@dataclass(slots=True)
class CancelTaskCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskCliController:
    """Runs and inspects tasks from the command line."""

    def run_task(
        self,
        command: RunTaskCommand,
        *,
        answer: Callable[[str], str],
    ) -> Iterator[str]:
        """Start a task and yield one line per event until it reaches a terminal state.

        Questions from the agent are passed to ``answer`` and the reply resumes the task.
        """

        settings = Settings.from_env(db_path=command.db_path)
        if command.sandbox_backend is not None:
            settings.sandbox.backend = command.sandbox_backend
        if command.max_iterations is not None:
            settings.orchestrator.max_iterations = command.max_iterations
        settings.validate_for_reasoning()

        events: queue.Queue[TaskEvent] = queue.Queue()
        bus = EventBus()
        bus.subscribe(events.put, project_id=command.project_id)

        with _repository(settings) as repository:
            registry = OrchestratorRegistry(
                repository=repository,
                channel=bus,
                settings=settings,
                reasoning_factory=lambda: build_reasoning_service(settings.reasoning),
            )
            task = registry.create_task(
                CreateTask(project_id=command.project_id, prompt=command.prompt),
            )
            yield f"Task created: task_id={task.task_id} project={task.project_id}"
            try:
                while True:
                    event = events.get()
                    if event.task_id != task.task_id:
                        continue
                    yield from _render_event(event)
                    if event.kind is EventKind.TASK_PAUSED:
                        reply = answer(str(event.payload.get("question") or ""))
                        registry.resume_task(task.task_id, reply)
                    if event.kind in TERMINAL_EVENT_KINDS:
                        break
            finally:
                registry.shutdown()

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                project_id=command.project_id,
                status=status_filter,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} project={task.project_id} status={task.status.value} "
                f"tokens={task.tokens_used} created_at={task.created_at.isoformat()} "
                f"prompt={_preview(task.prompt, 60)}",
            )
        return lines

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Project: {task.project_id}",
            f"Status: {task.status.value}",
            f"Prompt: {task.prompt}",
            f"Goal: {task.plan.goal if task.plan else '-'}",
            f"Result: {task.result or '-'}",
            f"Error: {task.error or '-'}",
            f"Failure reason: {task.failure_reason.value if task.failure_reason else '-'}",
            f"Tokens used: {task.tokens_used}",
            f"Duration ms: {task.duration_ms if task.duration_ms is not None else '-'}",
            f"Steps: {len(details.steps)}",
        ]
        for step in details.steps:
            duration = f"{step.duration_ms}ms" if step.duration_ms is not None else "-"
            lines.append(
                f"  #{step.step_index} {step.step_type.value} {step.status.value} "
                f"{duration} {step.title}",
            )
        if command.show_messages:
            lines.append(f"Messages: {len(details.messages)}")
            for message in details.messages:
                label = message.role.value
                if message.tool_name:
                    label = f"{label}:{message.tool_name}"
                lines.append(f"  [{label}] {_preview(message.content or '', PREVIEW_CHARS)}")
        return lines

    def cancel_task(self, command: CancelTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            cancelled = repository.cancel_task(task_id=command.task_id)
        if not cancelled:
            return [f"Task not cancelled (unknown or already finished): {command.task_id}"]
        return [f"Task cancelled: {command.task_id}"]


def _render_event(event: TaskEvent) -> Iterator[str]:  # noqa: C901, PLR0912
    payload = event.payload
    match event.kind:
        case EventKind.TASK_STARTED:
            yield "Task started"
        case EventKind.TASK_PLANNING:
            plan = payload.get("plan") or {}
            yield f"Plan: {plan.get('goal') or '-'}"
            for index, step in enumerate(plan.get("steps") or [], start=1):
                yield f"  {index}. [{step.get('type')}] {step.get('title')}"
        case EventKind.STEP_STARTED:
            step = payload.get("step") or {}
            yield f"> #{step.get('stepIndex')} {step.get('title')}"
        case EventKind.STEP_COMPLETED:
            step = payload.get("step") or {}
            yield f"  done #{step.get('stepIndex')} ({step.get('durationMs')}ms)"
        case EventKind.STEP_FAILED:
            step = payload.get("step") or {}
            yield f"  failed #{step.get('stepIndex')}: {payload.get('error')}"
        case EventKind.TERMINAL_OUTPUT:
            for line in str(payload.get("output") or "").splitlines():
                yield f"  | {line}"
        case EventKind.FILE_CHANGED:
            yield f"  file {payload.get('path')} ({payload.get('language') or 'text'})"
        case EventKind.BROWSER_SCREENSHOT:
            yield f"  screenshot of {payload.get('url')}"
        case EventKind.DEPLOY_COMPLETED:
            yield f"Deployed: {payload.get('url')}"
        case EventKind.AGENT_THINKING:
            yield f"  ~ {_preview(str(payload.get('thought') or ''), PREVIEW_CHARS)}"
        case EventKind.AGENT_MESSAGE:
            yield f"Agent: {payload.get('content')}"
        case EventKind.TASK_PAUSED:
            yield f"Question: {payload.get('question')}"
        case EventKind.TASK_RESUMED:
            yield "Task resumed"
        case EventKind.TASK_COMPLETED:
            yield "Task completed"
        case EventKind.TASK_FAILED:
            yield f"Task failed ({payload.get('reason')}): {payload.get('error')}"
        case EventKind.TASK_CANCELLED:
            yield "Task cancelled"
        case _:
            yield json.dumps(event.to_dict(), ensure_ascii=False, default=str)


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value)


def _preview(text: str, limit: int) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= limit else f"{flat[: limit - 3]}..."


@contextmanager
def _repository(settings: Settings) -> Iterator[LedgerRepository]:
    repository = LedgerRepository(
        settings.db_path,
        busy_timeout_ms=settings.orchestrator.busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
