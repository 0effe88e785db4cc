"""Routing of inbound task commands to per-project orchestrators."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import assert_never

from taskforge.config import Settings
from taskforge.orchestrator.engine import TaskOrchestrator, ToolBoxFactory
from taskforge.orchestrator.events import EventChannel
from taskforge.orchestrator.models import TaskView
from taskforge.orchestrator.reasoning import ReasoningService, build_reasoning_service
from taskforge.orchestrator.repository import LedgerRepository
from taskforge.sandbox import SandboxBackend, create_sandbox_backend

logger = logging.getLogger(__name__)

SandboxFactory = Callable[[str], SandboxBackend]
ReasoningFactory = Callable[[], ReasoningService]


@dataclass(slots=True)
class CreateTask:
    """``task.create``: start a new task, superseding any task of the same project."""

    project_id: str
    prompt: str
    task_id: str | None = None


@dataclass(slots=True)
class CancelTask:
    task_id: str


@dataclass(slots=True)
class ResumeTask:
    task_id: str
    answer: str


@dataclass(slots=True)
class TerminalInput:
    project_id: str
    data: str


InboundCommand = CreateTask | CancelTask | ResumeTask | TerminalInput


class OrchestratorRegistry:
    """Owns the running orchestrators, at most one active per project."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: LedgerRepository,
        channel: EventChannel,
        settings: Settings,
        sandbox_factory: SandboxFactory | None = None,
        reasoning_factory: ReasoningFactory | None = None,
        toolbox_factory: ToolBoxFactory | None = None,
    ) -> None:
        self.repository = repository
        self.channel = channel
        self.settings = settings
        self._sandbox_factory = sandbox_factory or (
            lambda project_id: create_sandbox_backend(settings.sandbox, project_id)
        )
        self._reasoning_factory = reasoning_factory or (
            lambda: build_reasoning_service(settings.reasoning)
        )
        self._toolbox_factory = toolbox_factory
        self._lock = threading.Lock()
        self._by_project: dict[str, TaskOrchestrator] = {}
        self._by_task: dict[str, TaskOrchestrator] = {}

    def handle(self, command: InboundCommand) -> TaskView | bool | None:
        match command:
            case CreateTask():
                return self.create_task(command)
            case CancelTask():
                return self.cancel_task(command.task_id)
            case ResumeTask():
                return self.resume_task(command.task_id, command.answer)
            case TerminalInput():
                self.terminal_input(command.project_id, command.data)
                return None
            case _:
                assert_never(command)

    def create_task(self, command: CreateTask) -> TaskView:
        """Persist a queued task and start its orchestrator thread."""

        self.repository.ensure_project(command.project_id)
        task = self.repository.create_task(
            project_id=command.project_id,
            prompt=command.prompt,
            task_id=command.task_id,
        )
        orchestrator = TaskOrchestrator(
            task=task,
            repository=self.repository,
            sandbox=self._sandbox_factory(command.project_id),
            reasoning=self._reasoning_factory(),
            channel=self.channel,
            settings=self.settings.orchestrator,
            tool_settings=self.settings.tools,
            toolbox_factory=self._toolbox_factory,
        )
        with self._lock:
            self._prune_locked()
            previous = self._by_project.get(command.project_id)
            self._by_project[command.project_id] = orchestrator
            self._by_task[task.task_id] = orchestrator

        if previous is not None and not previous.is_done:
            logger.info(
                "Task %s supersedes task %s for project %s",
                task.task_id,
                previous.task_id,
                command.project_id,
            )
            previous.cancel()
        else:
            previous = None
        orchestrator.start(after=previous)
        return task

    def cancel_task(self, task_id: str) -> bool:
        orchestrator = self.get(task_id)
        if orchestrator is not None:
            return orchestrator.cancel()
        # Not running in this process; still honor it against the ledger.
        if self.repository.cancel_task(task_id=task_id):
            return True
        logger.warning("Cancel ignored: no active task %s", task_id)
        return False

    def resume_task(self, task_id: str, answer: str) -> bool:
        orchestrator = self.get(task_id)
        if orchestrator is None:
            logger.warning("Resume ignored: no running task %s", task_id)
            return False
        return orchestrator.resume(answer)

    def terminal_input(self, project_id: str, data: str) -> None:
        with self._lock:
            orchestrator = self._by_project.get(project_id)
        if orchestrator is None:
            logger.warning("Terminal input ignored: no task running for project %s", project_id)
            return
        orchestrator.send_terminal_input(data)

    def get(self, task_id: str) -> TaskOrchestrator | None:
        with self._lock:
            return self._by_task.get(task_id)

    def active_for_project(self, project_id: str) -> TaskOrchestrator | None:
        with self._lock:
            orchestrator = self._by_project.get(project_id)
        if orchestrator is None or orchestrator.is_done:
            return None
        return orchestrator

    def wait(self, task_id: str, timeout: float | None = None) -> bool:
        orchestrator = self.get(task_id)
        if orchestrator is None:
            return True
        return orchestrator.join(timeout)

    def shutdown(self, *, timeout: float = 10.0) -> None:
        """Cancel every running task and wait briefly for their threads."""

        with self._lock:
            running = [item for item in self._by_task.values() if not item.is_done]
        for orchestrator in running:
            orchestrator.cancel()
        for orchestrator in running:
            if not orchestrator.join(timeout):
                logger.warning("Task %s did not stop within %.1fs", orchestrator.task_id, timeout)

    def _prune_locked(self) -> None:
        finished = [task_id for task_id, item in self._by_task.items() if item.is_done]
        for task_id in finished:
            del self._by_task[task_id]
        for project_id, item in list(self._by_project.items()):
            if item.is_done:
                del self._by_project[project_id]
