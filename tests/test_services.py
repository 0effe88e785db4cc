from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import allure
import httpx
import pytest

from taskforge.config import Settings, ToolSettings
from taskforge.orchestrator.events import EventKind
from taskforge.orchestrator.models import TaskStatus, TaskView
from taskforge.orchestrator.reasoning import Completion, ScriptedReasoningService, ToolCall
from taskforge.orchestrator.repository import LedgerRepository
from taskforge.orchestrator.services import (
    CancelTask,
    CreateTask,
    OrchestratorRegistry,
    ResumeTask,
    TerminalInput,
)
from taskforge.sandbox.base import SandboxBackend
from taskforge.sandbox.local import LocalSandbox
from taskforge.tools import ToolBox, build_toolbox

pytestmark = [
    allure.epic("Orchestrator"),
    allure.feature("Task Routing"),
]

ASK = ToolCall(name="ask_user", input={"question": "Continue?"})


def _toolbox(sandbox: SandboxBackend, slug: str) -> ToolBox:
    return build_toolbox(
        sandbox,
        settings=ToolSettings(deploy_settle_seconds=0),
        project_slug=slug,
        search_transport=httpx.MockTransport(lambda _request: httpx.Response(503)),
    )


@pytest.fixture()
def scripts() -> list[ScriptedReasoningService]:
    return []


@pytest.fixture()
def registry(
    ledger: LedgerRepository,
    channel: Any,
    tmp_path: Path,
    scripts: list[ScriptedReasoningService],
) -> Iterator[OrchestratorRegistry]:
    registry = OrchestratorRegistry(
        repository=ledger,
        channel=channel,
        settings=Settings(db_path=tmp_path / "ledger.db"),
        sandbox_factory=lambda project_id: LocalSandbox(
            project_id,
            workspaces_root=tmp_path / "workspaces",
        ),
        reasoning_factory=lambda: scripts.pop(0),
        toolbox_factory=_toolbox,
    )
    yield registry
    registry.shutdown(timeout=5)


def test_create_task_runs_to_completion(
    registry: OrchestratorRegistry,
    ledger: LedgerRepository,
    scripts: list[ScriptedReasoningService],
) -> None:
    scripts.append(ScriptedReasoningService([Completion(result="Done quickly.")]))

    task = registry.create_task(CreateTask(project_id="proj-1", prompt="Hello", task_id="t-1"))

    assert task.task_id == "t-1"
    assert task.status is TaskStatus.QUEUED
    assert registry.wait("t-1", timeout=10)
    stored = ledger.get_task("t-1")
    assert stored is not None
    assert stored.status is TaskStatus.COMPLETED
    assert registry.active_for_project("proj-1") is None


def test_new_task_supersedes_running_task_of_same_project(
    registry: OrchestratorRegistry,
    ledger: LedgerRepository,
    channel: Any,
    scripts: list[ScriptedReasoningService],
) -> None:
    scripts.extend(
        [
            ScriptedReasoningService([ASK]),
            ScriptedReasoningService([Completion(result="Second wins.")]),
        ],
    )
    first = registry.create_task(CreateTask(project_id="proj-1", prompt="First"))
    channel.wait_for(EventKind.TASK_PAUSED, task_id=first.task_id)

    second = registry.create_task(CreateTask(project_id="proj-1", prompt="Second"))
    channel.wait_for(EventKind.TASK_COMPLETED, task_id=second.task_id)

    first_stored = ledger.get_task(first.task_id)
    assert first_stored is not None
    assert first_stored.status is TaskStatus.CANCELLED
    events = [(event.kind, event.task_id) for event in channel.events]
    cancelled_at = events.index((EventKind.TASK_CANCELLED, first.task_id))
    started_at = events.index((EventKind.TASK_STARTED, second.task_id))
    assert cancelled_at < started_at
    assert not registry.resume_task(first.task_id, "too late")


def test_tasks_of_other_projects_are_not_superseded(
    registry: OrchestratorRegistry,
    ledger: LedgerRepository,
    channel: Any,
    scripts: list[ScriptedReasoningService],
) -> None:
    scripts.extend(
        [
            ScriptedReasoningService([ASK, Completion(result="A")]),
            ScriptedReasoningService([Completion(result="B")]),
        ],
    )
    first = registry.create_task(CreateTask(project_id="proj-a", prompt="A"))
    channel.wait_for(EventKind.TASK_PAUSED, task_id=first.task_id)
    second = registry.create_task(CreateTask(project_id="proj-b", prompt="B"))
    channel.wait_for(EventKind.TASK_COMPLETED, task_id=second.task_id)

    active = registry.active_for_project("proj-a")
    assert active is not None
    assert active.task_id == first.task_id
    assert registry.handle(ResumeTask(task_id=first.task_id, answer="go")) is True
    assert registry.wait(first.task_id, timeout=10)
    stored = ledger.get_task(first.task_id)
    assert stored is not None
    assert stored.status is TaskStatus.COMPLETED


def test_handle_routes_every_command(
    registry: OrchestratorRegistry,
    channel: Any,
    scripts: list[ScriptedReasoningService],
) -> None:
    scripts.append(ScriptedReasoningService([ASK]))

    created = registry.handle(CreateTask(project_id="proj-1", prompt="Route me"))
    assert isinstance(created, TaskView)
    channel.wait_for(EventKind.TASK_PAUSED, task_id=created.task_id)

    assert registry.handle(TerminalInput(project_id="proj-1", data="ls\n")) is None
    assert registry.handle(TerminalInput(project_id="proj-unknown", data="ls\n")) is None
    assert registry.handle(CancelTask(task_id=created.task_id)) is True
    assert registry.handle(CancelTask(task_id=created.task_id)) is False
    assert registry.handle(ResumeTask(task_id="missing", answer="x")) is False


def test_cancel_unknown_task_falls_back_to_ledger(
    registry: OrchestratorRegistry,
    ledger: LedgerRepository,
) -> None:
    ledger.ensure_project("proj-1")
    orphan = ledger.create_task(project_id="proj-1", prompt="Left over")

    assert registry.cancel_task(orphan.task_id)
    assert not registry.cancel_task(orphan.task_id)
    assert not registry.cancel_task("does-not-exist")
    stored = ledger.get_task(orphan.task_id)
    assert stored is not None
    assert stored.status is TaskStatus.CANCELLED


def test_shutdown_cancels_running_tasks(
    registry: OrchestratorRegistry,
    ledger: LedgerRepository,
    channel: Any,
    scripts: list[ScriptedReasoningService],
) -> None:
    scripts.append(ScriptedReasoningService([ASK]))
    task = registry.create_task(CreateTask(project_id="proj-1", prompt="Wait"))
    channel.wait_for(EventKind.TASK_PAUSED, task_id=task.task_id)

    registry.shutdown(timeout=5)

    stored = ledger.get_task(task.task_id)
    assert stored is not None
    assert stored.status is TaskStatus.CANCELLED
    assert registry.wait(task.task_id, timeout=1)
