"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from taskforge.orchestrator.events import EventKind, TaskEvent
from taskforge.orchestrator.repository import LedgerRepository
from taskforge.sandbox.local import LocalSandbox


class RecordingChannel:
    """Event channel that keeps every event and lets tests wait for one."""

    def __init__(self) -> None:
        self.events: list[TaskEvent] = []
        self._condition = threading.Condition()

    def publish(self, event: TaskEvent) -> None:
        with self._condition:
            self.events.append(event)
            self._condition.notify_all()

    def kinds(self, task_id: str | None = None) -> list[EventKind]:
        with self._condition:
            return [
                event.kind
                for event in self.events
                if task_id is None or event.task_id == task_id
            ]

    def of_kind(self, kind: EventKind, task_id: str | None = None) -> list[TaskEvent]:
        with self._condition:
            return [
                event
                for event in self.events
                if event.kind is kind and (task_id is None or event.task_id == task_id)
            ]

    def wait_for(
        self,
        kind: EventKind,
        *,
        task_id: str | None = None,
        where: Callable[[TaskEvent], bool] | None = None,
        timeout: float = 10.0,
    ) -> TaskEvent:
        def _find() -> TaskEvent | None:
            for event in self.events:
                if event.kind is not kind or (task_id is not None and event.task_id != task_id):
                    continue
                if where is None or where(event):
                    return event
            return None

        with self._condition:
            found = self._condition.wait_for(_find, timeout=timeout)
        if found is None:
            raise AssertionError(f"Event {kind.value} not published within {timeout}s")
        return found


@pytest.fixture()
def ledger(tmp_path: Path) -> Iterator[LedgerRepository]:
    repository = LedgerRepository(tmp_path / "ledger.db")
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture()
def local_sandbox(tmp_path: Path) -> Iterator[LocalSandbox]:
    sandbox = LocalSandbox("proj-local", workspaces_root=tmp_path / "workspaces")
    sandbox.start()
    try:
        yield sandbox
    finally:
        sandbox.stop()
