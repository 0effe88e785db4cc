"""Outbound progress events and the in-process channel that fans them out."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Event names as seen by stream consumers."""

    TASK_STARTED = "task.started"
    TASK_PLANNING = "task.planning"
    TASK_PAUSED = "task.paused"
    TASK_RESUMED = "task.resumed"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"
    TASK_CANCELLED = "task.cancelled"
    STEP_STARTED = "step.started"
    STEP_COMPLETED = "step.completed"
    STEP_FAILED = "step.failed"
    FILE_CHANGED = "file.changed"
    TERMINAL_OUTPUT = "terminal.output"
    BROWSER_SCREENSHOT = "browser.screenshot"
    AGENT_THINKING = "agent.thinking"
    AGENT_MESSAGE = "agent.message"
    DEPLOY_COMPLETED = "deploy.completed"


TERMINAL_EVENT_KINDS = frozenset(
    {EventKind.TASK_COMPLETED, EventKind.TASK_FAILED, EventKind.TASK_CANCELLED},
)


@dataclass(slots=True)
class TaskEvent:
    """One event scoped to a project and task."""

    kind: EventKind
    project_id: str
    task_id: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "taskId": self.task_id,
            "projectId": self.project_id,
            **self.payload,
        }


EventHandler = Callable[[TaskEvent], None]


class EventChannel(Protocol):
    """Sink the orchestrator publishes to."""

    def publish(self, event: TaskEvent) -> None:
        """Deliver an event; must not raise."""
        raise NotImplementedError


class EventBus:
    """Synchronous fan-out to per-project and global subscribers.

    Handlers run on the publishing thread. A failing handler is logged and the
    remaining handlers still receive the event.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._global: list[EventHandler] = []
        self._by_project: dict[str, list[EventHandler]] = {}

    def subscribe(
        self,
        handler: EventHandler,
        *,
        project_id: str | None = None,
    ) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""

        with self._lock:
            if project_id is None:
                self._global.append(handler)
            else:
                self._by_project.setdefault(project_id, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if project_id is None:
                    if handler in self._global:
                        self._global.remove(handler)
                    return
                handlers = self._by_project.get(project_id, [])
                if handler in handlers:
                    handlers.remove(handler)
                if not handlers:
                    self._by_project.pop(project_id, None)

        return unsubscribe

    def publish(self, event: TaskEvent) -> None:
        with self._lock:
            handlers = [*self._by_project.get(event.project_id, ()), *self._global]
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event handler failed for %s (task=%s)",
                    event.kind.value,
                    event.task_id,
                )
