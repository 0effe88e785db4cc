"""Exception hierarchy shared by sandboxes, reasoning client and orchestrator."""

from __future__ import annotations


class TaskforgeError(RuntimeError):
    """Base error for infrastructure failures that end a task."""


class ProvisionError(TaskforgeError):
    """Sandbox backing resource could not be allocated."""


class SandboxNotStartedError(TaskforgeError):
    """Sandbox operation attempted before ``start()``."""


class ReasoningServiceError(TaskforgeError):
    """Reasoning service call failed with retryability hint."""

    def __init__(self, message: str, *, transient: bool, failure_class: str | None = None) -> None:
        super().__init__(message)
        self.transient = transient
        self.failure_class = failure_class
