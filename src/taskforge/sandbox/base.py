"""Sandbox backend contract shared by local, cloud-synced and container variants."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

WORKSPACE_PLACEHOLDER = "/workspace"
DEFAULT_EXEC_TIMEOUT_MS = 300_000
TIMEOUT_EXIT_CODE = 124


@dataclass(slots=True)
class CommandResult:
    """Outcome of one shell command; never an exception for a failing command."""

    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False
    duration_ms: int = 0


@dataclass(slots=True)
class FileOperationResult:
    """Outcome of one workspace file operation."""

    success: bool
    output: str = ""
    error: str | None = None

    @classmethod
    def failure(cls, error: str) -> FileOperationResult:
        return cls(success=False, output="", error=error)


class SandboxBackend(Protocol):
    """Isolated workspace with command execution and file access."""

    project_id: str

    @property
    def session_id(self) -> str | None:
        """Session identifier while running."""
        raise NotImplementedError

    @property
    def is_running(self) -> bool:
        raise NotImplementedError

    def start(self) -> str:
        """Allocate the environment and return the session id."""
        raise NotImplementedError

    def stop(self) -> None:
        """Release the environment; safe to call more than once."""
        raise NotImplementedError

    def execute(self, command: str, timeout_ms: int = DEFAULT_EXEC_TIMEOUT_MS) -> CommandResult:
        """Run a shell command rooted at the workspace."""
        raise NotImplementedError

    def write_file(self, path: str, content: str) -> FileOperationResult:
        raise NotImplementedError

    def read_file(self, path: str) -> FileOperationResult:
        raise NotImplementedError

    def list_files(
        self,
        path: str = WORKSPACE_PLACEHOLDER,
        recursive: bool = False,
    ) -> FileOperationResult:
        raise NotImplementedError


def timeout_marker(timeout_ms: int) -> str:
    """Stderr line appended to every timed-out command."""

    return f"Command timed out after {timeout_ms} ms"
