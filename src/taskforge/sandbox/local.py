"""Sandbox backed by a plain host directory per project."""

from __future__ import annotations

import logging
from pathlib import Path
from uuid import uuid4

from taskforge.errors import ProvisionError, SandboxNotStartedError
from taskforge.sandbox.base import (
    DEFAULT_EXEC_TIMEOUT_MS,
    WORKSPACE_PLACEHOLDER,
    CommandResult,
    FileOperationResult,
)
from taskforge.sandbox.commands import rewrite_command, run_shell_command
from taskforge.sandbox.workspace import (
    WorkspacePathError,
    list_workspace_directory,
    project_directory,
    read_workspace_file,
    write_workspace_file,
)

logger = logging.getLogger(__name__)


class LocalSandbox:
    """Process-level isolation rooted at ``<workspaces_root>/<project_id>``."""

    def __init__(
        self,
        project_id: str,
        *,
        workspaces_root: Path,
        windows: bool | None = None,
    ) -> None:
        self.project_id = project_id
        self.workspaces_root = workspaces_root
        self.workdir = (workspaces_root / project_id).absolute()
        self._windows = windows
        self._session_id: str | None = None

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def is_running(self) -> bool:
        return self._session_id is not None

    def start(self) -> str:
        try:
            self.workdir = project_directory(self.workspaces_root, self.project_id)
        except WorkspacePathError as error:
            raise ProvisionError(str(error)) from error
        try:
            self.workdir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise ProvisionError(
                f"Cannot create workspace directory {self.workdir}: {error}",
            ) from error
        self._session_id = f"local-{uuid4().hex[:8]}"
        logger.info("Local sandbox %s started at %s", self._session_id, self.workdir)
        return self._session_id

    def stop(self) -> None:
        if self._session_id is None:
            return
        logger.info("Local sandbox %s stopped (project=%s)", self._session_id, self.project_id)
        self._session_id = None

    def execute(self, command: str, timeout_ms: int = DEFAULT_EXEC_TIMEOUT_MS) -> CommandResult:
        if not self.is_running:
            raise SandboxNotStartedError("Local sandbox not started")
        rewritten = rewrite_command(command, self.workdir, windows=self._windows)
        logger.debug("Local sandbox %s exec: %s", self._session_id, rewritten[:200])
        return run_shell_command(rewritten, cwd=self.workdir, timeout_ms=timeout_ms)

    def write_file(self, path: str, content: str) -> FileOperationResult:
        if not self.is_running:
            return FileOperationResult.failure("Sandbox not started")
        return write_workspace_file(self.workdir, path, content)

    def read_file(self, path: str) -> FileOperationResult:
        if not self.is_running:
            return FileOperationResult.failure("Sandbox not started")
        return read_workspace_file(self.workdir, path)

    def list_files(
        self,
        path: str = WORKSPACE_PLACEHOLDER,
        recursive: bool = False,
    ) -> FileOperationResult:
        if not self.is_running:
            return FileOperationResult.failure("Sandbox not started")
        return list_workspace_directory(self.workdir, path, recursive=recursive)
