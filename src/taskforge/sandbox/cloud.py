"""Sandbox whose durable state lives in a remote store, mirrored into a scratch directory."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from taskforge.errors import ProvisionError, SandboxNotStartedError
from taskforge.sandbox.base import (
    DEFAULT_EXEC_TIMEOUT_MS,
    WORKSPACE_PLACEHOLDER,
    CommandResult,
    FileOperationResult,
)
from taskforge.sandbox.commands import rewrite_command, run_shell_command
from taskforge.sandbox.remote_store import RemoteFile, RemoteFileStore
from taskforge.sandbox.workspace import (
    EMPTY_DIRECTORY,
    MAX_LIST_DEPTH,
    MAX_LIST_ENTRIES,
    NOISE_DIRS,
    WorkspacePathError,
    detect_language,
    iter_workspace_files,
    normalize_workspace_path,
    project_directory,
    write_workspace_file,
)

logger = logging.getLogger(__name__)


class CloudSyncedSandbox:
    """Runs commands in a local scratch mirror of the remote store.

    Every ``execute`` pulls the remote files into scratch first and pushes
    changed files (up to ``max_sync_file_bytes``) back afterwards, so the
    remote store stays the source of truth between commands.
    """

    def __init__(  # noqa: PLR0913
        self,
        project_id: str,
        *,
        store: RemoteFileStore,
        scratch_root: Path,
        max_sync_file_bytes: int = 5 * 1024 * 1024,
        windows: bool | None = None,
    ) -> None:
        self.project_id = project_id
        self.store = store
        self.scratch_root = scratch_root
        self.scratch_dir = (scratch_root / project_id).absolute()
        self.max_sync_file_bytes = max_sync_file_bytes
        self._windows = windows
        self._session_id: str | None = None
        self._synced: dict[str, str] = {}

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def is_running(self) -> bool:
        return self._session_id is not None

    def start(self) -> str:
        try:
            self.scratch_dir = project_directory(self.scratch_root, self.project_id)
        except WorkspacePathError as error:
            raise ProvisionError(str(error)) from error
        self.store.init()
        try:
            self.scratch_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise ProvisionError(
                f"Cannot create scratch directory {self.scratch_dir}: {error}",
            ) from error
        self._session_id = f"sandbox-{uuid4().hex[:8]}"
        self._synced = {}
        logger.info(
            "Cloud-synced sandbox %s started for project %s (scratch=%s)",
            self._session_id,
            self.project_id,
            self.scratch_dir,
        )
        return self._session_id

    def stop(self) -> None:
        if self._session_id is None:
            return
        shutil.rmtree(self.scratch_dir, ignore_errors=True)
        self.store.close()
        logger.info("Cloud-synced sandbox %s stopped", self._session_id)
        self._session_id = None
        self._synced = {}

    def execute(self, command: str, timeout_ms: int = DEFAULT_EXEC_TIMEOUT_MS) -> CommandResult:
        if not self.is_running:
            raise SandboxNotStartedError("Sandbox not started")

        job_id = self._record_job_start(command=command, timeout_ms=timeout_ms)
        try:
            self.pull()
        except ProvisionError as error:
            self._record_job_finish(job_id=job_id, result=None, error=str(error))
            raise
        rewritten = rewrite_command(command, self.scratch_dir, windows=self._windows)
        result = run_shell_command(rewritten, cwd=self.scratch_dir, timeout_ms=timeout_ms)
        try:
            pushed = self.push()
        except ProvisionError as error:
            self._record_job_finish(job_id=job_id, result=result, error=str(error))
            raise
        logger.debug("Sandbox %s pushed %d file(s) after exec", self._session_id, pushed)
        self._record_job_finish(job_id=job_id, result=result)
        return result

    def pull(self) -> int:
        """Write every remote file into scratch; returns the number of files written."""

        try:
            remote_files = self.store.list_files(self.project_id)
        except SQLAlchemyError as error:
            raise ProvisionError(f"Remote sandbox store unreachable: {error}") from error

        written = 0
        for remote in remote_files:
            outcome = write_workspace_file(self.scratch_dir, remote.path, remote.content)
            if not outcome.success:
                logger.warning("Skipping remote file %s: %s", remote.path, outcome.error)
                continue
            self._synced[remote.path] = remote.content
            written += 1
        return written

    def push(self) -> int:
        """Upload changed scratch files; returns the number of files uploaded."""

        pushed = 0
        for file_path in iter_workspace_files(self.scratch_dir):
            relative = file_path.relative_to(self.scratch_dir).as_posix()
            try:
                if file_path.stat().st_size > self.max_sync_file_bytes:
                    logger.debug(
                        "Not syncing %s: larger than %d bytes",
                        relative,
                        self.max_sync_file_bytes,
                    )
                    continue
                content = file_path.read_bytes().decode("utf-8")
            except UnicodeDecodeError:
                logger.debug("Not syncing %s: not UTF-8 text", relative)
                continue
            except OSError as error:
                logger.warning("Not syncing %s: %s", relative, error)
                continue
            if self._synced.get(relative) == content:
                continue
            try:
                self.store.put_file(self.project_id, relative, content, detect_language(relative))
            except SQLAlchemyError as error:
                raise ProvisionError(f"Remote sandbox store unreachable: {error}") from error
            self._synced[relative] = content
            pushed += 1
        return pushed

    def write_file(self, path: str, content: str) -> FileOperationResult:
        if not self.is_running:
            return FileOperationResult.failure("Sandbox not started")
        try:
            relative = normalize_workspace_path(path)
        except WorkspacePathError as error:
            return FileOperationResult.failure(str(error))
        if not relative:
            return FileOperationResult.failure(f"Not a file path: {path}")
        try:
            self.store.put_file(self.project_id, relative, content, detect_language(relative))
        except SQLAlchemyError as error:
            return FileOperationResult.failure(f"Remote store write failed: {error}")

        mirrored = write_workspace_file(self.scratch_dir, relative, content)
        if mirrored.success:
            self._synced[relative] = content
        else:
            logger.warning("Could not mirror %s into scratch: %s", relative, mirrored.error)
        return FileOperationResult(success=True, output=f"File written: {path}")

    def read_file(self, path: str) -> FileOperationResult:
        if not self.is_running:
            return FileOperationResult.failure("Sandbox not started")
        try:
            relative = normalize_workspace_path(path)
        except WorkspacePathError as error:
            return FileOperationResult.failure(str(error))
        try:
            remote = self.store.get_file(self.project_id, relative)
        except SQLAlchemyError as error:
            return FileOperationResult.failure(f"Remote store read failed: {error}")
        if remote is None:
            return FileOperationResult.failure(f"File not found: {path}")
        return FileOperationResult(success=True, output=remote.content)

    def list_files(
        self,
        path: str = WORKSPACE_PLACEHOLDER,
        recursive: bool = False,
    ) -> FileOperationResult:
        if not self.is_running:
            return FileOperationResult.failure("Sandbox not started")
        try:
            prefix = normalize_workspace_path(path)
            remote_files = self.store.list_files(self.project_id)
        except WorkspacePathError as error:
            return FileOperationResult.failure(str(error))
        except SQLAlchemyError as error:
            return FileOperationResult.failure(f"Remote store list failed: {error}")

        lines = _list_remote_entries(remote_files, prefix=prefix, recursive=recursive)
        return FileOperationResult(
            success=True,
            output="\n".join(lines) if lines else EMPTY_DIRECTORY,
        )

    def _record_job_start(self, *, command: str, timeout_ms: int) -> str | None:
        try:
            return self.store.start_job(
                project_id=self.project_id,
                command=command,
                timeout_ms=timeout_ms,
            )
        except SQLAlchemyError:
            logger.exception("Failed to record sandbox job start (project=%s)", self.project_id)
            return None

    def _record_job_finish(
        self,
        *,
        job_id: str | None,
        result: CommandResult | None,
        error: str | None = None,
    ) -> None:
        if job_id is None:
            return
        try:
            self.store.finish_job(job_id=job_id, result=result, error=error)
        except SQLAlchemyError:
            logger.exception("Failed to record sandbox job %s result", job_id)


def _list_remote_entries(
    remote_files: list[RemoteFile],
    *,
    prefix: str,
    recursive: bool,
) -> list[str]:
    base = f"{prefix}/" if prefix else ""
    lines: list[str] = []
    seen_dirs: set[str] = set()
    for remote in remote_files:
        if not remote.path.startswith(base):
            continue
        remainder = remote.path[len(base) :]
        parts = remainder.split("/")
        if any(part in NOISE_DIRS for part in parts[:-1]):
            continue
        if recursive:
            if len(parts) > MAX_LIST_DEPTH:
                continue
            lines.append(remote.path)
        elif len(parts) == 1:
            lines.append(f"- {parts[0]}")
        elif parts[0] not in seen_dirs:
            seen_dirs.add(parts[0])
            lines.append(f"d {parts[0]}")
        if len(lines) >= MAX_LIST_ENTRIES:
            break
    return sorted(lines, key=lambda line: line[2:] if not recursive else line)
