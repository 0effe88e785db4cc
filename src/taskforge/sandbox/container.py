"""Sandbox running each session in its own Docker container."""

from __future__ import annotations

import base64
import logging
import math
import shlex
import time
from collections.abc import Callable
from typing import Any
from uuid import uuid4

import docker
from docker.errors import DockerException

from taskforge.errors import ProvisionError, SandboxNotStartedError
from taskforge.sandbox.base import (
    DEFAULT_EXEC_TIMEOUT_MS,
    TIMEOUT_EXIT_CODE,
    WORKSPACE_PLACEHOLDER,
    CommandResult,
    FileOperationResult,
    timeout_marker,
)
from taskforge.sandbox.streams import demultiplex_stream
from taskforge.sandbox.workspace import (
    EMPTY_DIRECTORY,
    MAX_LIST_DEPTH,
    MAX_LIST_ENTRIES,
    NOISE_DIRS,
    WorkspacePathError,
    normalize_workspace_path,
)

logger = logging.getLogger(__name__)

_KILLED_EXIT_CODE = 137
_SOCKET_GRACE_SECONDS = 5.0
_KEPT_CAPABILITIES = ["CHOWN", "SETUID", "SETGID", "NET_BIND_SERVICE"]


class ContainerSandbox:
    """Container-level isolation: ``sleep infinity`` container, commands via ``docker exec``."""

    def __init__(  # noqa: PLR0913
        self,
        project_id: str,
        *,
        image: str,
        memory_limit: str = "512m",
        cpu_quota: int = 50_000,
        network: str = "bridge",
        client_factory: Callable[[], Any] = docker.from_env,
    ) -> None:
        self.project_id = project_id
        self.image = image
        self.memory_limit = memory_limit
        self.cpu_quota = cpu_quota
        self.network = network
        self._client_factory = client_factory
        self._client: Any = None
        self._container: Any = None

    @property
    def session_id(self) -> str | None:
        if self._container is None:
            return None
        return str(self._container.id)[:12]

    @property
    def is_running(self) -> bool:
        return self._container is not None

    def start(self) -> str:
        try:
            self._client = self._client_factory()
            self._container = self._client.containers.run(
                self.image,
                command=["sleep", "infinity"],
                detach=True,
                working_dir=WORKSPACE_PLACEHOLDER,
                name=f"taskforge-{uuid4().hex[:12]}",
                labels={"taskforge.project": self.project_id},
                mem_limit=self.memory_limit,
                cpu_quota=self.cpu_quota,
                network_mode=self.network,
                cap_drop=["ALL"],
                cap_add=_KEPT_CAPABILITIES,
                security_opt=["no-new-privileges"],
            )
        except DockerException as error:
            raise ProvisionError(f"Container runtime unavailable: {error}") from error
        session_id = self.session_id or ""
        logger.info("Container sandbox %s started (image=%s)", session_id, self.image)
        return session_id

    def stop(self) -> None:
        container = self._container
        if container is None:
            return
        self._container = None
        try:
            container.remove(force=True)
        except DockerException:
            logger.exception("Failed to remove sandbox container %s", container.id)
        logger.info("Container sandbox %s stopped", str(container.id)[:12])

    def execute(self, command: str, timeout_ms: int = DEFAULT_EXEC_TIMEOUT_MS) -> CommandResult:
        if self._container is None:
            raise SandboxNotStartedError("Sandbox container not started")

        timeout_seconds = max(1, math.ceil(timeout_ms / 1000))
        argv = ["timeout", "-s", "KILL", f"{timeout_seconds}s", "bash", "-c", command]
        started = time.monotonic()
        api = self._client.api
        try:
            exec_id = api.exec_create(
                self._container.id,
                argv,
                stdout=True,
                stderr=True,
                tty=False,
                workdir=WORKSPACE_PLACEHOLDER,
            )["Id"]
            stream = api.exec_start(exec_id, tty=False, socket=True)
            raw, socket_timed_out = _read_socket(
                stream,
                deadline=started + timeout_seconds + _SOCKET_GRACE_SECONDS,
            )
            exit_code = None if socket_timed_out else api.exec_inspect(exec_id).get("ExitCode")
        except DockerException as error:
            raise ProvisionError(f"Container runtime unavailable: {error}") from error

        duration_ms = int((time.monotonic() - started) * 1000)
        stdout, stderr = demultiplex_stream(raw)
        timed_out = socket_timed_out or (
            exit_code == _KILLED_EXIT_CODE and duration_ms >= timeout_seconds * 1000
        )
        if timed_out:
            marker = timeout_marker(timeout_ms)
            return CommandResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=stdout,
                stderr=f"{stderr.rstrip()}\n{marker}" if stderr.strip() else marker,
                timed_out=True,
                duration_ms=duration_ms,
            )
        return CommandResult(
            exit_code=int(exit_code if exit_code is not None else 1),
            stdout=stdout,
            stderr=stderr,
            duration_ms=duration_ms,
        )

    def write_file(self, path: str, content: str) -> FileOperationResult:
        target = self._container_path(path)
        if isinstance(target, FileOperationResult):
            return target
        encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
        quoted = shlex.quote(target)
        result = self.execute(
            f'mkdir -p "$(dirname {quoted})" && printf %s {encoded} | base64 -d > {quoted}',
            timeout_ms=30_000,
        )
        if result.exit_code != 0:
            return FileOperationResult.failure(result.stderr.strip() or "write failed")
        return FileOperationResult(success=True, output=f"File written: {path}")

    def read_file(self, path: str) -> FileOperationResult:
        target = self._container_path(path)
        if isinstance(target, FileOperationResult):
            return target
        result = self.execute(f"base64 -w0 < {shlex.quote(target)}", timeout_ms=30_000)
        if result.exit_code != 0:
            return FileOperationResult.failure(f"File not found: {path}")
        try:
            content = base64.b64decode(result.stdout.strip()).decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            return FileOperationResult.failure(f"File is not valid UTF-8 text: {path}")
        return FileOperationResult(success=True, output=content)

    def list_files(
        self,
        path: str = WORKSPACE_PLACEHOLDER,
        recursive: bool = False,
    ) -> FileOperationResult:
        target = self._container_path(path, allow_root=True)
        if isinstance(target, FileOperationResult):
            return target
        quoted = shlex.quote(target)
        if recursive:
            prune = " -o ".join(f"-name {shlex.quote(name)}" for name in sorted(NOISE_DIRS))
            command = (
                f"find {quoted} -maxdepth {MAX_LIST_DEPTH} \\( {prune} \\) -prune "
                f"-o -type f -print | sort | head -n {MAX_LIST_ENTRIES}"
            )
        else:
            command = f"ls -1Ap {quoted} | head -n {MAX_LIST_ENTRIES}"
        result = self.execute(command, timeout_ms=30_000)
        if result.exit_code != 0:
            return FileOperationResult.failure(result.stderr.strip() or f"Cannot list {path}")

        lines: list[str] = []
        for entry in result.stdout.splitlines():
            if not entry:
                continue
            if recursive:
                lines.append(entry.removeprefix(f"{WORKSPACE_PLACEHOLDER}/"))
            elif entry.endswith("/"):
                lines.append(f"d {entry.rstrip('/')}")
            else:
                lines.append(f"- {entry}")
        return FileOperationResult(
            success=True,
            output="\n".join(lines) if lines else EMPTY_DIRECTORY,
        )

    def _container_path(self, path: str, *, allow_root: bool = False) -> str | FileOperationResult:
        if self._container is None:
            return FileOperationResult.failure("Sandbox not started")
        try:
            relative = normalize_workspace_path(path)
        except WorkspacePathError as error:
            return FileOperationResult.failure(str(error))
        if not relative:
            if allow_root:
                return WORKSPACE_PLACEHOLDER
            return FileOperationResult.failure(f"Not a file path: {path}")
        return f"{WORKSPACE_PLACEHOLDER}/{relative}"


def _read_socket(stream: Any, *, deadline: float) -> tuple[bytes, bool]:
    """Read an attached exec socket to EOF; second value is True if the deadline passed."""

    raw_socket = getattr(stream, "_sock", stream)
    chunks: list[bytes] = []
    try:
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return b"".join(chunks), True
            raw_socket.settimeout(remaining)
            try:
                chunk = raw_socket.recv(65_536)
            except TimeoutError:
                return b"".join(chunks), True
            if not chunk:
                return b"".join(chunks), False
            chunks.append(chunk)
    finally:
        try:
            raw_socket.close()
        except OSError:
            logger.debug("Exec socket already closed")
