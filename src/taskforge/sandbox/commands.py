"""Shell command rewriting and subprocess execution with a hard timeout."""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import tempfile
import time
from pathlib import Path
from typing import IO

from taskforge.sandbox.base import TIMEOUT_EXIT_CODE, CommandResult, timeout_marker

logger = logging.getLogger(__name__)

_CD_WORKSPACE_RE = re.compile(r"cd\s+/workspace\s*&&\s*")
_WORKSPACE_DIR_RE = re.compile(r"(?<![\w./-])/workspace/")
_WORKSPACE_RE = re.compile(r"(?<![\w./-])/workspace\b")
_POLL_INTERVAL_SECONDS = 0.05


def is_windows_host() -> bool:
    return os.name == "nt"


def rewrite_command(command: str, workspace_root: Path, *, windows: bool | None = None) -> str:
    """Point ``/workspace`` references at the real root; translate a few idioms on Windows."""

    on_windows = is_windows_host() if windows is None else windows
    rewritten = _CD_WORKSPACE_RE.sub("", command)
    if on_windows:
        rewritten = _WORKSPACE_DIR_RE.sub(lambda _: ".\\", rewritten)
        rewritten = _WORKSPACE_RE.sub(lambda _: ".", rewritten)
        rewritten = re.sub(r"nohup\s+", "", rewritten)
        rewritten = re.sub(r"\s*(?<!&)&\s*$", "", rewritten)
        return re.sub(r"\bwhich\s+", "where ", rewritten)

    root = workspace_root.resolve().as_posix()
    rewritten = _WORKSPACE_DIR_RE.sub(lambda _: f"{root}/", rewritten)
    return _WORKSPACE_RE.sub(lambda _: root, rewritten)


def run_shell_command(
    command: str,
    *,
    cwd: Path,
    timeout_ms: int,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run ``command`` through the shell, killing its whole process group on timeout.

    Output goes to temporary files rather than pipes so that background children
    holding the descriptors open do not keep the call blocked.
    """

    run_env = os.environ.copy()
    run_env.setdefault("HOME", str(Path.home()))
    if env:
        run_env.update(env)

    started = time.monotonic()
    with (
        tempfile.TemporaryFile() as stdout_handle,
        tempfile.TemporaryFile() as stderr_handle,
    ):
        process = subprocess.Popen(  # noqa: S602
            command,
            shell=True,
            cwd=cwd,
            env=run_env,
            stdin=subprocess.DEVNULL,
            stdout=stdout_handle,
            stderr=stderr_handle,
            executable=_shell_executable(),
            start_new_session=not is_windows_host(),
        )
        timed_out = _wait_with_deadline(process, timeout_seconds=timeout_ms / 1000.0)
        stdout = _read_output(stdout_handle)
        stderr = _read_output(stderr_handle)

    duration_ms = int((time.monotonic() - started) * 1000)
    if timed_out:
        logger.warning("Command timed out after %d ms: %s", timeout_ms, command[:200])
        marker = timeout_marker(timeout_ms)
        stderr = f"{stderr.rstrip()}\n{marker}" if stderr.strip() else marker
        return CommandResult(
            exit_code=TIMEOUT_EXIT_CODE,
            stdout=stdout,
            stderr=stderr,
            timed_out=True,
            duration_ms=duration_ms,
        )
    return CommandResult(
        exit_code=process.returncode,
        stdout=stdout,
        stderr=stderr,
        timed_out=False,
        duration_ms=duration_ms,
    )


def _shell_executable() -> str | None:
    if is_windows_host():
        return None
    bash = Path("/bin/bash")
    return str(bash) if bash.exists() else None


def _wait_with_deadline(process: subprocess.Popen[bytes], *, timeout_seconds: float) -> bool:
    deadline = time.monotonic() + timeout_seconds
    while True:
        if process.poll() is not None:
            return False
        if time.monotonic() >= deadline:
            _terminate_process_group(process)
            return True
        time.sleep(_POLL_INTERVAL_SECONDS)


def _terminate_process_group(process: subprocess.Popen[bytes]) -> None:
    if is_windows_host():
        _terminate_process(process)
        return
    try:
        os.killpg(process.pid, signal.SIGTERM)
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except OSError:
            return
        process.wait(timeout=2)


def _terminate_process(process: subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _read_output(handle: IO[bytes]) -> str:
    handle.seek(0)
    return handle.read().decode("utf-8", errors="replace")
