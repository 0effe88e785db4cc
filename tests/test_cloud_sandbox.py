from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import allure
import pytest
from sqlalchemy.exc import OperationalError

from taskforge.errors import ProvisionError, SandboxNotStartedError
from taskforge.sandbox.base import TIMEOUT_EXIT_CODE
from taskforge.sandbox.cloud import CloudSyncedSandbox
from taskforge.sandbox.remote_store import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_TIMEOUT,
    RemoteFile,
    RemoteFileStore,
)

pytestmark = [
    allure.epic("Sandbox"),
    allure.feature("Cloud-Synced Sandbox"),
]

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="bash semantics")


def _store(tmp_path: Path) -> RemoteFileStore:
    return RemoteFileStore(f"sqlite:///{(tmp_path / 'remote' / 'store.db').as_posix()}")


@pytest.fixture()
def cloud_sandbox(tmp_path: Path) -> Iterator[CloudSyncedSandbox]:
    sandbox = CloudSyncedSandbox(
        "proj-cloud",
        store=_store(tmp_path),
        scratch_root=tmp_path / "scratch",
        max_sync_file_bytes=64,
    )
    sandbox.start()
    try:
        yield sandbox
    finally:
        sandbox.stop()


def test_start_creates_store_and_scratch(cloud_sandbox: CloudSyncedSandbox) -> None:
    assert cloud_sandbox.session_id is not None
    assert cloud_sandbox.session_id.startswith("sandbox-")
    assert cloud_sandbox.scratch_dir.is_dir()


def test_write_then_read_goes_through_store(cloud_sandbox: CloudSyncedSandbox) -> None:
    written = cloud_sandbox.write_file("/workspace/src/app.ts", "export {}\n")

    assert written.success
    stored = cloud_sandbox.store.get_file("proj-cloud", "src/app.ts")
    assert stored is not None
    assert stored.language == "typescript"
    assert cloud_sandbox.read_file("src/app.ts").output == "export {}\n"


def test_write_rejects_paths_outside_workspace(cloud_sandbox: CloudSyncedSandbox) -> None:
    result = cloud_sandbox.write_file("../../etc/passwd", "x")

    assert not result.success
    assert cloud_sandbox.store.list_files("proj-cloud") == []


@posix_only
def test_command_output_files_are_pushed_to_store(cloud_sandbox: CloudSyncedSandbox) -> None:
    result = cloud_sandbox.execute("echo hello > f.txt")

    assert result.exit_code == 0
    stored = cloud_sandbox.store.get_file("proj-cloud", "f.txt")
    assert stored is not None
    assert stored.content == "hello\n"
    assert cloud_sandbox.read_file("f.txt").output == "hello\n"


@posix_only
def test_large_files_are_not_synced(cloud_sandbox: CloudSyncedSandbox) -> None:
    cloud_sandbox.execute("printf '%0100d' 0 > big.txt && echo small > small.txt")

    assert cloud_sandbox.store.get_file("proj-cloud", "big.txt") is None
    assert cloud_sandbox.store.get_file("proj-cloud", "small.txt") is not None


@posix_only
def test_every_execute_records_a_job(cloud_sandbox: CloudSyncedSandbox) -> None:
    cloud_sandbox.execute("echo ok")
    cloud_sandbox.execute("echo bad >&2; exit 2")

    jobs = cloud_sandbox.store.list_jobs("proj-cloud")
    assert [job.status for job in jobs] == [JOB_COMPLETED, JOB_FAILED]
    assert jobs[0].stdout == "ok\n"
    assert jobs[1].exit_code == 2
    assert jobs[1].stderr == "bad\n"
    assert all(job.completed_at is not None for job in jobs)


@posix_only
def test_remote_files_survive_a_new_session(tmp_path: Path) -> None:
    first = CloudSyncedSandbox("proj-x", store=_store(tmp_path), scratch_root=tmp_path / "s1")
    first.start()
    first.write_file("keep.txt", "persisted")
    first.stop()
    assert not first.scratch_dir.exists()

    second = CloudSyncedSandbox("proj-x", store=_store(tmp_path), scratch_root=tmp_path / "s2")
    second.start()
    try:
        result = second.execute("cat keep.txt")
    finally:
        second.stop()

    assert result.stdout == "persisted"


def test_list_files_hides_noise_directories(cloud_sandbox: CloudSyncedSandbox) -> None:
    for path in ("index.html", "src/main.js", "src/lib/util.js", "node_modules/x/index.js"):
        cloud_sandbox.write_file(path, "")

    flat = cloud_sandbox.list_files("/workspace")
    nested = cloud_sandbox.list_files("src", recursive=True)

    assert flat.output.splitlines() == ["- index.html", "d src"]
    assert nested.output.splitlines() == ["src/lib/util.js", "src/main.js"]


def test_execute_before_start_raises(tmp_path: Path) -> None:
    sandbox = CloudSyncedSandbox("proj-y", store=_store(tmp_path), scratch_root=tmp_path)

    with pytest.raises(SandboxNotStartedError):
        sandbox.execute("ls")


@posix_only
def test_timed_out_execute_still_pushes_and_records_timeout(
    cloud_sandbox: CloudSyncedSandbox,
) -> None:
    result = cloud_sandbox.execute("echo x > a.txt; sleep 5", timeout_ms=300)

    assert result.timed_out
    assert result.exit_code == TIMEOUT_EXIT_CODE
    stored = cloud_sandbox.store.get_file("proj-cloud", "a.txt")
    assert stored is not None
    assert stored.content == "x\n"
    jobs = cloud_sandbox.store.list_jobs("proj-cloud")
    assert [job.status for job in jobs] == [JOB_TIMEOUT]
    assert jobs[0].completed_at is not None


@posix_only
def test_job_output_is_truncated(tmp_path: Path) -> None:
    store = RemoteFileStore(
        f"sqlite:///{(tmp_path / 'remote' / 'store.db').as_posix()}",
        output_max_chars=10,
    )
    sandbox = CloudSyncedSandbox("proj-t", store=store, scratch_root=tmp_path / "scratch")
    sandbox.start()
    try:
        result = sandbox.execute("printf '%050d' 0; printf '%030d' 1 >&2")
        jobs = store.list_jobs("proj-t")
    finally:
        sandbox.stop()

    assert len(result.stdout) == 50
    assert jobs[0].stdout == "0" * 10
    assert jobs[0].stderr == "0" * 10


def test_unreachable_store_during_pull_closes_the_job(
    cloud_sandbox: CloudSyncedSandbox,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def unreachable(_project_id: str) -> list[RemoteFile]:
        raise OperationalError("SELECT", {}, Exception("database is gone"))

    monkeypatch.setattr(cloud_sandbox.store, "list_files", unreachable)

    with pytest.raises(ProvisionError, match="Remote sandbox store unreachable"):
        cloud_sandbox.execute("echo hi")

    jobs = cloud_sandbox.store.list_jobs("proj-cloud")
    assert [job.status for job in jobs] == [JOB_FAILED]
    assert jobs[0].completed_at is not None
    assert jobs[0].error is not None
    assert "database is gone" in jobs[0].error
    assert jobs[0].exit_code is None


def test_start_rejects_escaping_project_id_and_stop_keeps_outside_files(tmp_path: Path) -> None:
    outside = tmp_path / "escaped"
    outside.mkdir()
    (outside / "keep.txt").write_text("mine", encoding="utf-8")
    sandbox = CloudSyncedSandbox(
        "../escaped",
        store=_store(tmp_path),
        scratch_root=tmp_path / "scratch",
    )

    with pytest.raises(ProvisionError, match="Invalid project id"):
        sandbox.start()
    sandbox.stop()

    assert not sandbox.is_running
    assert (outside / "keep.txt").read_text(encoding="utf-8") == "mine"
