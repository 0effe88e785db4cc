"""Remote file/job store used by the cloud-synced sandbox."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, col, select

from taskforge.errors import ProvisionError
from taskforge.sandbox.base import CommandResult
from taskforge.storage.common import build_engine_from_url, utc_now
from taskforge.storage.sqlmodel_models import SandboxFile, SandboxJob

logger = logging.getLogger(__name__)

JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_TIMEOUT = "timeout"


@dataclass(slots=True)
class RemoteFile:
    """One file row as stored remotely."""

    path: str
    content: str
    language: str | None
    size_bytes: int


class RemoteFileStore:
    """SQLModel-backed ``sandbox_files`` / ``sandbox_jobs`` tables at an arbitrary URL."""

    def __init__(self, url: str, *, output_max_chars: int = 50_000) -> None:
        self.url = url
        self.output_max_chars = output_max_chars
        self.engine = build_engine_from_url(url=url)

    def init(self) -> None:
        """Create store tables when missing; raise ProvisionError if unreachable."""

        if self.url.startswith("sqlite:///"):
            Path(self.url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)
        try:
            SQLModel.metadata.create_all(
                self.engine,
                tables=[SandboxFile.__table__, SandboxJob.__table__],  # type: ignore[attr-defined]
            )
        except SQLAlchemyError as error:
            raise ProvisionError(f"Remote sandbox store unreachable: {error}") from error

    def close(self) -> None:
        self.engine.dispose()

    def list_files(self, project_id: str) -> list[RemoteFile]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(SandboxFile)
                .where(SandboxFile.project_id == project_id)
                .order_by(col(SandboxFile.file_path).asc()),
            ).all()
        return [_to_remote_file(row) for row in rows]

    def get_file(self, project_id: str, path: str) -> RemoteFile | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(SandboxFile).where(
                    SandboxFile.project_id == project_id,
                    SandboxFile.file_path == path,
                ),
            ).one_or_none()
        return _to_remote_file(row) if row is not None else None

    def put_file(self, project_id: str, path: str, content: str, language: str | None) -> None:
        """Upsert one file by (project, path)."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(SandboxFile).where(
                    SandboxFile.project_id == project_id,
                    SandboxFile.file_path == path,
                ),
            ).one_or_none()
            if row is None:
                row = SandboxFile(
                    project_id=project_id,
                    file_path=path,
                    content=content,
                    created_at=now,
                    updated_at=now,
                )
            row.content = content
            row.language = language
            row.size_bytes = len(content.encode("utf-8"))
            row.updated_at = now
            session.add(row)
            session.commit()

    def start_job(self, *, project_id: str, command: str, timeout_ms: int) -> str:
        job_id = str(uuid4())
        now = utc_now()
        with Session(self.engine) as session:
            session.add(
                SandboxJob(
                    job_id=job_id,
                    project_id=project_id,
                    job_type="exec",
                    command=command,
                    status=JOB_RUNNING,
                    timeout_ms=timeout_ms,
                    created_at=now,
                    started_at=now,
                ),
            )
            session.commit()
        return job_id

    def finish_job(
        self,
        *,
        job_id: str,
        result: CommandResult | None,
        error: str | None = None,
    ) -> None:
        """Store the command outcome with stdout/stderr truncated."""

        with Session(self.engine) as session:
            row = session.get(SandboxJob, job_id)
            if row is None:
                return
            if result is None:
                row.status = JOB_FAILED
            elif result.timed_out:
                row.status = JOB_TIMEOUT
            else:
                row.status = JOB_COMPLETED if result.exit_code == 0 else JOB_FAILED
            if result is not None:
                row.exit_code = result.exit_code
                row.stdout = result.stdout[: self.output_max_chars]
                row.stderr = result.stderr[: self.output_max_chars]
            row.error = error
            row.completed_at = utc_now()
            session.add(row)
            session.commit()

    def get_job(self, job_id: str) -> SandboxJob | None:
        with Session(self.engine) as session:
            return session.get(SandboxJob, job_id)

    def list_jobs(self, project_id: str) -> list[SandboxJob]:
        with Session(self.engine) as session:
            return list(
                session.exec(
                    select(SandboxJob)
                    .where(SandboxJob.project_id == project_id)
                    .order_by(col(SandboxJob.created_at).asc()),
                ).all(),
            )


def _to_remote_file(row: SandboxFile) -> RemoteFile:
    return RemoteFile(
        path=row.file_path,
        content=row.content,
        language=row.language,
        size_bytes=row.size_bytes,
    )
