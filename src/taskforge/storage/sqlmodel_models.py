"""SQLModel ORM tables for the task ledger and the remote sandbox file store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Project(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]

    project_id: str = Field(primary_key=True)
    name: str
    slug: str = Field(sa_column=Column(Text, nullable=False, unique=True))
    description: str | None = Field(default=None, sa_column=Column(Text))
    session_id: str | None = None
    deploy_url: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_project_status", "project_id", "status"),)

    task_id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    plan_json: str | None = Field(default=None, sa_column=Column(Text))
    result: str | None = Field(default=None, sa_column=Column(Text))
    tokens_used: int = Field(default=0)
    duration_ms: int | None = None
    error: str | None = Field(default=None, sa_column=Column(Text))
    failure_reason: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class Step(SQLModel, table=True):
    __tablename__ = "steps"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "step_index", name="uq_steps_task_step_index"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    step_index: int
    step_type: str
    status: str = Field(index=True)
    title: str = Field(sa_column=Column(Text, nullable=False))
    input_json: str | None = Field(default=None, sa_column=Column(Text))
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    duration_ms: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Message(SQLModel, table=True):
    __tablename__ = "messages"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_messages_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    role: str
    content: str | None = Field(default=None, sa_column=Column(Text))
    tool_name: str | None = None
    tool_input_json: str | None = Field(default=None, sa_column=Column(Text))
    tool_output_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkspaceFile(SQLModel, table=True):
    __tablename__ = "workspace_files"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("project_id", "path", name="uq_workspace_files_project_path"),
    )

    id: int | None = Field(default=None, primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    path: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    language: str | None = None
    size_bytes: int = 0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


# Remote store tables. These live in whatever database the cloud-synced
# sandbox points at and are created by the store itself, not by the ledger
# migrations.


class SandboxFile(SQLModel, table=True):
    __tablename__ = "sandbox_files"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("project_id", "file_path", name="uq_sandbox_files_project_path"),
    )

    id: int | None = Field(default=None, primary_key=True)
    project_id: str = Field(index=True)
    file_path: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    language: str | None = None
    size_bytes: int = 0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SandboxJob(SQLModel, table=True):
    __tablename__ = "sandbox_jobs"  # type: ignore[bad-override]

    job_id: str = Field(primary_key=True)
    project_id: str = Field(index=True)
    job_type: str = Field(default="exec")
    command: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(index=True)
    exit_code: int | None = None
    stdout: str | None = Field(default=None, sa_column=Column(Text))
    stderr: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    timeout_ms: int = 300_000
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


LEDGER_TABLES = ("projects", "tasks", "steps", "messages", "workspace_files")
REMOTE_STORE_TABLES = ("sandbox_files", "sandbox_jobs")
