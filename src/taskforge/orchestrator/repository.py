"""Task/step ledger backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from taskforge.orchestrator.models import (
    ACTIVE_TASK_STATUSES,
    FailureReason,
    MessageRole,
    MessageView,
    ProjectView,
    StepStatus,
    StepType,
    StepView,
    TaskDetails,
    TaskPlan,
    TaskStatus,
    TaskView,
    WorkspaceFileView,
)
from taskforge.storage.alembic_runner import upgrade_head
from taskforge.storage.common import build_sqlite_engine, to_utc_aware, utc_now
from taskforge.storage.sqlmodel_models import Message, Project, Step, Task, WorkspaceFile

logger = logging.getLogger(__name__)

_ALLOWED_SOURCES: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PLANNING: frozenset({TaskStatus.QUEUED}),
    TaskStatus.EXECUTING: frozenset({TaskStatus.PLANNING, TaskStatus.PAUSED}),
    TaskStatus.PAUSED: frozenset({TaskStatus.EXECUTING}),
    TaskStatus.COMPLETED: frozenset({TaskStatus.EXECUTING}),
    TaskStatus.FAILED: ACTIVE_TASK_STATUSES,
    TaskStatus.CANCELLED: ACTIVE_TASK_STATUSES,
}
_OPEN_STEP_STATUSES = (StepStatus.PENDING.value, StepStatus.RUNNING.value)
_FINISHED_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED})


class LedgerRepository:
    """Persistence facade for projects, tasks, steps, messages and workspace files.

    Task status changes are conditional updates: a transition only applies when
    the row is still in one of the allowed source states, so ``failed`` and
    ``cancelled`` stay absorbing even when a late writer races the orchestrator.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    # Projects

    def ensure_project(
        self,
        project_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> ProjectView:
        """Return the project, creating it with a generated slug when unknown."""

        with Session(self.engine) as session:
            row = session.get(Project, project_id)
            if row is not None:
                return _to_project_view(row)
            now = utc_now()
            row = Project(
                project_id=project_id,
                name=(name or project_id)[:100],
                slug=f"project-{uuid4().hex[:8]}",
                description=description,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info("Created project %s (slug=%s)", project_id, row.slug)
            return _to_project_view(row)

    def get_project(self, project_id: str) -> ProjectView | None:
        with Session(self.engine) as session:
            row = session.get(Project, project_id)
            return _to_project_view(row) if row is not None else None

    def set_project_session(self, *, project_id: str, session_id: str | None) -> None:
        """Remember the sandbox session currently bound to the project."""

        self._update_project(project_id=project_id, session_id=session_id)

    def set_project_deploy_url(self, *, project_id: str, deploy_url: str) -> None:
        self._update_project(project_id=project_id, deploy_url=deploy_url)

    def _update_project(self, *, project_id: str, **values: object) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(Project)
                .where(col(Project.project_id) == project_id)
                .values(updated_at=utc_now(), **values),
            )
            session.commit()

    # Tasks

    def create_task(self, *, project_id: str, prompt: str, task_id: str | None = None) -> TaskView:
        """Create a queued task for an existing project."""

        now = utc_now()
        with Session(self.engine) as session:
            row = Task(
                task_id=task_id or str(uuid4()),
                project_id=project_id,
                prompt=prompt,
                status=TaskStatus.QUEUED.value,
                tokens_used=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return _to_task_view(row) if row is not None else None

    def mark_planning(self, *, task_id: str) -> bool:
        return self._transition(task_id=task_id, status_to=TaskStatus.PLANNING)

    def mark_executing(self, *, task_id: str) -> bool:
        """Move a planning or paused task into the execution loop."""

        return self._transition(task_id=task_id, status_to=TaskStatus.EXECUTING)

    def mark_paused(self, *, task_id: str) -> bool:
        return self._transition(task_id=task_id, status_to=TaskStatus.PAUSED)

    def complete_task(self, *, task_id: str, result: str, duration_ms: int | None) -> bool:
        """Mark an executing task as completed with its final answer."""

        return self._transition(
            task_id=task_id,
            status_to=TaskStatus.COMPLETED,
            values={
                "result": result,
                "duration_ms": duration_ms,
                "completed_at": utc_now(),
            },
        )

    def fail_task(
        self,
        *,
        task_id: str,
        error: str,
        failure_reason: FailureReason,
        duration_ms: int | None,
    ) -> bool:
        """Mark any active task as failed."""

        return self._transition(
            task_id=task_id,
            status_to=TaskStatus.FAILED,
            values={
                "error": error,
                "failure_reason": failure_reason.value,
                "duration_ms": duration_ms,
                "completed_at": utc_now(),
            },
        )

    def cancel_task(self, *, task_id: str, duration_ms: int | None = None) -> bool:
        """Mark any active task as cancelled; terminal tasks are left untouched."""

        values: dict[str, object] = {"completed_at": utc_now()}
        if duration_ms is not None:
            values["duration_ms"] = duration_ms
        return self._transition(task_id=task_id, status_to=TaskStatus.CANCELLED, values=values)

    def set_plan(self, *, task_id: str, plan: TaskPlan) -> bool:
        """Store (or replace) the plan of an active task."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status).in_([status.value for status in ACTIVE_TASK_STATUSES]),
                )
                .values(
                    plan_json=json.dumps(plan.to_dict(), ensure_ascii=False),
                    updated_at=utc_now(),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def add_tokens(self, *, task_id: str, tokens: int) -> None:
        """Accumulate reasoning token usage."""

        if tokens <= 0:
            return
        with Session(self.engine) as session:
            session.exec(
                sa_update(Task)
                .where(col(Task.task_id) == task_id)
                .values(tokens_used=col(Task.tokens_used) + tokens),
            )
            session.commit()

    def list_tasks(
        self,
        *,
        project_id: str | None = None,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by project and status."""

        with Session(self.engine) as session:
            statement = select(Task).order_by(col(Task.created_at).desc()).limit(limit)
            if project_id is not None:
                statement = statement.where(Task.project_id == project_id)
            if status is not None:
                statement = statement.where(Task.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task with steps ordered by index and messages by creation."""

        with Session(self.engine) as session:
            task = session.get(Task, task_id)
            if task is None:
                return None
            step_rows = session.exec(
                select(Step).where(Step.task_id == task_id).order_by(col(Step.step_index).asc()),
            ).all()
            message_rows = session.exec(
                select(Message)
                .where(Message.task_id == task_id)
                .order_by(col(Message.created_at).asc(), col(Message.id).asc()),
            ).all()
            return TaskDetails(
                task=_to_task_view(task),
                steps=[_to_step_view(row) for row in step_rows],
                messages=[_to_message_view(row) for row in message_rows],
            )

    def _transition(
        self,
        *,
        task_id: str,
        status_to: TaskStatus,
        values: dict[str, object] | None = None,
    ) -> bool:
        sources = _ALLOWED_SOURCES[status_to]
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status).in_([status.value for status in sources]),
                )
                .values(status=status_to.value, updated_at=now, **(values or {})),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.debug("Task %s: transition to %s rejected", task_id, status_to.value)
                return False
            if status_to in {TaskStatus.FAILED, TaskStatus.CANCELLED}:
                session.exec(
                    sa_update(Step)
                    .where(
                        col(Step.task_id) == task_id,
                        col(Step.status).in_(_OPEN_STEP_STATUSES),
                    )
                    .values(status=StepStatus.SKIPPED.value, updated_at=now),
                )
            session.commit()
            return True

    # Steps

    def create_step(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        step_type: StepType,
        title: str,
        input_payload: dict[str, Any] | None = None,
        status: StepStatus = StepStatus.RUNNING,
    ) -> StepView | None:
        """Append a step with the next contiguous index; None if the task is no longer active."""

        now = utc_now()
        with Session(self.engine) as session:
            task = session.get(Task, task_id)
            if task is None or TaskStatus(task.status) not in ACTIVE_TASK_STATUSES:
                return None
            last_index = session.exec(
                select(func.max(Step.step_index)).where(Step.task_id == task_id),
            ).one()
            row = Step(
                task_id=task_id,
                step_index=0 if last_index is None else last_index + 1,
                step_type=step_type.value,
                status=status.value,
                title=title,
                input_json=_dump_json(input_payload),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_step_view(row)

    def finish_step(
        self,
        *,
        step_id: int,
        status: StepStatus,
        output_payload: dict[str, Any] | None = None,
        duration_ms: int | None = None,
    ) -> StepView | None:
        """Close an open step; ignored once the owning task is terminal."""

        if status not in _FINISHED_STEP_STATUSES:
            raise ValueError(f"Unsupported step finish status: {status}")

        active_tasks = sa_select(Task.task_id).where(
            col(Task.status).in_([item.value for item in ACTIVE_TASK_STATUSES]),
        )
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Step)
                .where(
                    col(Step.id) == step_id,
                    col(Step.status).in_(_OPEN_STEP_STATUSES),
                    col(Step.task_id).in_(active_tasks),
                )
                .values(
                    status=status.value,
                    output_json=_dump_json(output_payload),
                    duration_ms=duration_ms,
                    updated_at=utc_now(),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            row = session.get(Step, step_id)
            return _to_step_view(row) if row is not None else None

    # Messages and workspace files

    def append_message(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        role: MessageRole,
        content: str | None = None,
        tool_name: str | None = None,
        tool_input: dict[str, Any] | None = None,
        tool_output: dict[str, Any] | None = None,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                Message(
                    task_id=task_id,
                    role=role.value,
                    content=content,
                    tool_name=tool_name,
                    tool_input_json=_dump_json(tool_input),
                    tool_output_json=_dump_json(tool_output),
                    created_at=utc_now(),
                ),
            )
            session.commit()

    def upsert_workspace_file(
        self,
        *,
        project_id: str,
        path: str,
        content: str,
        language: str | None,
    ) -> WorkspaceFileView:
        """Last-writer-wins overwrite of one workspace file row."""

        now = utc_now()
        size_bytes = len(content.encode("utf-8"))
        with Session(self.engine) as session:
            row = session.exec(
                select(WorkspaceFile).where(
                    WorkspaceFile.project_id == project_id,
                    WorkspaceFile.path == path,
                ),
            ).one_or_none()
            if row is None:
                row = WorkspaceFile(
                    project_id=project_id,
                    path=path,
                    content=content,
                    language=language,
                    size_bytes=size_bytes,
                    created_at=now,
                    updated_at=now,
                )
            else:
                row.content = content
                row.language = language
                row.size_bytes = size_bytes
                row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_workspace_file_view(row)

    def list_workspace_files(self, *, project_id: str) -> list[WorkspaceFileView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkspaceFile)
                .where(WorkspaceFile.project_id == project_id)
                .order_by(col(WorkspaceFile.path).asc()),
            ).all()
        return [_to_workspace_file_view(row) for row in rows]


def _dump_json(payload: dict[str, Any] | None) -> str | None:
    if payload is None:
        return None
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)


def _load_json(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    parsed = json.loads(raw)
    if isinstance(parsed, dict):
        return parsed
    return {"value": parsed}


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware(value) if value is not None else None


def _to_project_view(row: Project) -> ProjectView:
    return ProjectView(
        project_id=row.project_id,
        name=row.name,
        slug=row.slug,
        description=row.description,
        session_id=row.session_id,
        deploy_url=row.deploy_url,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )


def _to_task_view(row: Task) -> TaskView:
    plan_payload = _load_json(row.plan_json)
    return TaskView(
        task_id=row.task_id,
        project_id=row.project_id,
        prompt=row.prompt,
        status=TaskStatus(row.status),
        plan=TaskPlan.from_dict(plan_payload) if plan_payload is not None else None,
        result=row.result,
        tokens_used=row.tokens_used,
        duration_ms=row.duration_ms,
        error=row.error,
        failure_reason=(
            FailureReason(row.failure_reason) if row.failure_reason is not None else None
        ),
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        completed_at=_optional_aware(row.completed_at),
    )


def _to_step_view(row: Step) -> StepView:
    return StepView(
        step_id=row.id or 0,
        task_id=row.task_id,
        step_index=row.step_index,
        step_type=StepType(row.step_type),
        status=StepStatus(row.status),
        title=row.title,
        input=_load_json(row.input_json),
        output=_load_json(row.output_json),
        duration_ms=row.duration_ms,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )


def _to_message_view(row: Message) -> MessageView:
    return MessageView(
        message_id=row.id or 0,
        task_id=row.task_id,
        role=MessageRole(row.role),
        content=row.content,
        tool_name=row.tool_name,
        tool_input=_load_json(row.tool_input_json),
        tool_output=_load_json(row.tool_output_json),
        created_at=to_utc_aware(row.created_at),
    )


def _to_workspace_file_view(row: WorkspaceFile) -> WorkspaceFileView:
    return WorkspaceFileView(
        project_id=row.project_id,
        path=row.path,
        content=row.content,
        language=row.language,
        size_bytes=row.size_bytes,
        updated_at=to_utc_aware(row.updated_at),
    )
