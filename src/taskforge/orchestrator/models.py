"""Domain models for tasks, steps, plans and ledger views."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    QUEUED = "queued"
    PLANNING = "planning"
    EXECUTING = "executing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_TASK_STATUSES = frozenset(
    {TaskStatus.QUEUED, TaskStatus.PLANNING, TaskStatus.EXECUTING, TaskStatus.PAUSED},
)
TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
)


class StepStatus(str, Enum):
    """Step lifecycle states; transitions only move forward."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepType(str, Enum):
    """Kind of work a step represents."""

    PLAN = "plan"
    WRITE_CODE = "write_code"
    READ_FILE = "read_file"
    RUN_COMMAND = "run_command"
    BROWSE = "browse"
    SEARCH = "search"
    DEPLOY = "deploy"
    REASON = "reason"
    ASK_USER = "ask_user"


class MessageRole(str, Enum):
    """Conversation message author."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class FailureReason(str, Enum):
    """Machine-readable reason stored on failed tasks."""

    INFRASTRUCTURE = "infrastructure"
    REASONING_UNAVAILABLE = "reasoning_unavailable"
    INTERNAL_ERROR = "internal_error"
    MAX_ITERATIONS_EXCEEDED = "max_iterations_exceeded"


class ReasoningFailureClass(str, Enum):
    """Normalized reasoning-service failure classes used by the client retry policy."""

    TRANSIENT = "transient"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    INVALID_REQUEST = "invalid_request"
    INVALID_RESPONSE = "invalid_response"


@dataclass(slots=True)
class TaskPlanStep:
    """One planned step as proposed by the reasoning service."""

    title: str
    description: str = ""
    step_type: StepType = StepType.REASON

    def to_dict(self) -> dict[str, str]:
        return {
            "title": self.title,
            "description": self.description,
            "type": self.step_type.value,
        }


@dataclass(slots=True)
class TaskPlan:
    """Goal plus ordered step outline."""

    goal: str
    steps: list[TaskPlanStep] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"goal": self.goal, "steps": [step.to_dict() for step in self.steps]}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskPlan:
        """Build a plan from loosely-shaped JSON, tolerating unknown step types."""

        steps: list[TaskPlanStep] = []
        for raw in payload.get("steps") or []:
            if isinstance(raw, str):
                steps.append(TaskPlanStep(title=raw))
                continue
            if not isinstance(raw, dict):
                continue
            raw_type = str(raw.get("type") or raw.get("step_type") or StepType.REASON.value)
            try:
                step_type = StepType(raw_type)
            except ValueError:
                step_type = StepType.REASON
            steps.append(
                TaskPlanStep(
                    title=str(raw.get("title") or raw.get("description") or "Step"),
                    description=str(raw.get("description") or ""),
                    step_type=step_type,
                ),
            )
        return cls(goal=str(payload.get("goal") or ""), steps=steps)


@dataclass(slots=True)
class ProjectView:
    """Readable project row."""

    project_id: str
    name: str
    slug: str
    description: str | None
    session_id: str | None
    deploy_url: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI and orchestrator logic."""

    task_id: str
    project_id: str
    prompt: str
    status: TaskStatus
    plan: TaskPlan | None
    result: str | None
    tokens_used: int
    duration_ms: int | None
    error: str | None
    failure_reason: FailureReason | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class StepView:
    """Readable step row."""

    step_id: int
    task_id: str
    step_index: int
    step_type: StepType
    status: StepStatus
    title: str
    input: dict[str, Any] | None
    output: dict[str, Any] | None
    duration_ms: int | None
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.step_id,
            "taskId": self.task_id,
            "stepIndex": self.step_index,
            "type": self.step_type.value,
            "status": self.status.value,
            "title": self.title,
            "input": self.input,
            "output": self.output,
            "durationMs": self.duration_ms,
        }


@dataclass(slots=True)
class MessageView:
    """Conversation entry stored in the ledger."""

    message_id: int
    task_id: str
    role: MessageRole
    content: str | None
    tool_name: str | None
    tool_input: dict[str, Any] | None
    tool_output: dict[str, Any] | None
    created_at: datetime


@dataclass(slots=True)
class WorkspaceFileView:
    """Latest known content of one workspace file."""

    project_id: str
    path: str
    content: str
    language: str | None
    size_bytes: int
    updated_at: datetime


@dataclass(slots=True)
class TaskDetails:
    """Task with ordered steps and messages."""

    task: TaskView
    steps: list[StepView]
    messages: list[MessageView]
