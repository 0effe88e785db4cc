"""Task orchestration: plan, act through tools, pause for the user, finish.

Threads, not asyncio
~~~~~~~~~~~~~~~~~~~~
Every blocking call in a task loop (the reasoning HTTP request, a shell
command with a hard timeout, a Playwright page action) already runs through
a synchronous client. One daemon thread per task keeps each loop a plain
sequential function while tasks of different projects proceed in parallel:

- pause is a blocking ``get()`` on the task's resume queue;
- cancellation is a ``threading.Event`` checked between steps that also
  wakes a paused loop;
- the SQLite ledger uses WAL and a busy timeout, and each task only writes
  its own rows.
"""

from taskforge.orchestrator.engine import TaskOrchestrator
from taskforge.orchestrator.events import EventBus, EventChannel, EventKind, TaskEvent
from taskforge.orchestrator.reasoning import (
    AnthropicReasoningService,
    AssistantMessage,
    Completion,
    ReasoningService,
    ScriptedReasoningService,
    ToolCall,
)
from taskforge.orchestrator.repository import LedgerRepository
from taskforge.orchestrator.services import (
    CancelTask,
    CreateTask,
    OrchestratorRegistry,
    ResumeTask,
    TerminalInput,
)

__all__ = [
    "AnthropicReasoningService",
    "AssistantMessage",
    "CancelTask",
    "Completion",
    "CreateTask",
    "EventBus",
    "EventChannel",
    "EventKind",
    "LedgerRepository",
    "OrchestratorRegistry",
    "ReasoningService",
    "ResumeTask",
    "ScriptedReasoningService",
    "TaskEvent",
    "TaskOrchestrator",
    "TerminalInput",
    "ToolCall",
]
