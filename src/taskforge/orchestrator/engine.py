"""Per-task agent loop: plan, dispatch tool calls, pause for the user, finish."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from typing import Any, assert_never

from taskforge.config import OrchestratorSettings, ToolSettings
from taskforge.errors import ReasoningServiceError, SandboxNotStartedError, TaskforgeError
from taskforge.orchestrator.events import EventChannel, EventKind, TaskEvent
from taskforge.orchestrator.models import (
    FailureReason,
    MessageRole,
    StepStatus,
    StepType,
    TaskPlan,
    TaskView,
)
from taskforge.orchestrator.reasoning import (
    AssistantMessage,
    Completion,
    Conversation,
    ReasoningService,
    ToolCall,
)
from taskforge.orchestrator.repository import LedgerRepository
from taskforge.sandbox.base import SandboxBackend
from taskforge.tools import ToolBox, ToolResult, build_toolbox

logger = logging.getLogger(__name__)

ASK_USER_TOOL = "ask_user"
TITLE_PREVIEW_CHARS = 60
_CANCELLED = object()

TOOL_STEP_TYPES: dict[str, StepType] = {
    "plan": StepType.PLAN,
    "write_file": StepType.WRITE_CODE,
    "read_file": StepType.READ_FILE,
    "list_files": StepType.READ_FILE,
    "run_command": StepType.RUN_COMMAND,
    "search_web": StepType.SEARCH,
    "browse": StepType.BROWSE,
    "deploy": StepType.DEPLOY,
    ASK_USER_TOOL: StepType.ASK_USER,
}

ToolBoxFactory = Callable[[SandboxBackend, str], ToolBox]


class TaskOrchestrator:
    """Drives one task against one sandbox session.

    ``execute`` runs the whole lifecycle on the calling thread; ``start`` runs it
    on a daemon thread. ``cancel`` and ``resume`` are safe to call from any thread.
    The loop is strictly sequential: one tool call in flight at a time.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        task: TaskView,
        repository: LedgerRepository,
        sandbox: SandboxBackend,
        reasoning: ReasoningService,
        channel: EventChannel,
        settings: OrchestratorSettings | None = None,
        tool_settings: ToolSettings | None = None,
        toolbox_factory: ToolBoxFactory | None = None,
    ) -> None:
        self.task_id = task.task_id
        self.project_id = task.project_id
        self.prompt = task.prompt
        self.repository = repository
        self.sandbox = sandbox
        self.reasoning = reasoning
        self.channel = channel
        self.settings = settings or OrchestratorSettings()
        tools = tool_settings or ToolSettings()
        self._toolbox_factory = toolbox_factory or (
            lambda sandbox_, slug: build_toolbox(sandbox_, settings=tools, project_slug=slug)
        )
        self._toolbox: ToolBox | None = None
        self._conversation = Conversation(prompt=task.prompt)
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._done = threading.Event()
        self._resume_queue: queue.Queue[object] = queue.Queue()
        self._paused = False
        self._started_at: float | None = None
        self._thread: threading.Thread | None = None
        self._session_id: str | None = None
        self.iterations_used = 0

    # Control surface

    @property
    def is_cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def is_paused(self) -> bool:
        with self._lock:
            return self._paused

    @property
    def is_done(self) -> bool:
        return self._done.is_set()

    def start(self, *, after: TaskOrchestrator | None = None) -> threading.Thread:
        """Run on a daemon thread, optionally once ``after`` has left its loop."""

        thread = threading.Thread(
            target=self._execute_after,
            args=(after,),
            name=f"task-{self.task_id[:8]}",
            daemon=True,
        )
        self._thread = thread
        thread.start()
        return thread

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the task to leave the loop; returns False on timeout."""

        return self._done.wait(timeout)

    def cancel(self) -> bool:
        """Stop issuing tool calls; the ledger moves to ``cancelled`` right away."""

        with self._lock:
            if self._cancel.is_set():
                return False
            self._cancel.set()
            self._paused = False
        self._resume_queue.put(_CANCELLED)
        cancelled = self.repository.cancel_task(
            task_id=self.task_id,
            duration_ms=self._elapsed_ms(),
        )
        if cancelled:
            logger.info("Task %s cancelled", self.task_id)
            self._emit(EventKind.TASK_CANCELLED)
        return cancelled

    def resume(self, answer: str) -> bool:
        with self._lock:
            if not self._paused or self._cancel.is_set():
                logger.warning("Task %s is not waiting for input; resume ignored", self.task_id)
                return False
            self._paused = False
        self._resume_queue.put(answer)
        return True

    def send_terminal_input(self, data: str) -> None:
        toolbox = self._toolbox
        if toolbox is None:
            logger.info("Task %s has no terminal yet; input ignored", self.task_id)
            return
        toolbox.terminal.send_input(data)

    # Lifecycle

    def _execute_after(self, previous: TaskOrchestrator | None) -> None:
        if previous is not None:
            # The superseded loop may still be finishing an in-flight tool call.
            previous.join()
        self.execute()

    def execute(self) -> None:
        self._started_at = time.monotonic()
        try:
            if not self._cancel.is_set():
                self._run()
        except ReasoningServiceError as exc:
            logger.warning("Task %s: reasoning service failed: %s", self.task_id, exc)
            self._fail(str(exc), FailureReason.REASONING_UNAVAILABLE)
        except TaskforgeError as exc:
            logger.warning("Task %s: infrastructure failure: %s", self.task_id, exc)
            self._fail(str(exc), FailureReason.INFRASTRUCTURE)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Task %s crashed", self.task_id)
            self._fail(f"Internal error: {exc}", FailureReason.INTERNAL_ERROR)
        finally:
            self._teardown()
            self._done.set()

    def _run(self) -> None:
        self._session_id = self.sandbox.start()
        self.repository.set_project_session(
            project_id=self.project_id,
            session_id=self._session_id,
        )
        project = self.repository.get_project(self.project_id)
        slug = project.slug if project is not None else self.project_id
        self._toolbox = self._toolbox_factory(self.sandbox, slug)

        if not self.repository.mark_planning(task_id=self.task_id):
            return
        self._emit(EventKind.TASK_STARTED)
        self.repository.append_message(
            task_id=self.task_id,
            role=MessageRole.USER,
            content=self.prompt,
        )
        self._plan()
        if not self.repository.mark_executing(task_id=self.task_id):
            return
        self._loop()

    def _plan(self) -> None:
        step = self.repository.create_step(
            task_id=self.task_id,
            step_type=StepType.PLAN,
            title="Planning",
            input_payload={"prompt": self.prompt},
        )
        if step is None:
            return
        self._emit(EventKind.STEP_STARTED, step=step.to_dict())
        started = time.monotonic()
        outcome = self.reasoning.plan(self.prompt)
        self.repository.add_tokens(task_id=self.task_id, tokens=outcome.tokens_used)
        if self._cancel.is_set():
            return
        self._store_plan(outcome.plan)
        finished = self.repository.finish_step(
            step_id=step.step_id,
            status=StepStatus.COMPLETED,
            output_payload=outcome.plan.to_dict(),
            duration_ms=_ms_since(started),
        )
        if finished is not None:
            self._emit(EventKind.STEP_COMPLETED, step=finished.to_dict())

    def _loop(self) -> None:
        max_iterations = self.settings.max_iterations
        while self.iterations_used < max_iterations:
            if self._cancel.is_set():
                return
            turn = self.reasoning.next_turn(self._conversation)
            self.repository.add_tokens(task_id=self.task_id, tokens=turn.tokens_used)
            if self._cancel.is_set():
                return

            outcome = turn.outcome
            match outcome:
                case ToolCall(name=name) if name == ASK_USER_TOOL:
                    # Waiting for a human does not spend iteration budget.
                    self._ask_user(outcome)
                case ToolCall():
                    self.iterations_used += 1
                    self._dispatch(outcome)
                case AssistantMessage():
                    self.iterations_used += 1
                    self._say(outcome.content)
                case Completion():
                    self._complete(outcome.result)
                    return
                case _:
                    assert_never(outcome)

        if self._cancel.is_set():
            return
        logger.warning("Task %s exhausted %d iterations", self.task_id, max_iterations)
        self._fail(
            f"Agent exceeded maximum steps ({max_iterations}).",
            FailureReason.MAX_ITERATIONS_EXCEEDED,
        )

    # Turn handlers

    def _think(self, call: ToolCall) -> None:
        if not call.text:
            return
        self._emit(EventKind.AGENT_THINKING, thought=call.text)
        self.repository.append_message(
            task_id=self.task_id,
            role=MessageRole.ASSISTANT,
            content=call.text,
        )

    def _dispatch(self, call: ToolCall) -> None:
        self._think(call)
        step_type = TOOL_STEP_TYPES.get(call.name, StepType.REASON)
        step = self.repository.create_step(
            task_id=self.task_id,
            step_type=step_type,
            title=_step_title(call),
            input_payload=_input_preview(call.input),
        )
        if step is None:
            return
        self._emit(EventKind.STEP_STARTED, step=step.to_dict())

        started = time.monotonic()
        result = self._run_tool(call)
        if self._cancel.is_set():
            logger.info("Task %s: discarding %s result after cancel", self.task_id, call.name)
            return

        finished = self.repository.finish_step(
            step_id=step.step_id,
            status=StepStatus.COMPLETED if result.success else StepStatus.FAILED,
            output_payload=self._output_payload(result),
            duration_ms=_ms_since(started),
        )
        if finished is None:
            return
        if result.success:
            self._emit(EventKind.STEP_COMPLETED, step=finished.to_dict())
        else:
            self._emit(EventKind.STEP_FAILED, step=finished.to_dict(), error=result.error)

        content = self._tool_result_content(result)
        self.repository.append_message(
            task_id=self.task_id,
            role=MessageRole.TOOL,
            content=content,
            tool_name=call.name,
            tool_input=_input_preview(call.input),
            tool_output=self._output_payload(result),
        )
        self._conversation.record_tool_exchange(call, content=content, is_error=not result.success)

    def _ask_user(self, call: ToolCall) -> None:
        self._think(call)
        question = _str_arg(call.input, "question") or "The agent needs your input to continue."
        step = self.repository.create_step(
            task_id=self.task_id,
            step_type=StepType.ASK_USER,
            title="Asking user",
            input_payload={"question": question},
        )
        if step is None:
            return
        self._emit(EventKind.STEP_STARTED, step=step.to_dict())
        self.repository.append_message(
            task_id=self.task_id,
            role=MessageRole.ASSISTANT,
            content=question,
        )

        started = time.monotonic()
        with self._lock:
            if self._cancel.is_set():
                return
            self._paused = True
        if not self.repository.mark_paused(task_id=self.task_id):
            with self._lock:
                self._paused = False
            return
        logger.info("Task %s paused: %s", self.task_id, question)
        self._emit(EventKind.TASK_PAUSED, question=question)

        answer = self._resume_queue.get()
        if answer is _CANCELLED or self._cancel.is_set():
            return
        text = str(answer)
        if not self.repository.mark_executing(task_id=self.task_id):
            return
        logger.info("Task %s resumed", self.task_id)
        self._emit(EventKind.TASK_RESUMED)
        self.repository.append_message(task_id=self.task_id, role=MessageRole.USER, content=text)

        finished = self.repository.finish_step(
            step_id=step.step_id,
            status=StepStatus.COMPLETED,
            output_payload={"answer": text},
            duration_ms=_ms_since(started),
        )
        if finished is not None:
            self._emit(EventKind.STEP_COMPLETED, step=finished.to_dict())
        self._conversation.record_tool_exchange(
            call,
            content=f"User answered: {text}",
            is_error=False,
        )

    def _say(self, content: str) -> None:
        if not content.strip():
            return
        self._emit(EventKind.AGENT_MESSAGE, content=content)
        self.repository.append_message(
            task_id=self.task_id,
            role=MessageRole.ASSISTANT,
            content=content,
        )
        self._conversation.record_message(content)

    def _complete(self, result: str) -> None:
        if result.strip():
            self._emit(EventKind.AGENT_MESSAGE, content=result)
            self.repository.append_message(
                task_id=self.task_id,
                role=MessageRole.ASSISTANT,
                content=result,
            )
        if self.repository.complete_task(
            task_id=self.task_id,
            result=result,
            duration_ms=self._elapsed_ms(),
        ):
            logger.info("Task %s completed", self.task_id)
            self._emit(EventKind.TASK_COMPLETED, result=result)

    def _fail(self, error: str, reason: FailureReason) -> None:
        if self.repository.fail_task(
            task_id=self.task_id,
            error=error,
            failure_reason=reason,
            duration_ms=self._elapsed_ms(),
        ):
            self._emit(EventKind.TASK_FAILED, error=error, reason=reason.value)

    def _teardown(self) -> None:
        with self._lock:
            self._paused = False
        if self._toolbox is not None:
            try:
                self._toolbox.close()
            except Exception:  # noqa: BLE001
                logger.exception("Task %s: failed to close tools", self.task_id)
        try:
            self.sandbox.stop()
        except Exception:  # noqa: BLE001
            logger.exception("Task %s: failed to stop sandbox", self.task_id)
        try:
            self.reasoning.close()
        except Exception:  # noqa: BLE001
            logger.exception("Task %s: failed to close reasoning client", self.task_id)
        project = self.repository.get_project(self.project_id)
        if project is not None and project.session_id == self._session_id:
            self.repository.set_project_session(project_id=self.project_id, session_id=None)

    # Tool dispatch

    def _run_tool(self, call: ToolCall) -> ToolResult:  # noqa: PLR0911
        toolbox = self._toolbox
        if toolbox is None:
            raise SandboxNotStartedError("Tools requested before the sandbox started")
        args = call.input
        match call.name:
            case "plan":
                plan = TaskPlan.from_dict(args)
                self._store_plan(plan)
                return ToolResult(
                    success=True,
                    output=f"Plan recorded with {len(plan.steps)} steps. Continue with step 1.",
                )
            case "write_file":
                path = _str_arg(args, "path")
                content = args.get("content")
                if not path or not isinstance(content, str):
                    return ToolResult.failure("write_file requires 'path' and 'content'")
                result = toolbox.filesystem.write_file(path, content)
                if result.success:
                    self._record_file(result, content)
                return result
            case "read_file":
                path = _str_arg(args, "path")
                if not path:
                    return ToolResult.failure("read_file requires 'path'")
                return toolbox.filesystem.read_file(path)
            case "list_files":
                return toolbox.filesystem.list_files(
                    _str_arg(args, "path") or "/workspace",
                    bool(args.get("recursive", False)),
                )
            case "run_command":
                command = _str_arg(args, "command") or ""
                result = toolbox.terminal.execute(command, _int_arg(args, "timeout"))
                if not self._cancel.is_set():
                    self._emit(EventKind.TERMINAL_OUTPUT, output=f"$ {command}\n{result.output}")
                return result
            case "search_web":
                return toolbox.search.search(_str_arg(args, "query") or "")
            case "browse":
                result = toolbox.browser.execute(
                    _str_arg(args, "action") or "navigate",
                    url=_str_arg(args, "url"),
                    selector=_str_arg(args, "selector"),
                    text=_str_arg(args, "text"),
                    wait_time_ms=_int_arg(args, "waitTime"),
                )
                screenshot = result.metadata.get("screenshot")
                if screenshot and not self._cancel.is_set():
                    self._emit(
                        EventKind.BROWSER_SCREENSHOT,
                        url=result.metadata.get("url"),
                        imageBase64=screenshot,
                    )
                return result
            case "deploy":
                result = toolbox.deploy.deploy(
                    build_command=_str_arg(args, "buildCommand"),
                    start_command=_str_arg(args, "startCommand"),
                    port=_int_arg(args, "port"),
                )
                url = result.metadata.get("url")
                if result.success and url and not self._cancel.is_set():
                    self.repository.set_project_deploy_url(
                        project_id=self.project_id,
                        deploy_url=url,
                    )
                    self._emit(EventKind.DEPLOY_COMPLETED, url=url)
                return result
            case _:
                logger.warning("Task %s: unknown tool %r requested", self.task_id, call.name)
                return ToolResult.failure(f"Unknown tool: {call.name}")

    def _store_plan(self, plan: TaskPlan) -> None:
        if self.repository.set_plan(task_id=self.task_id, plan=plan):
            self._emit(EventKind.TASK_PLANNING, plan=plan.to_dict())

    def _record_file(self, result: ToolResult, content: str) -> None:
        if self._cancel.is_set():
            return
        path = str(result.metadata.get("path") or "")
        language = result.metadata.get("language")
        self.repository.upsert_workspace_file(
            project_id=self.project_id,
            path=path,
            content=content,
            language=language,
        )
        self._emit(EventKind.FILE_CHANGED, path=path, content=content, language=language)

    def _tool_result_content(self, result: ToolResult) -> str:
        if result.success:
            content = result.output
        else:
            content = f"Error: {result.error}\n{result.output}"
        return _truncate(content, self.settings.tool_output_max_chars)

    def _output_payload(self, result: ToolResult) -> dict[str, Any]:
        payload = result.to_dict()
        payload["output"] = _truncate(result.output, self.settings.tool_output_max_chars)
        metadata = payload.get("metadata")
        if isinstance(metadata, dict) and "screenshot" in metadata:
            payload["metadata"] = {k: v for k, v in metadata.items() if k != "screenshot"}
        return payload

    def _emit(self, kind: EventKind, **payload: Any) -> None:
        self.channel.publish(
            TaskEvent(kind=kind, project_id=self.project_id, task_id=self.task_id, payload=payload),
        )

    def _elapsed_ms(self) -> int | None:
        if self._started_at is None:
            return None
        return _ms_since(self._started_at)


def _step_title(call: ToolCall) -> str:  # noqa: PLR0911
    args = call.input
    match call.name:
        case "plan":
            goal = _str_arg(args, "goal")
            return f"Planning: {goal[:TITLE_PREVIEW_CHARS]}" if goal else "Planning"
        case "write_file":
            return f"Writing {_str_arg(args, 'path') or 'file'}"
        case "read_file":
            return f"Reading {_str_arg(args, 'path') or 'file'}"
        case "list_files":
            return "Listing files"
        case "run_command":
            return f"Running: {(_str_arg(args, 'command') or 'command')[:TITLE_PREVIEW_CHARS]}"
        case "search_web":
            return f"Searching: {(_str_arg(args, 'query') or 'web')[:TITLE_PREVIEW_CHARS]}"
        case "browse":
            return f"Browsing: {(_str_arg(args, 'url') or '')[:40]}".rstrip()
        case "deploy":
            return "Deploying application"
        case _:
            return call.name


def _input_preview(args: dict[str, Any]) -> dict[str, Any]:
    """Step input as stored in the ledger; file bodies are summarized."""

    preview = dict(args)
    content = preview.get("content")
    if isinstance(content, str) and len(content) > 500:
        preview["content"] = f"{content[:500]}... ({len(content)} chars)"
    return preview


def _str_arg(args: dict[str, Any], key: str) -> str | None:
    value = args.get(key)
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def _int_arg(args: dict[str, Any], key: str) -> int | None:
    value = args.get(key)
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}\n... (truncated, {len(text) - limit} more chars)"


def _ms_since(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
