"""Reasoning service client: plan a task and decide the next turn of the agent loop."""

from __future__ import annotations

import json
import logging
import random
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from taskforge.config import ReasoningSettings
from taskforge.errors import ReasoningServiceError
from taskforge.orchestrator.failure_classifier import classify_reasoning_failure
from taskforge.orchestrator.models import ReasoningFailureClass, StepType, TaskPlan

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
CONTINUE_PROMPT = "Continue."
PLAN_TOOL_NAME = "plan"

SYSTEM_PROMPT = (
    "You are an autonomous software engineer working inside an isolated workspace "
    "rooted at /workspace. Create a plan first, then use the available tools to carry it "
    "out step by step. Ask the user only when a decision cannot be made without them. "
    "When the work is done, reply with a short summary and no tool call."
)

PLAN_TOOL: dict[str, Any] = {
    "name": PLAN_TOOL_NAME,
    "description": "Record the goal and an ordered list of steps before doing any work.",
    "input_schema": {
        "type": "object",
        "properties": {
            "goal": {"type": "string"},
            "steps": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "title": {"type": "string"},
                        "description": {"type": "string"},
                        "type": {"type": "string", "enum": [item.value for item in StepType]},
                    },
                    "required": ["title"],
                },
            },
        },
        "required": ["goal", "steps"],
    },
}

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    PLAN_TOOL,
    {
        "name": "write_file",
        "description": "Create or fully overwrite a file in the workspace.",
        "input_schema": {
            "type": "object",
            "properties": {"path": {"type": "string"}, "content": {"type": "string"}},
            "required": ["path", "content"],
        },
    },
    {
        "name": "read_file",
        "description": "Read a UTF-8 file from the workspace.",
        "input_schema": {
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
        },
    },
    {
        "name": "list_files",
        "description": "List a workspace directory, optionally recursively.",
        "input_schema": {
            "type": "object",
            "properties": {"path": {"type": "string"}, "recursive": {"type": "boolean"}},
        },
    },
    {
        "name": "run_command",
        "description": "Run a shell command in the workspace. Timeout is in milliseconds.",
        "input_schema": {
            "type": "object",
            "properties": {"command": {"type": "string"}, "timeout": {"type": "integer"}},
            "required": ["command"],
        },
    },
    {
        "name": "search_web",
        "description": "Search the web for documentation or examples.",
        "input_schema": {
            "type": "object",
            "properties": {"query": {"type": "string"}},
            "required": ["query"],
        },
    },
    {
        "name": "browse",
        "description": "Drive a headless browser: navigate, screenshot, click, type, scroll, wait.",
        "input_schema": {
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": ["navigate", "screenshot", "click", "type", "scroll", "wait"],
                },
                "url": {"type": "string"},
                "selector": {"type": "string"},
                "text": {"type": "string"},
                "waitTime": {"type": "integer"},
            },
            "required": ["action"],
        },
    },
    {
        "name": "deploy",
        "description": "Build the project, start it in the background and publish a URL.",
        "input_schema": {
            "type": "object",
            "properties": {
                "buildCommand": {"type": "string"},
                "startCommand": {"type": "string"},
                "port": {"type": "integer"},
            },
        },
    },
    {
        "name": "ask_user",
        "description": "Pause and ask the user a question; the answer is returned as the result.",
        "input_schema": {
            "type": "object",
            "properties": {"question": {"type": "string"}},
            "required": ["question"],
        },
    },
]


@dataclass(slots=True)
class ToolCall:
    """The agent wants one tool invoked."""

    name: str
    input: dict[str, Any] = field(default_factory=dict)
    call_id: str = ""
    text: str | None = None


@dataclass(slots=True)
class AssistantMessage:
    """Free text with no tool call; the loop continues."""

    content: str


@dataclass(slots=True)
class Completion:
    """The agent considers the task done."""

    result: str


TurnOutcome = ToolCall | AssistantMessage | Completion


@dataclass(slots=True)
class ReasoningTurn:
    outcome: TurnOutcome
    tokens_used: int = 0


@dataclass(slots=True)
class PlanResult:
    plan: TaskPlan
    tokens_used: int = 0


@dataclass(slots=True)
class Conversation:
    """Running transcript in Messages API shape: prompt, tool calls and their results."""

    prompt: str
    messages: list[dict[str, Any]] = field(default_factory=list)
    _call_counter: int = 0

    def __post_init__(self) -> None:
        if not self.messages:
            self.messages.append({"role": "user", "content": self.prompt})

    def record_tool_exchange(self, call: ToolCall, *, content: str, is_error: bool) -> None:
        if not call.call_id:
            self._call_counter += 1
            call.call_id = f"toolu_local_{self._call_counter:04d}"
        blocks: list[dict[str, Any]] = []
        if call.text:
            blocks.append({"type": "text", "text": call.text})
        blocks.append(
            {"type": "tool_use", "id": call.call_id, "name": call.name, "input": call.input},
        )
        self.messages.append({"role": "assistant", "content": blocks})
        self.messages.append(
            {
                "role": "user",
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": call.call_id,
                        "content": content,
                        "is_error": is_error,
                    },
                ],
            },
        )

    def record_message(self, text: str) -> None:
        # Roles must alternate, so a text-only reply is followed by a nudge.
        self.messages.append({"role": "assistant", "content": text})
        self.messages.append({"role": "user", "content": CONTINUE_PROMPT})


class ReasoningService(Protocol):
    """Decides the plan and each subsequent turn of one task."""

    def plan(self, prompt: str) -> PlanResult:
        raise NotImplementedError

    def next_turn(self, conversation: Conversation) -> ReasoningTurn:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class AnthropicReasoningService:
    """Messages API client with classified, jittered retries for transient failures."""

    def __init__(
        self,
        settings: ReasoningSettings,
        *,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self._sleep = sleep
        self._random = random.Random()  # noqa: S311
        self._client = httpx.Client(
            timeout=httpx.Timeout(settings.request_timeout_seconds, connect=10.0),
            transport=transport,
            headers={
                "x-api-key": settings.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
        )

    def plan(self, prompt: str) -> PlanResult:
        body = self._post(
            {
                "messages": [{"role": "user", "content": prompt}],
                "tools": [PLAN_TOOL],
                "tool_choice": {"type": "tool", "name": PLAN_TOOL_NAME},
            },
        )
        tokens = _usage_tokens(body)
        for block in _content_blocks(body):
            if block.get("type") == "tool_use" and block.get("name") == PLAN_TOOL_NAME:
                payload = block.get("input")
                if isinstance(payload, dict):
                    return PlanResult(plan=TaskPlan.from_dict(payload), tokens_used=tokens)
        logger.warning("Reasoning service returned no plan; using the prompt as the goal")
        return PlanResult(plan=TaskPlan(goal=prompt.strip()[:200]), tokens_used=tokens)

    def next_turn(self, conversation: Conversation) -> ReasoningTurn:
        body = self._post(
            {
                "messages": conversation.messages,
                "tools": TOOL_DEFINITIONS,
                "tool_choice": {"type": "auto", "disable_parallel_tool_use": True},
            },
        )
        return ReasoningTurn(outcome=_parse_turn(body), tokens_used=_usage_tokens(body))

    def close(self) -> None:
        self._client.close()

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        request = {
            "model": self.settings.model,
            "max_tokens": self.settings.max_tokens,
            "system": SYSTEM_PROMPT,
            **payload,
        }
        attempt = 0
        while True:
            status_code: int | None = None
            body_text = ""
            try:
                response = self._client.post(self.settings.api_url, json=request)
            except httpx.HTTPError as exc:
                body_text = str(exc)
                logger.warning("Reasoning request failed: %s", exc)
            else:
                if response.is_success:
                    try:
                        parsed = response.json()
                    except ValueError as exc:
                        raise ReasoningServiceError(
                            "Reasoning service returned malformed JSON",
                            transient=False,
                            failure_class=ReasoningFailureClass.INVALID_RESPONSE.value,
                        ) from exc
                    if not isinstance(parsed, dict):
                        raise ReasoningServiceError(
                            "Reasoning service returned an unexpected payload",
                            transient=False,
                            failure_class=ReasoningFailureClass.INVALID_RESPONSE.value,
                        )
                    return parsed
                status_code = response.status_code
                body_text = response.text

            classification = classify_reasoning_failure(status_code=status_code, body=body_text)
            if not classification.transient or attempt >= self.settings.max_retries:
                raise ReasoningServiceError(
                    _failure_message(status_code, classification.failure_class, body_text),
                    transient=classification.transient,
                    failure_class=classification.failure_class.value,
                )
            delay = self._retry_delay(attempt)
            attempt += 1
            logger.info(
                "Retrying reasoning request (attempt %d/%d) in %.1fs: %s",
                attempt,
                self.settings.max_retries,
                delay,
                classification.reason_code,
            )
            self._sleep(delay)

    def _retry_delay(self, attempt: int) -> float:
        max_delay = self.settings.retry_backoff_seconds * (2**attempt)
        return self._random.uniform(max_delay / 2, max_delay)


class ScriptedReasoningService:
    """Replays a fixed sequence of turns; used for dry runs and tests.

    Once the script is exhausted ``fallback`` is repeated, or the task completes.
    """

    def __init__(
        self,
        turns: Iterable[TurnOutcome] = (),
        *,
        plan: TaskPlan | None = None,
        fallback: TurnOutcome | None = None,
        tokens_per_turn: int = 0,
    ) -> None:
        self._turns = list(turns)
        self._plan = plan
        self._fallback = fallback
        self.tokens_per_turn = tokens_per_turn
        self.turns_served = 0
        self.closed = False

    def plan(self, prompt: str) -> PlanResult:
        plan = self._plan or TaskPlan(goal=prompt.strip()[:200])
        return PlanResult(plan=plan, tokens_used=self.tokens_per_turn)

    def next_turn(self, conversation: Conversation) -> ReasoningTurn:
        index = self.turns_served
        self.turns_served += 1
        if index < len(self._turns):
            outcome = self._turns[index]
        elif self._fallback is not None:
            outcome = self._fallback
        else:
            outcome = Completion(result="Done.")
        if isinstance(outcome, ToolCall):
            outcome = ToolCall(name=outcome.name, input=dict(outcome.input), text=outcome.text)
        return ReasoningTurn(outcome=outcome, tokens_used=self.tokens_per_turn)

    def close(self) -> None:
        self.closed = True


def build_reasoning_service(settings: ReasoningSettings) -> ReasoningService:
    return AnthropicReasoningService(settings)


def _parse_turn(body: dict[str, Any]) -> TurnOutcome:
    blocks = _content_blocks(body)
    text = "\n".join(
        str(block.get("text") or "") for block in blocks if block.get("type") == "text"
    ).strip()
    for block in blocks:
        if block.get("type") != "tool_use":
            continue
        name = block.get("name")
        if not isinstance(name, str) or not name:
            raise ReasoningServiceError(
                "Reasoning service returned a tool call without a name",
                transient=False,
                failure_class=ReasoningFailureClass.INVALID_RESPONSE.value,
            )
        raw_input = block.get("input")
        return ToolCall(
            name=name,
            input=raw_input if isinstance(raw_input, dict) else {},
            call_id=str(block.get("id") or ""),
            text=text or None,
        )
    if body.get("stop_reason") == "end_turn":
        return Completion(result=text)
    return AssistantMessage(content=text)


def _content_blocks(body: dict[str, Any]) -> list[dict[str, Any]]:
    content = body.get("content")
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def _usage_tokens(body: dict[str, Any]) -> int:
    usage = body.get("usage")
    if not isinstance(usage, dict):
        return 0
    total = 0
    for key in ("input_tokens", "output_tokens"):
        value = usage.get(key)
        if isinstance(value, int):
            total += value
    return total


def _failure_message(
    status_code: int | None,
    failure_class: ReasoningFailureClass,
    body_text: str,
) -> str:
    detail = _error_detail(body_text)
    prefix = f"HTTP {status_code}" if status_code is not None else "transport error"
    return f"Reasoning service unavailable ({failure_class.value}, {prefix}): {detail}"


def _error_detail(body_text: str) -> str:
    try:
        payload = json.loads(body_text)
    except ValueError:
        return body_text.strip()[:300] or "no details"
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])[:300]
    return body_text.strip()[:300] or "no details"
