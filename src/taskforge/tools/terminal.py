"""Shell command tool."""

from __future__ import annotations

import logging

from taskforge.sandbox.base import SandboxBackend
from taskforge.tools.base import ToolResult

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT_MS = 120_000
NO_OUTPUT = "(no output)"


class TerminalTool:
    def __init__(
        self,
        sandbox: SandboxBackend,
        *,
        default_timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS,
    ) -> None:
        self.sandbox = sandbox
        self.default_timeout_ms = default_timeout_ms

    def execute(self, command: str, timeout_ms: int | None = None) -> ToolResult:
        """Run one command in the workspace; stdout and stderr are joined in the output."""

        if not command.strip():
            return ToolResult.failure("Command is required")

        effective_timeout = timeout_ms or self.default_timeout_ms
        result = self.sandbox.execute(command, effective_timeout)
        output = "\n".join(part for part in (result.stdout.strip(), result.stderr.strip()) if part)
        metadata = {
            "exit_code": result.exit_code,
            "timed_out": result.timed_out,
            "duration_ms": result.duration_ms,
        }
        if result.timed_out:
            return ToolResult(
                success=False,
                output=output or NO_OUTPUT,
                error=(
                    f"Command timed out after {effective_timeout} ms; "
                    "consider running it in the background"
                ),
                metadata=metadata,
            )
        if result.exit_code != 0:
            return ToolResult(
                success=False,
                output=output or NO_OUTPUT,
                error=f"Exit code: {result.exit_code}",
                metadata=metadata,
            )
        return ToolResult(success=True, output=output or NO_OUTPUT, metadata=metadata)

    def send_input(self, data: str) -> None:
        """Interactive input is not wired to running processes; logged and dropped."""

        logger.info("Terminal input ignored (%d chars)", len(data))
