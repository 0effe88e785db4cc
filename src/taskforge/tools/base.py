"""Uniform tool invocation result."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class ToolResult:
    """Outcome of one tool call; expected failures are values, not exceptions."""

    success: bool
    output: str
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(cls, error: str, *, output: str = "", **metadata: Any) -> ToolResult:
        return cls(success=False, output=output, error=error, metadata=dict(metadata))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success, "output": self.output}
        if self.error is not None:
            payload["error"] = self.error
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload
