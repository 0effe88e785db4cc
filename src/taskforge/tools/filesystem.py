"""File read/write/list over the sandbox workspace."""

from __future__ import annotations

from taskforge.sandbox.base import WORKSPACE_PLACEHOLDER, FileOperationResult, SandboxBackend
from taskforge.sandbox.workspace import (
    WorkspacePathError,
    detect_language,
    normalize_workspace_path,
)
from taskforge.tools.base import ToolResult


class FileSystemTool:
    def __init__(self, sandbox: SandboxBackend) -> None:
        self.sandbox = sandbox

    def write_file(self, path: str, content: str) -> ToolResult:
        """Write one file; metadata carries the normalized path and detected language."""

        try:
            relative = normalize_workspace_path(path)
        except WorkspacePathError as error:
            return ToolResult.failure(str(error))
        outcome = self.sandbox.write_file(relative, content)
        return _to_tool_result(
            outcome,
            path=relative,
            language=detect_language(relative),
            size_bytes=len(content.encode("utf-8")),
        )

    def read_file(self, path: str) -> ToolResult:
        return _to_tool_result(self.sandbox.read_file(path), path=path)

    def list_files(self, path: str = WORKSPACE_PLACEHOLDER, recursive: bool = False) -> ToolResult:
        return _to_tool_result(self.sandbox.list_files(path, recursive))


def _to_tool_result(outcome: FileOperationResult, **metadata: object) -> ToolResult:
    if not outcome.success:
        return ToolResult(
            success=False,
            output=outcome.output,
            error=outcome.error or "File operation failed",
            metadata=dict(metadata),
        )
    return ToolResult(success=True, output=outcome.output, metadata=dict(metadata))
