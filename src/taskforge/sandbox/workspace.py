"""Workspace path normalization, language detection and directory helpers."""

from __future__ import annotations

import os
import re
from collections.abc import Iterator
from pathlib import Path, PurePosixPath

from taskforge.sandbox.base import WORKSPACE_PLACEHOLDER, FileOperationResult

NOISE_DIRS = frozenset(
    {
        "node_modules",
        ".git",
        "dist",
        ".next",
        "__pycache__",
        ".cache",
        ".vite",
        ".turbo",
        "coverage",
    },
)
MAX_LIST_DEPTH = 5
MAX_LIST_ENTRIES = 500
EMPTY_DIRECTORY = "(empty directory)"

_WINDOWS_DRIVE_RE = re.compile(r"^[A-Za-z]:/")
_PROJECT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

_LANGUAGE_BY_EXTENSION = {
    "ts": "typescript",
    "tsx": "typescript",
    "js": "javascript",
    "jsx": "javascript",
    "mjs": "javascript",
    "cjs": "javascript",
    "py": "python",
    "html": "html",
    "htm": "html",
    "css": "css",
    "scss": "scss",
    "json": "json",
    "md": "markdown",
    "yml": "yaml",
    "yaml": "yaml",
    "toml": "toml",
    "sql": "sql",
    "sh": "bash",
    "go": "go",
    "rs": "rust",
    "java": "java",
    "rb": "ruby",
    "php": "php",
    "c": "c",
    "h": "c",
    "cpp": "cpp",
    "svg": "xml",
    "xml": "xml",
    "txt": "plaintext",
}


class WorkspacePathError(ValueError):
    """Path points outside of the workspace root."""


def normalize_workspace_path(path: str) -> str:
    """Map a logical path to a clean workspace-relative POSIX path.

    ``/workspace/src/a.ts``, ``./src/a.ts`` and ``src\\a.ts`` all become
    ``src/a.ts``; the workspace root itself becomes ``""``.
    """

    candidate = path.strip().replace("\\", "/")
    if candidate == WORKSPACE_PLACEHOLDER or candidate.startswith(f"{WORKSPACE_PLACEHOLDER}/"):
        candidate = candidate[len(WORKSPACE_PLACEHOLDER) :]
    elif candidate.startswith("/") or _WINDOWS_DRIVE_RE.match(candidate):
        raise WorkspacePathError(f"Path is outside the workspace: {path}")

    parts: list[str] = []
    for part in candidate.split("/"):
        if part in {"", "."}:
            continue
        if part == "..":
            if not parts:
                raise WorkspacePathError(f"Path is outside the workspace: {path}")
            parts.pop()
            continue
        parts.append(part)
    return "/".join(parts)


def resolve_workspace_path(root: Path, path: str) -> Path:
    """Return the host path for a logical path, refusing symlink escapes."""

    relative = normalize_workspace_path(path)
    target = root / relative if relative else root
    resolved_root = root.resolve()
    if not target.resolve().is_relative_to(resolved_root):
        raise WorkspacePathError(f"Path is outside the workspace: {path}")
    return target


def project_directory(root: Path, project_id: str) -> Path:
    """Host directory of one project: a single path component directly under ``root``."""

    if not _PROJECT_ID_RE.match(project_id):
        raise WorkspacePathError(f"Invalid project id: {project_id!r}")
    resolved_root = root.resolve()
    directory = (resolved_root / project_id).resolve()
    if directory.parent != resolved_root:
        raise WorkspacePathError(f"Project directory escapes {resolved_root}: {project_id!r}")
    return directory


def detect_language(path: str) -> str | None:
    """Guess the editor language from the file extension."""

    name = PurePosixPath(path.replace("\\", "/")).name
    if name == "Dockerfile":
        return "dockerfile"
    suffix = PurePosixPath(name).suffix.lower().lstrip(".")
    if not suffix:
        return None
    return _LANGUAGE_BY_EXTENSION.get(suffix)


def iter_workspace_files(root: Path, *, max_depth: int | None = None) -> Iterator[Path]:
    """Yield regular files under ``root``, skipping noise directories."""

    for current, dirnames, filenames in os.walk(root):
        current_path = Path(current)
        depth = len(current_path.relative_to(root).parts)
        dirnames[:] = sorted(name for name in dirnames if name not in NOISE_DIRS)
        if max_depth is not None and depth + 1 >= max_depth:
            dirnames[:] = []
        for filename in sorted(filenames):
            candidate = current_path / filename
            if candidate.is_file() and not candidate.is_symlink():
                yield candidate


def list_workspace_directory(root: Path, path: str, *, recursive: bool) -> FileOperationResult:
    """List a workspace directory as ``d name`` / ``- name`` lines or recursive file paths."""

    try:
        target = resolve_workspace_path(root, path)
    except WorkspacePathError as error:
        return FileOperationResult.failure(str(error))
    if not target.is_dir():
        return FileOperationResult.failure(f"Directory not found: {path}")

    try:
        if recursive:
            lines = []
            for file_path in iter_workspace_files(target, max_depth=MAX_LIST_DEPTH):
                lines.append(file_path.relative_to(root).as_posix())
                if len(lines) >= MAX_LIST_ENTRIES:
                    break
        else:
            lines = [
                f"{'d' if entry.is_dir() else '-'} {entry.name}"
                for entry in sorted(target.iterdir(), key=lambda item: item.name)
            ][:MAX_LIST_ENTRIES]
    except OSError as error:
        return FileOperationResult.failure(str(error))
    return FileOperationResult(
        success=True,
        output="\n".join(lines) if lines else EMPTY_DIRECTORY,
    )


def write_workspace_file(root: Path, path: str, content: str) -> FileOperationResult:
    """Overwrite one file, creating parent directories."""

    try:
        target = resolve_workspace_path(root, path)
        if target == root:
            return FileOperationResult.failure(f"Not a file path: {path}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8", newline="")
    except (WorkspacePathError, OSError) as error:
        return FileOperationResult.failure(str(error))
    return FileOperationResult(success=True, output=f"File written: {path}")


def read_workspace_file(root: Path, path: str) -> FileOperationResult:
    try:
        target = resolve_workspace_path(root, path)
    except WorkspacePathError as error:
        return FileOperationResult.failure(str(error))
    if not target.is_file():
        return FileOperationResult.failure(f"File not found: {path}")
    try:
        return FileOperationResult(success=True, output=target.read_bytes().decode("utf-8"))
    except UnicodeDecodeError:
        return FileOperationResult.failure(f"File is not valid UTF-8 text: {path}")
    except OSError as error:
        return FileOperationResult.failure(str(error))
