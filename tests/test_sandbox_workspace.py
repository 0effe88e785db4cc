from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskforge.sandbox.workspace import (
    EMPTY_DIRECTORY,
    WorkspacePathError,
    detect_language,
    list_workspace_directory,
    normalize_workspace_path,
    read_workspace_file,
    write_workspace_file,
)

pytestmark = [
    allure.epic("Sandbox"),
    allure.feature("Workspace Paths"),
]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("/workspace/src/a.ts", "src/a.ts"),
        ("./src/a.ts", "src/a.ts"),
        ("src\\a.ts", "src/a.ts"),
        ("src/./lib/../a.ts", "src/a.ts"),
        ("/workspace", ""),
        (".", ""),
    ],
)
def test_normalize_workspace_path(raw: str, expected: str) -> None:
    assert normalize_workspace_path(raw) == expected


@pytest.mark.parametrize("raw", ["../etc/passwd", "/etc/passwd", "C:/Windows", "a/../../b"])
def test_normalize_rejects_escapes(raw: str) -> None:
    with pytest.raises(WorkspacePathError):
        normalize_workspace_path(raw)


@pytest.mark.parametrize(
    ("path", "language"),
    [
        ("src/App.tsx", "typescript"),
        ("index.HTML", "html"),
        ("Dockerfile", "dockerfile"),
        ("notes.md", "markdown"),
        ("Makefile", None),
        ("archive.zip", None),
    ],
)
def test_detect_language(path: str, language: str | None) -> None:
    assert detect_language(path) == language


def test_write_read_preserves_exact_content(tmp_path: Path) -> None:
    content = "line one\r\nline two\nünïcode ✓\n"

    written = write_workspace_file(tmp_path, "/workspace/deep/nested/file.txt", content)
    read = read_workspace_file(tmp_path, "deep/nested/file.txt")

    assert written.success
    assert read.success
    assert read.output == content


def test_write_outside_workspace_fails_without_touching_disk(tmp_path: Path) -> None:
    root = tmp_path / "root"
    root.mkdir()

    result = write_workspace_file(root, "../escape.txt", "x")

    assert not result.success
    assert result.error is not None
    assert "outside the workspace" in result.error
    assert not (tmp_path / "escape.txt").exists()


def test_read_missing_file_is_a_failure_result(tmp_path: Path) -> None:
    result = read_workspace_file(tmp_path, "missing.txt")

    assert not result.success
    assert result.error == "File not found: missing.txt"


def test_list_directory_flat_and_recursive(tmp_path: Path) -> None:
    write_workspace_file(tmp_path, "index.html", "<p></p>")
    write_workspace_file(tmp_path, "src/app.js", "")
    write_workspace_file(tmp_path, "node_modules/pkg/index.js", "")

    flat = list_workspace_directory(tmp_path, "/workspace", recursive=False)
    recursive = list_workspace_directory(tmp_path, "/workspace", recursive=True)

    assert flat.output.splitlines() == ["- index.html", "d node_modules", "d src"]
    assert recursive.output.splitlines() == ["index.html", "src/app.js"]


def test_list_empty_and_missing_directories(tmp_path: Path) -> None:
    (tmp_path / "empty").mkdir()

    assert list_workspace_directory(tmp_path, "empty", recursive=False).output == EMPTY_DIRECTORY
    assert not list_workspace_directory(tmp_path, "nope", recursive=False).success
