from __future__ import annotations

import base64
from typing import Any

import allure
import httpx
import pytest
from playwright.sync_api import Error as PlaywrightError

from taskforge.config import ToolSettings
from taskforge.sandbox.base import CommandResult, FileOperationResult
from taskforge.sandbox.local import LocalSandbox
from taskforge.tools import build_toolbox
from taskforge.tools.browser import BrowserSession, BrowserTool
from taskforge.tools.deploy import DeployTool
from taskforge.tools.filesystem import FileSystemTool
from taskforge.tools.search import SearchTool
from taskforge.tools.terminal import NO_OUTPUT, TerminalTool

pytestmark = [
    allure.epic("Tools"),
    allure.feature("Tool Adapters"),
]


class _ScriptedSandbox:
    """Sandbox double returning queued command results."""

    project_id = "proj-fake"
    session_id = "fake-1"
    is_running = True

    def __init__(self, *results: CommandResult) -> None:
        self.results = list(results)
        self.commands: list[tuple[str, int]] = []

    def execute(self, command: str, timeout_ms: int = 300_000) -> CommandResult:
        self.commands.append((command, timeout_ms))
        if self.results:
            return self.results.pop(0)
        return CommandResult(exit_code=0, stdout="", stderr="")

    def write_file(self, path: str, content: str) -> FileOperationResult:
        return FileOperationResult(success=True, output=f"File written: {path}")

    def read_file(self, path: str) -> FileOperationResult:
        return FileOperationResult.failure(f"File not found: {path}")

    def list_files(self, path: str = "/workspace", recursive: bool = False) -> FileOperationResult:
        return FileOperationResult(success=True, output="(empty directory)")


class _FakePage:
    def __init__(self) -> None:
        self.url = "about:blank"
        self.calls: list[tuple[str, Any]] = []

    def goto(self, url: str, **kwargs: Any) -> None:
        self.calls.append(("goto", kwargs))
        self.url = url

    def title(self) -> str:
        return "Example Domain"

    def screenshot(self) -> bytes:
        return b"\x89PNG"

    def click(self, selector: str, **_kwargs: Any) -> None:
        raise PlaywrightError(f"Timeout waiting for {selector}")

    def fill(self, selector: str, text: str, **_kwargs: Any) -> None:
        self.calls.append(("fill", (selector, text)))

    def evaluate(self, script: str) -> None:
        self.calls.append(("evaluate", script))

    def wait_for_timeout(self, wait_ms: int) -> None:
        self.calls.append(("wait", wait_ms))


# Filesystem


def test_filesystem_write_reports_path_and_language(local_sandbox: LocalSandbox) -> None:
    tool = FileSystemTool(local_sandbox)

    result = tool.write_file("/workspace/src/App.tsx", "export default 1;\n")

    assert result.success
    assert result.metadata["path"] == "src/App.tsx"
    assert result.metadata["language"] == "typescript"
    assert tool.read_file("src/App.tsx").output == "export default 1;\n"


def test_filesystem_rejects_escape_and_missing_file(local_sandbox: LocalSandbox) -> None:
    tool = FileSystemTool(local_sandbox)

    escaped = tool.write_file("../../outside.txt", "x")
    missing = tool.read_file("missing.txt")

    assert not escaped.success
    assert escaped.error is not None
    assert "outside the workspace" in escaped.error
    assert not missing.success
    assert missing.error == "File not found: missing.txt"


# Terminal


def test_terminal_joins_stdout_and_stderr() -> None:
    sandbox = _ScriptedSandbox(CommandResult(exit_code=0, stdout="built\n", stderr="warn\n"))

    result = TerminalTool(sandbox, default_timeout_ms=5_000).execute("npm run build")

    assert result.success
    assert result.output == "built\nwarn"
    assert sandbox.commands == [("npm run build", 5_000)]


def test_terminal_non_zero_exit_is_a_failure_value() -> None:
    sandbox = _ScriptedSandbox(CommandResult(exit_code=2, stdout="", stderr=""))

    result = TerminalTool(sandbox).execute("false", timeout_ms=1_000)

    assert not result.success
    assert result.error == "Exit code: 2"
    assert result.output == NO_OUTPUT
    assert result.metadata["exit_code"] == 2


def test_terminal_timeout_suggests_background() -> None:
    sandbox = _ScriptedSandbox(
        CommandResult(exit_code=124, stdout="", stderr="slow", timed_out=True),
    )

    result = TerminalTool(sandbox).execute("npm start", timeout_ms=2_000)

    assert not result.success
    assert result.error is not None
    assert "timed out after 2000 ms" in result.error
    assert "background" in result.error


def test_terminal_requires_command() -> None:
    sandbox = _ScriptedSandbox()

    assert TerminalTool(sandbox).execute("   ").error == "Command is required"
    assert sandbox.commands == []


# Search


def test_search_formats_abstract_and_related_topics() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "Abstract": "Python is a programming language.",
                "AbstractSource": "Wikipedia",
                "AbstractURL": "https://en.wikipedia.org/wiki/Python",
                "RelatedTopics": [
                    {"Text": "CPython", "FirstURL": "https://duckduckgo.com/CPython"},
                    {"Name": "group without text"},
                ],
            },
        )

    tool = SearchTool(transport=httpx.MockTransport(handler))
    result = tool.search("python")
    tool.close()

    assert result.success
    assert result.output.splitlines() == [
        "**Wikipedia**: Python is a programming language.",
        "URL: https://en.wikipedia.org/wiki/Python",
        "",
        "**Related:**",
        "- CPython",
        "  URL: https://duckduckgo.com/CPython",
    ]
    assert seen[0].url.params["q"] == "python"
    assert seen[0].url.params["format"] == "json"


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, json={"Abstract": "", "RelatedTopics": []}),
        httpx.Response(503, text="unavailable"),
        httpx.Response(200, text="not json"),
    ],
)
def test_search_miss_returns_browse_hint(response: httpx.Response) -> None:
    tool = SearchTool(transport=httpx.MockTransport(lambda _request: response))

    result = tool.search("rare query")

    assert result.success
    assert result.metadata["fallback"] is True
    assert result.metadata["browse_url"] == "https://www.google.com/search?q=rare+query"


def test_search_network_error_returns_browse_hint() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    result = SearchTool(transport=httpx.MockTransport(handler)).search("anything")

    assert result.success
    assert result.metadata["fallback"] is True


# Browser


def test_browser_navigate_returns_title_and_screenshot() -> None:
    page = _FakePage()
    tool = BrowserTool(session_factory=lambda: BrowserSession(page=page, close=lambda: None))

    result = tool.execute("navigate", url="https://example.com")

    assert result.success
    assert result.output == "Navigated to: https://example.com\nTitle: Example Domain"
    assert result.metadata["screenshot"] == base64.b64encode(b"\x89PNG").decode("ascii")
    assert page.calls[0] == ("goto", {"wait_until": "networkidle", "timeout": 30_000})


@pytest.mark.parametrize(
    "url",
    ["http://localhost:3000", "http://127.0.0.1/admin", "file:///etc/passwd"],
)
def test_browser_blocks_local_targets(url: str) -> None:
    launched: list[bool] = []

    def factory() -> BrowserSession:
        launched.append(True)
        return BrowserSession(page=_FakePage(), close=lambda: None)

    result = BrowserTool(session_factory=factory).execute("navigate", url=url)

    assert not result.success
    assert launched == []


def test_browser_validates_arguments_and_maps_errors() -> None:
    closed: list[bool] = []
    page = _FakePage()
    tool = BrowserTool(
        session_factory=lambda: BrowserSession(page=page, close=lambda: closed.append(True)),
    )

    assert tool.execute("hover").error == "Unknown action: hover"
    assert tool.execute("click").error == "Selector is required for click action"
    assert tool.execute("type", selector="#q").error is not None

    clicked = tool.execute("click", selector="#missing")
    typed = tool.execute("type", selector="#q", text="hello")
    waited = tool.execute("wait")

    assert not clicked.success
    assert clicked.error == "Timeout waiting for #missing"
    assert typed.output == 'Typed "hello" into #q'
    assert waited.output == "Waited 1000ms"
    tool.close()
    tool.close()
    assert closed == [True]


# Deploy


def test_deploy_without_commands_reports_url() -> None:
    sandbox = _ScriptedSandbox()
    tool = DeployTool(sandbox, project_slug="project-ab12cd34", deploy_domain="taskforge.app")

    result = tool.deploy()

    assert result.success
    assert result.metadata["url"] == "https://project-ab12cd34.taskforge.app"
    assert result.metadata["port"] == 3000
    assert sandbox.commands == []


def test_deploy_stops_on_failed_build() -> None:
    sandbox = _ScriptedSandbox(CommandResult(exit_code=1, stdout="", stderr="tsc: error"))
    tool = DeployTool(sandbox, project_slug="project-x", deploy_domain="taskforge.app")

    result = tool.deploy(build_command="npm run build", start_command="npm start")

    assert not result.success
    assert result.error == "Build failed:\ntsc: error"
    assert [command for command, _ in sandbox.commands] == ["npm run build"]


def test_deploy_starts_app_in_background(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("taskforge.tools.deploy.is_windows_host", lambda: False)
    sandbox = _ScriptedSandbox()
    slept: list[float] = []
    tool = DeployTool(
        sandbox,
        project_slug="project-x",
        deploy_domain="example.dev",
        settle_seconds=0.5,
        sleep=slept.append,
    )

    result = tool.deploy(build_command="npm run build", start_command="npm start", port=8080)

    assert result.success
    assert sandbox.commands[1][0] == "nohup npm start > /tmp/app.log 2>&1 &"
    assert slept == [0.5]
    assert result.output.splitlines()[-2:] == [
        "Deploy URL: https://project-x.example.dev",
        "Internal port: 8080",
    ]


def test_build_toolbox_binds_settings(local_sandbox: LocalSandbox) -> None:
    toolbox = build_toolbox(
        local_sandbox,
        settings=ToolSettings(command_timeout_ms=9_000, deploy_domain="apps.test"),
        project_slug="project-1",
    )

    assert toolbox.terminal.default_timeout_ms == 9_000
    assert toolbox.deploy.deploy_domain == "apps.test"
    toolbox.close()
