"""Tool adapters bound to one task's sandbox."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import httpx

from taskforge.config import ToolSettings
from taskforge.sandbox.base import SandboxBackend
from taskforge.tools.base import ToolResult
from taskforge.tools.browser import BrowserSession, BrowserTool
from taskforge.tools.deploy import DeployTool
from taskforge.tools.filesystem import FileSystemTool
from taskforge.tools.search import SearchTool
from taskforge.tools.terminal import TerminalTool

__all__ = [
    "BrowserTool",
    "DeployTool",
    "FileSystemTool",
    "SearchTool",
    "TerminalTool",
    "ToolBox",
    "ToolResult",
    "build_toolbox",
]


@dataclass(slots=True)
class ToolBox:
    """All adapters an orchestrator dispatches to for one task."""

    filesystem: FileSystemTool
    terminal: TerminalTool
    search: SearchTool
    browser: BrowserTool
    deploy: DeployTool

    def close(self) -> None:
        self.browser.close()
        self.search.close()


def build_toolbox(
    sandbox: SandboxBackend,
    *,
    settings: ToolSettings,
    project_slug: str,
    search_transport: httpx.BaseTransport | None = None,
    browser_factory: Callable[[], BrowserSession] | None = None,
) -> ToolBox:
    return ToolBox(
        filesystem=FileSystemTool(sandbox),
        terminal=TerminalTool(sandbox, default_timeout_ms=settings.command_timeout_ms),
        search=SearchTool(
            base_url=settings.search_url,
            timeout_seconds=settings.search_timeout_seconds,
            transport=search_transport,
        ),
        browser=BrowserTool(
            headless=settings.browser_headless,
            navigation_timeout_ms=settings.browser_timeout_ms,
            session_factory=browser_factory,
        ),
        deploy=DeployTool(
            sandbox,
            project_slug=project_slug,
            deploy_domain=settings.deploy_domain,
            build_timeout_ms=settings.build_timeout_ms,
            settle_seconds=settings.deploy_settle_seconds,
            default_port=settings.deploy_port,
        ),
    )
