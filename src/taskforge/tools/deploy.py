"""Build-and-publish tool producing a public URL for the project."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from taskforge.sandbox.base import SandboxBackend
from taskforge.sandbox.commands import is_windows_host
from taskforge.tools.base import ToolResult

logger = logging.getLogger(__name__)

DEFAULT_BUILD_TIMEOUT_MS = 120_000
PUBLISH_TIMEOUT_MS = 10_000
DEFAULT_PORT = 3000


class DeployTool:
    def __init__(  # noqa: PLR0913
        self,
        sandbox: SandboxBackend,
        *,
        project_slug: str,
        deploy_domain: str,
        build_timeout_ms: int = DEFAULT_BUILD_TIMEOUT_MS,
        settle_seconds: float = 3.0,
        default_port: int = DEFAULT_PORT,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.sandbox = sandbox
        self.project_slug = project_slug
        self.deploy_domain = deploy_domain
        self.build_timeout_ms = build_timeout_ms
        self.settle_seconds = settle_seconds
        self.default_port = default_port
        self._sleep = sleep

    def deploy(
        self,
        *,
        build_command: str | None = None,
        start_command: str | None = None,
        port: int | None = None,
    ) -> ToolResult:
        """Build, start in the background, then report the public URL.

        A failing build stops here and nothing is published.
        """

        lines: list[str] = []
        if build_command:
            lines.append(f"Running build: {build_command}")
            build = self.sandbox.execute(build_command, self.build_timeout_ms)
            if build.exit_code != 0:
                details = (build.stderr or build.stdout).strip()
                return ToolResult(
                    success=False,
                    output="\n".join(lines),
                    error=f"Build failed:\n{details}" if details else "Build failed",
                    metadata={"exit_code": build.exit_code, "timed_out": build.timed_out},
                )
            lines.append("Build succeeded")

        if start_command:
            lines.append(f"Starting app: {start_command}")
            if is_windows_host():
                background = f"start /B {start_command}"
            else:
                background = f"nohup {start_command} > /tmp/app.log 2>&1 &"
            self.sandbox.execute(background, PUBLISH_TIMEOUT_MS)
            self._sleep(self.settle_seconds)
            lines.append("Application started")

        effective_port = port or self.default_port
        url = f"https://{self.project_slug}.{self.deploy_domain}"
        lines.append(f"Deploy URL: {url}")
        lines.append(f"Internal port: {effective_port}")
        logger.info("Deployed project %s to %s", self.project_slug, url)
        return ToolResult(
            success=True,
            output="\n".join(lines),
            metadata={"url": url, "port": effective_port, "slug": self.project_slug},
        )
