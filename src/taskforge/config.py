"""Runtime configuration for the orchestration engine, sandboxes and tools."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

SANDBOX_BACKENDS = ("local", "cloud", "container")


@dataclass(slots=True)
class OrchestratorSettings:
    """Agent loop limits."""

    max_iterations: int = 20
    tool_output_max_chars: int = 50_000
    busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class SandboxSettings:
    """Sandbox backend selection and per-backend knobs."""

    backend: str = "local"
    workspaces_root: Path = Path(".taskforge/workspaces")
    scratch_root: Path = Path(".taskforge/scratch")
    remote_store_url: str = "sqlite:///.taskforge/remote_store.db"
    max_sync_file_bytes: int = 5 * 1024 * 1024
    job_output_max_chars: int = 50_000
    container_image: str = "node:20-bookworm"
    container_memory_limit: str = "512m"
    container_cpu_quota: int = 50_000
    container_network: str = "bridge"


@dataclass(slots=True)
class ReasoningSettings:
    """Reasoning service client settings."""

    api_key: str = ""
    api_url: str = "https://api.anthropic.com/v1/messages"
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 8_192
    request_timeout_seconds: float = 120.0
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0


@dataclass(slots=True)
class ToolSettings:
    """Tool adapter settings."""

    command_timeout_ms: int = 120_000
    build_timeout_ms: int = 120_000
    search_url: str = "https://api.duckduckgo.com/"
    search_timeout_seconds: float = 15.0
    browser_headless: bool = True
    browser_timeout_ms: int = 30_000
    deploy_domain: str = "taskforge.app"
    deploy_port: int = 3000
    deploy_settle_seconds: float = 3.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".taskforge.db")
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    sandbox: SandboxSettings = field(default_factory=SandboxSettings)
    reasoning: ReasoningSettings = field(default_factory=ReasoningSettings)
    tools: ToolSettings = field(default_factory=ToolSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASKFORGE_DB_PATH", ".taskforge.db")),
            orchestrator=OrchestratorSettings(
                max_iterations=int(os.getenv("TASKFORGE_MAX_ITERATIONS", "20")),
                tool_output_max_chars=int(
                    os.getenv("TASKFORGE_TOOL_OUTPUT_MAX_CHARS", "50000"),
                ),
                busy_timeout_ms=int(os.getenv("TASKFORGE_DB_BUSY_TIMEOUT_MS", "5000")),
            ),
            sandbox=SandboxSettings(
                backend=os.getenv("TASKFORGE_SANDBOX_BACKEND", "local").strip().lower(),
                workspaces_root=Path(
                    os.getenv("TASKFORGE_WORKSPACES_ROOT", ".taskforge/workspaces"),
                ),
                scratch_root=Path(os.getenv("TASKFORGE_SCRATCH_ROOT", ".taskforge/scratch")),
                remote_store_url=os.getenv(
                    "TASKFORGE_REMOTE_STORE_URL",
                    "sqlite:///.taskforge/remote_store.db",
                ),
                max_sync_file_bytes=int(
                    os.getenv("TASKFORGE_MAX_SYNC_FILE_BYTES", str(5 * 1024 * 1024)),
                ),
                job_output_max_chars=int(os.getenv("TASKFORGE_JOB_OUTPUT_MAX_CHARS", "50000")),
                container_image=os.getenv("TASKFORGE_CONTAINER_IMAGE", "node:20-bookworm"),
                container_memory_limit=os.getenv("TASKFORGE_CONTAINER_MEMORY_LIMIT", "512m"),
                container_cpu_quota=int(os.getenv("TASKFORGE_CONTAINER_CPU_QUOTA", "50000")),
                container_network=os.getenv("TASKFORGE_CONTAINER_NETWORK", "bridge"),
            ),
            reasoning=ReasoningSettings(
                api_key=os.getenv("TASKFORGE_REASONING_API_KEY", "")
                or os.getenv("ANTHROPIC_API_KEY", ""),
                api_url=os.getenv(
                    "TASKFORGE_REASONING_API_URL",
                    "https://api.anthropic.com/v1/messages",
                ),
                model=os.getenv("TASKFORGE_REASONING_MODEL", "claude-sonnet-4-20250514"),
                max_tokens=int(os.getenv("TASKFORGE_REASONING_MAX_TOKENS", "8192")),
                request_timeout_seconds=float(
                    os.getenv("TASKFORGE_REASONING_TIMEOUT_SECONDS", "120.0"),
                ),
                max_retries=int(os.getenv("TASKFORGE_REASONING_MAX_RETRIES", "3")),
                retry_backoff_seconds=float(
                    os.getenv("TASKFORGE_REASONING_RETRY_BACKOFF_SECONDS", "1.0"),
                ),
            ),
            tools=ToolSettings(
                command_timeout_ms=int(os.getenv("TASKFORGE_COMMAND_TIMEOUT_MS", "120000")),
                build_timeout_ms=int(os.getenv("TASKFORGE_BUILD_TIMEOUT_MS", "120000")),
                search_url=os.getenv("TASKFORGE_SEARCH_URL", "https://api.duckduckgo.com/"),
                search_timeout_seconds=float(
                    os.getenv("TASKFORGE_SEARCH_TIMEOUT_SECONDS", "15.0"),
                ),
                browser_headless=_env_bool("TASKFORGE_BROWSER_HEADLESS", default=True),
                browser_timeout_ms=int(os.getenv("TASKFORGE_BROWSER_TIMEOUT_MS", "30000")),
                deploy_domain=os.getenv("TASKFORGE_DEPLOY_DOMAIN", "taskforge.app"),
                deploy_port=int(os.getenv("TASKFORGE_DEPLOY_PORT", "3000")),
                deploy_settle_seconds=float(
                    os.getenv("TASKFORGE_DEPLOY_SETTLE_SECONDS", "3.0"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.orchestrator.max_iterations <= 0:
            raise ValueError("TASKFORGE_MAX_ITERATIONS must be > 0.")
        if self.orchestrator.tool_output_max_chars <= 0:
            raise ValueError("TASKFORGE_TOOL_OUTPUT_MAX_CHARS must be > 0.")
        if self.sandbox.backend not in SANDBOX_BACKENDS:
            raise ValueError(
                "TASKFORGE_SANDBOX_BACKEND must be one of "
                f"{', '.join(SANDBOX_BACKENDS)}; got {self.sandbox.backend!r}.",
            )
        if self.sandbox.max_sync_file_bytes <= 0:
            raise ValueError("TASKFORGE_MAX_SYNC_FILE_BYTES must be > 0.")
        if self.reasoning.max_retries < 0:
            raise ValueError("TASKFORGE_REASONING_MAX_RETRIES must be >= 0.")
        _validate_http_url("TASKFORGE_REASONING_API_URL", self.reasoning.api_url)
        _validate_http_url("TASKFORGE_SEARCH_URL", self.tools.search_url)
        if self.tools.command_timeout_ms <= 0:
            raise ValueError("TASKFORGE_COMMAND_TIMEOUT_MS must be > 0.")
        if not self.tools.deploy_domain.strip():
            raise ValueError("TASKFORGE_DEPLOY_DOMAIN must not be empty.")

    def validate_for_reasoning(self) -> None:
        """Raise configuration error if the reasoning service cannot be reached."""

        self.validate()
        if not self.reasoning.api_key.strip():
            raise ValueError(
                "A reasoning API key is required. "
                "Set TASKFORGE_REASONING_API_KEY or ANTHROPIC_API_KEY.",
            )


def _validate_http_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
