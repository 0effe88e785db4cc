from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskforge.config import (
    OrchestratorSettings,
    ReasoningSettings,
    SandboxSettings,
    Settings,
    ToolSettings,
)

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "TASKFORGE_DB_PATH",
        "TASKFORGE_MAX_ITERATIONS",
        "TASKFORGE_SANDBOX_BACKEND",
        "TASKFORGE_REASONING_API_KEY",
        "ANTHROPIC_API_KEY",
        "TASKFORGE_BROWSER_HEADLESS",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".taskforge.db")
    assert settings.orchestrator.max_iterations == 20
    assert settings.orchestrator.tool_output_max_chars == 50_000
    assert settings.sandbox.backend == "local"
    assert settings.sandbox.max_sync_file_bytes == 5 * 1024 * 1024
    assert settings.tools.command_timeout_ms == 120_000
    assert settings.tools.browser_headless is True
    assert settings.reasoning.api_key == ""
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKFORGE_MAX_ITERATIONS", "7")
    monkeypatch.setenv("TASKFORGE_SANDBOX_BACKEND", " Cloud ")
    monkeypatch.setenv("TASKFORGE_BROWSER_HEADLESS", "no")
    monkeypatch.delenv("TASKFORGE_REASONING_API_KEY", raising=False)
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")

    settings = Settings.from_env(db_path=tmp_path / "x.db")

    assert settings.db_path == tmp_path / "x.db"
    assert settings.orchestrator.max_iterations == 7
    assert settings.sandbox.backend == "cloud"
    assert settings.tools.browser_headless is False
    assert settings.reasoning.api_key == "sk-test"
    settings.validate_for_reasoning()


def test_invalid_boolean_names_the_variable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKFORGE_BROWSER_HEADLESS", "maybe")

    with pytest.raises(ValueError, match="TASKFORGE_BROWSER_HEADLESS"):
        Settings.from_env()


def test_validate_rejects_unknown_sandbox_backend() -> None:
    settings = Settings(sandbox=SandboxSettings(backend="vm"))

    with pytest.raises(ValueError, match="TASKFORGE_SANDBOX_BACKEND"):
        settings.validate()


def test_validate_rejects_non_positive_iteration_budget() -> None:
    settings = Settings(orchestrator=OrchestratorSettings(max_iterations=0))

    with pytest.raises(ValueError, match="TASKFORGE_MAX_ITERATIONS"):
        settings.validate()


def test_validate_rejects_non_http_urls() -> None:
    settings = Settings(tools=ToolSettings(search_url="ftp://search.example.com"))

    with pytest.raises(ValueError, match="TASKFORGE_SEARCH_URL"):
        settings.validate()


def test_validate_for_reasoning_requires_api_key() -> None:
    settings = Settings(reasoning=ReasoningSettings(api_key="  "))

    with pytest.raises(ValueError, match="ANTHROPIC_API_KEY"):
        settings.validate_for_reasoning()
