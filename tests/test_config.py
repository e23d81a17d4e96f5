from __future__ import annotations

import logging
from pathlib import Path

import allure
import pytest

from agent_workbench.config import (
    DEFAULT_AGENT_COMMAND,
    AgentSettings,
    BuildSettings,
    GitSettings,
    ReaperSettings,
    Settings,
)

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Configuration"),
]


def test_from_env_uses_local_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "AGENT_WORKBENCH_DB_PATH",
        "AGENT_WORKBENCH_LOG_LEVEL",
        "AGENT_WORKBENCH_AGENT_COMMAND",
        "AGENT_WORKBENCH_AGENT_API_KEY",
        "AGENT_WORKBENCH_GIT_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".agent_workbench.db")
    assert settings.log_level == "WARNING"
    assert settings.agent.command_template == DEFAULT_AGENT_COMMAND
    assert settings.agent.api_key is None
    assert settings.git.token is None
    assert settings.reaper.conversation_timeout_minutes == 5
    assert settings.reaper.running_timeout_minutes == 30
    assert settings.reaper.cancelling_timeout_minutes == 2
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_WORKBENCH_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("AGENT_WORKBENCH_WORKSPACE_ROOT", str(tmp_path / "ws"))
    monkeypatch.setenv("AGENT_WORKBENCH_LOG_LEVEL", " debug ")
    monkeypatch.setenv("AGENT_WORKBENCH_AGENT_API_KEY", "  key-123 ")
    monkeypatch.setenv("AGENT_WORKBENCH_GIT_TOKEN", "   ")
    monkeypatch.setenv("AGENT_WORKBENCH_SYSTEM_INSTRUCTIONS", "Only edit src/.")
    monkeypatch.setenv("AGENT_WORKBENCH_CONVERSATION_TIMEOUT_MINUTES", "10")
    monkeypatch.setenv("AGENT_WORKBENCH_SQLITE_BUSY_TIMEOUT_MS", "250")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.workspace_root == tmp_path / "ws"
    assert settings.log_level == "DEBUG"
    assert settings.agent.api_key == "key-123"
    assert settings.git.token is None
    assert settings.agent.system_instructions == "Only edit src/."
    assert settings.reaper.conversation_timeout_minutes == 10
    assert settings.sqlite_busy_timeout_ms == 250


def test_explicit_db_path_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_WORKBENCH_DB_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.db_path == tmp_path / "cli.db"


def test_validate_rejects_unknown_log_level() -> None:
    with pytest.raises(ValueError, match="AGENT_WORKBENCH_LOG_LEVEL"):
        Settings(log_level="VERBOSE").validate()


def test_validate_requires_prompt_placeholder() -> None:
    settings = Settings(agent=AgentSettings(command_template="agent --print"))

    with pytest.raises(ValueError, match="must include"):
        settings.validate()


def test_validate_accepts_prompt_file_placeholder() -> None:
    Settings(agent=AgentSettings(command_template="agent --file {prompt_file}")).validate()


@pytest.mark.parametrize(
    ("settings", "name"),
    [
        (Settings(sqlite_busy_timeout_ms=0), "SQLITE_BUSY_TIMEOUT_MS"),
        (Settings(agent=AgentSettings(poll_interval_seconds=0)), "POLL_INTERVAL_SECONDS"),
        (Settings(agent=AgentSettings(tool_value_max_chars=0)), "TOOL_VALUE_MAX_CHARS"),
        (Settings(build=BuildSettings(timeout_seconds=-1)), "BUILD_TIMEOUT_SECONDS"),
        (
            Settings(reaper=ReaperSettings(running_timeout_minutes=0)),
            "RUNNING_TIMEOUT_MINUTES",
        ),
    ],
)
def test_validate_rejects_non_positive_values(settings: Settings, name: str) -> None:
    with pytest.raises(ValueError, match=name):
        settings.validate()


def test_validate_rejects_relative_github_api_url() -> None:
    settings = Settings(git=GitSettings(api_url="api.github.com"))

    with pytest.raises(ValueError, match="Invalid AGENT_WORKBENCH_GITHUB_API_URL"):
        settings.validate()


def test_configure_logging_applies_level(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict] = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))

    Settings(log_level="DEBUG").configure_logging()

    assert calls[0]["level"] == logging.DEBUG
