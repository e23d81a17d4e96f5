"""Runtime configuration for the agent workbench."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_AGENT_COMMAND = (
    "agent --output-format stream-json --stream-partial-output --force {resume} -p {prompt}"
)
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


@dataclass(slots=True)
class AgentSettings:
    """External agent process settings."""

    command_template: str = DEFAULT_AGENT_COMMAND
    api_key: str | None = None
    poll_interval_seconds: float = 0.05
    tool_value_max_chars: int = 500
    system_instructions: str = ""


@dataclass(slots=True)
class BuildSettings:
    """Post-run build verification settings."""

    command: str = "npm run build"
    timeout_seconds: int = 300


@dataclass(slots=True)
class ReaperSettings:
    """Stale conversation and stuck run thresholds."""

    conversation_timeout_minutes: int = 5
    running_timeout_minutes: int = 30
    cancelling_timeout_minutes: int = 2


@dataclass(slots=True)
class GitSettings:
    """git and GitHub settings used for setup, commits and pull requests."""

    token: str | None = None
    api_url: str = "https://api.github.com"
    base_branch: str = "main"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".agent_workbench.db")
    workspace_root: Path = Path(".workspaces")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "WARNING"
    agent: AgentSettings = field(default_factory=AgentSettings)
    build: BuildSettings = field(default_factory=BuildSettings)
    reaper: ReaperSettings = field(default_factory=ReaperSettings)
    git: GitSettings = field(default_factory=GitSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from ``AGENT_WORKBENCH_*`` variables with local-development defaults."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_WORKBENCH_DB_PATH", ".agent_workbench.db")),
            workspace_root=Path(os.getenv("AGENT_WORKBENCH_WORKSPACE_ROOT", ".workspaces")),
            sqlite_busy_timeout_ms=int(
                os.getenv("AGENT_WORKBENCH_SQLITE_BUSY_TIMEOUT_MS", "5000"),
            ),
            log_level=os.getenv("AGENT_WORKBENCH_LOG_LEVEL", "WARNING").strip().upper(),
            agent=AgentSettings(
                command_template=os.getenv("AGENT_WORKBENCH_AGENT_COMMAND", DEFAULT_AGENT_COMMAND),
                api_key=_env_optional("AGENT_WORKBENCH_AGENT_API_KEY"),
                poll_interval_seconds=float(
                    os.getenv("AGENT_WORKBENCH_POLL_INTERVAL_SECONDS", "0.05"),
                ),
                tool_value_max_chars=int(
                    os.getenv("AGENT_WORKBENCH_TOOL_VALUE_MAX_CHARS", "500"),
                ),
                system_instructions=os.getenv("AGENT_WORKBENCH_SYSTEM_INSTRUCTIONS", ""),
            ),
            build=BuildSettings(
                command=os.getenv("AGENT_WORKBENCH_BUILD_COMMAND", "npm run build"),
                timeout_seconds=int(os.getenv("AGENT_WORKBENCH_BUILD_TIMEOUT_SECONDS", "300")),
            ),
            reaper=ReaperSettings(
                conversation_timeout_minutes=int(
                    os.getenv("AGENT_WORKBENCH_CONVERSATION_TIMEOUT_MINUTES", "5"),
                ),
                running_timeout_minutes=int(
                    os.getenv("AGENT_WORKBENCH_RUNNING_TIMEOUT_MINUTES", "30"),
                ),
                cancelling_timeout_minutes=int(
                    os.getenv("AGENT_WORKBENCH_CANCELLING_TIMEOUT_MINUTES", "2"),
                ),
            ),
            git=GitSettings(
                token=_env_optional("AGENT_WORKBENCH_GIT_TOKEN"),
                api_url=os.getenv("AGENT_WORKBENCH_GITHUB_API_URL", "https://api.github.com"),
                base_branch=os.getenv("AGENT_WORKBENCH_GIT_BASE_BRANCH", "main"),
            ),
        )

    def validate(self) -> None:
        """Raise ``ValueError`` for settings the workbench cannot run with."""

        if self.log_level not in LOG_LEVELS:
            raise ValueError(
                f"AGENT_WORKBENCH_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}; "
                f"got {self.log_level!r}.",
            )
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("AGENT_WORKBENCH_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if "{prompt}" not in self.agent.command_template and (
            "{prompt_file}" not in self.agent.command_template
        ):
            raise ValueError(
                "AGENT_WORKBENCH_AGENT_COMMAND must include {prompt} or {prompt_file}.",
            )
        if self.agent.poll_interval_seconds <= 0:
            raise ValueError("AGENT_WORKBENCH_POLL_INTERVAL_SECONDS must be > 0.")
        if self.agent.tool_value_max_chars <= 0:
            raise ValueError("AGENT_WORKBENCH_TOOL_VALUE_MAX_CHARS must be > 0.")
        if self.build.timeout_seconds <= 0:
            raise ValueError("AGENT_WORKBENCH_BUILD_TIMEOUT_SECONDS must be > 0.")
        for name, value in (
            ("CONVERSATION_TIMEOUT_MINUTES", self.reaper.conversation_timeout_minutes),
            ("RUNNING_TIMEOUT_MINUTES", self.reaper.running_timeout_minutes),
            ("CANCELLING_TIMEOUT_MINUTES", self.reaper.cancelling_timeout_minutes),
        ):
            if value <= 0:
                raise ValueError(f"AGENT_WORKBENCH_{name} must be > 0.")
        parsed = urlparse(self.git.api_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                f"Invalid AGENT_WORKBENCH_GITHUB_API_URL: {self.git.api_url!r}. "
                "Expected an absolute http(s) URL.",
            )

    def configure_logging(self) -> None:
        logging.basicConfig(
            level=getattr(logging, self.log_level, logging.WARNING),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None
