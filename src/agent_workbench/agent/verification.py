"""Post-run build verification."""

from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path
from typing import Protocol

from agent_workbench.errors import VerificationError

logger = logging.getLogger(__name__)

BUILD_OUTPUT_MAX_CHARS = 4_000


class BuildVerifier(Protocol):
    def verify(self, workspace_path: Path) -> str:
        """Run the build and return its output; raise ``VerificationError`` on failure."""
        ...


class CommandBuildVerifier:
    """Run a build command inside the workspace."""

    def __init__(self, *, command: str, timeout_seconds: int = 300) -> None:
        self.command = command
        self.timeout_seconds = timeout_seconds

    def verify(self, workspace_path: Path) -> str:
        argv = shlex.split(self.command)
        if not argv:
            return "No build command configured."

        logger.info("Running build in %s: %s", workspace_path, self.command)
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                cwd=workspace_path,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as error:
            raise VerificationError(f"Build command not found: {argv[0]}") from error
        except subprocess.TimeoutExpired as error:
            raise VerificationError(
                f"Build timed out after {self.timeout_seconds} seconds.",
            ) from error

        output = _tail(completed.stdout or "")
        if completed.returncode != 0:
            message = f"Build failed with exit code {completed.returncode}"
            raise VerificationError(f"{message}: {output}" if output else message)
        return output


def _tail(text: str) -> str:
    text = text.strip()
    if len(text) <= BUILD_OUTPUT_MAX_CHARS:
        return text
    return "..." + text[-BUILD_OUTPUT_MAX_CHARS:]
