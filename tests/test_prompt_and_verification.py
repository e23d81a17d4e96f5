from __future__ import annotations

import shlex
import sys
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from agent_workbench.agent.prompt import build_prompt
from agent_workbench.agent.verification import BUILD_OUTPUT_MAX_CHARS, CommandBuildVerifier
from agent_workbench.conversation.models import ConversationMessageView, MessageRole
from agent_workbench.errors import VerificationError

pytestmark = [
    allure.epic("Agent Runs"),
    allure.feature("Prompt & Build Verification"),
]


def _message(sequence: int, role: MessageRole, content: str) -> ConversationMessageView:
    return ConversationMessageView(
        sequence=sequence,
        role=role,
        content=content,
        created_at=datetime(2026, 10, 18, 12, 0, tzinfo=UTC),
    )


def _python_build(code: str, timeout_seconds: int = 30) -> CommandBuildVerifier:
    return CommandBuildVerifier(
        command=f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}",
        timeout_seconds=timeout_seconds,
    )


def test_fresh_prompt_includes_working_folder_and_instructions(tmp_path: Path) -> None:
    prompt = build_prompt(
        instruction="Make the header blue",
        history=[],
        workspace_path=tmp_path,
        system_instructions="  Never touch package.json.  ",
    )

    assert prompt == (
        f"The working folder is: {tmp_path}\n\n"
        "## Instructions\nNever touch package.json.\n\n"
        "Please perform the following task: Make the header blue"
    )


def test_fresh_prompt_replays_history(tmp_path: Path) -> None:
    prompt = build_prompt(
        instruction="Now make it red",
        history=[
            _message(1, MessageRole.USER, "Make the header blue"),
            _message(2, MessageRole.ASSISTANT, "Changed header color."),
        ],
        workspace_path=tmp_path,
    )

    assert prompt.splitlines()[-5:] == [
        "Conversation so far:",
        "user: Make the header blue",
        "assistant: Changed header color.",
        "",
        "user: Now make it red",
    ]
    assert "## Instructions" not in prompt


def test_resumed_session_gets_only_the_instruction(tmp_path: Path) -> None:
    prompt = build_prompt(
        instruction="Now make it red",
        history=[_message(1, MessageRole.USER, "Make the header blue")],
        workspace_path=tmp_path,
        system_instructions="ignored",
        resuming=True,
    )

    assert prompt == "Now make it red"


def test_build_success_returns_output(tmp_path: Path) -> None:
    verifier = _python_build("print('compiled 3 files')")

    assert verifier.verify(tmp_path) == "compiled 3 files"


def test_build_failure_raises_with_output(tmp_path: Path) -> None:
    verifier = _python_build("import sys; print('error TS2304'); sys.exit(2)")

    with pytest.raises(VerificationError, match="exit code 2: error TS2304"):
        verifier.verify(tmp_path)


def test_build_output_is_truncated_to_tail(tmp_path: Path) -> None:
    verifier = _python_build(f"print('x' * {BUILD_OUTPUT_MAX_CHARS + 100} + 'END')")

    output = verifier.verify(tmp_path)

    assert output.startswith("...")
    assert output.endswith("END")
    assert len(output) == BUILD_OUTPUT_MAX_CHARS + 3


def test_build_timeout_raises(tmp_path: Path) -> None:
    verifier = _python_build("import time; time.sleep(10)", timeout_seconds=1)

    with pytest.raises(VerificationError, match="timed out after 1 seconds"):
        verifier.verify(tmp_path)


def test_missing_build_command_raises(tmp_path: Path) -> None:
    verifier = CommandBuildVerifier(command="no-such-build-tool-xyz run")

    with pytest.raises(VerificationError, match="Build command not found"):
        verifier.verify(tmp_path)


def test_empty_build_command_is_skipped(tmp_path: Path) -> None:
    assert CommandBuildVerifier(command="  ").verify(tmp_path) == "No build command configured."
