"""Prompt assembly for agent runs."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

from agent_workbench.conversation.models import ConversationMessageView


def build_prompt(
    *,
    instruction: str,
    history: Sequence[ConversationMessageView],
    workspace_path: Path,
    system_instructions: str = "",
    resuming: bool = False,
) -> str:
    """Compose the text handed to the agent.

    A resumed agent session already holds the system context and history, so
    only the instruction is sent. A fresh session gets the system context and,
    when the conversation has earlier turns, a transcript of them.
    """

    if resuming:
        return instruction

    parts = [_system_context(workspace_path=workspace_path, instructions=system_instructions)]
    if history:
        lines = ["Conversation so far:"]
        lines.extend(f"{message.role.value}: {message.content}" for message in history)
        parts.append("\n".join(lines))
        parts.append(f"user: {instruction}")
    else:
        parts.append(f"Please perform the following task: {instruction}")
    return "\n\n".join(parts)


def _system_context(*, workspace_path: Path, instructions: str) -> str:
    sections = [f"The working folder is: {workspace_path}"]
    if instructions.strip():
        sections.append(f"## Instructions\n{instructions.strip()}")
    return "\n\n".join(sections)
