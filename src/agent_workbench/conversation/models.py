"""Conversation domain models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class ConversationStatus(str, Enum):
    ONGOING = "ongoing"
    FINISHED = "finished"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(slots=True)
class ConversationView:
    """Readable conversation view."""

    conversation_id: str
    workspace_id: str
    user_id: str
    status: ConversationStatus
    workspace_path: str
    backend_session_state: str | None
    last_activity_at: datetime | None
    created_at: datetime


@dataclass(slots=True)
class ConversationMessageView:
    sequence: int
    role: MessageRole
    content: str
    created_at: datetime
