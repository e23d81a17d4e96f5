"""Workspace domain models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class WorkspaceStatus(str, Enum):
    """Lifecycle states of a git-backed workspace."""

    AVAILABLE_FOR_SETUP = "available_for_setup"
    IN_SETUP = "in_setup"
    AVAILABLE_FOR_CONVERSATION = "available_for_conversation"
    IN_CONVERSATION = "in_conversation"
    IN_REVIEW = "in_review"
    MERGED = "merged"
    PROBLEM = "problem"


@dataclass(slots=True)
class WorkspaceView:
    """Readable workspace view."""

    workspace_id: str
    project_id: str
    status: WorkspaceStatus
    branch_name: str | None
    workspace_path: str
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class SetupDispatch:
    """Outcome of a find-or-create-and-claim setup request."""

    workspace: WorkspaceView
    claimed: bool
