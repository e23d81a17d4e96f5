"""Table-driven workspace status transitions.

Every status write goes through this module. ``WORKSPACE_TRANSITIONS`` is the
single source of truth for which moves are legal and ``apply_transition`` is
the one compare-and-set that writes them, also inside repository
transactions. ``force_status`` is the one escape hatch and is wired only into
administrative commands.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from agent_workbench.errors import InvalidTransitionError
from agent_workbench.storage.common import to_db_datetime, utc_now
from agent_workbench.storage.sqlmodel_models import WorkspaceRow
from agent_workbench.workspace.models import WorkspaceStatus, WorkspaceView

if TYPE_CHECKING:
    from agent_workbench.storage.repository import WorkbenchRepository

logger = logging.getLogger(__name__)

WORKSPACE_TRANSITIONS: dict[WorkspaceStatus, frozenset[WorkspaceStatus]] = {
    WorkspaceStatus.AVAILABLE_FOR_SETUP: frozenset({WorkspaceStatus.IN_SETUP}),
    WorkspaceStatus.IN_SETUP: frozenset(
        {WorkspaceStatus.AVAILABLE_FOR_CONVERSATION, WorkspaceStatus.PROBLEM},
    ),
    WorkspaceStatus.AVAILABLE_FOR_CONVERSATION: frozenset({WorkspaceStatus.IN_CONVERSATION}),
    WorkspaceStatus.IN_CONVERSATION: frozenset(
        {
            WorkspaceStatus.AVAILABLE_FOR_CONVERSATION,
            WorkspaceStatus.IN_REVIEW,
            WorkspaceStatus.PROBLEM,
        },
    ),
    WorkspaceStatus.IN_REVIEW: frozenset(
        {
            WorkspaceStatus.AVAILABLE_FOR_CONVERSATION,
            WorkspaceStatus.MERGED,
            WorkspaceStatus.PROBLEM,
        },
    ),
    WorkspaceStatus.MERGED: frozenset(),
    WorkspaceStatus.PROBLEM: frozenset({WorkspaceStatus.AVAILABLE_FOR_SETUP}),
}


def is_valid_transition(current: WorkspaceStatus, target: WorkspaceStatus) -> bool:
    return target in WORKSPACE_TRANSITIONS[current]


def validate_transition(current: WorkspaceStatus, target: WorkspaceStatus) -> None:
    """Raise ``InvalidTransitionError`` unless ``current -> target`` is in the table."""

    if not is_valid_transition(current, target):
        raise InvalidTransitionError("workspace", current.value, target.value)


def apply_transition(
    session: Session,
    *,
    workspace_id: str,
    expected: WorkspaceStatus,
    target: WorkspaceStatus,
    branch_name: str | None = None,
) -> bool:
    """Validate ``expected -> target`` and apply it within ``session``.

    Returns False when the row no longer holds ``expected``. The caller owns
    the transaction: it commits, rolls back or retries.
    """

    validate_transition(expected, target)
    values: dict[str, object] = {
        "status": target.value,
        "updated_at": to_db_datetime(utc_now()),
    }
    if branch_name is not None:
        values["branch_name"] = branch_name
    result = session.exec(
        sa_update(WorkspaceRow)
        .where(
            col(WorkspaceRow.workspace_id) == workspace_id,
            col(WorkspaceRow.status) == expected.value,
        )
        .values(**values),
    )
    return result.rowcount == 1


def needs_setup(status: WorkspaceStatus) -> bool:
    return status == WorkspaceStatus.AVAILABLE_FOR_SETUP


class WorkspaceStateMachine:
    """Validates and applies workspace status transitions."""

    def __init__(self, repository: WorkbenchRepository) -> None:
        self.repository = repository

    def transition_to(self, workspace_id: str, target: WorkspaceStatus) -> WorkspaceView:
        """Move a workspace to ``target`` if the table allows it.

        The update is a compare-and-set against the status just read, so a
        concurrent writer surfaces as ``ConcurrentStatusChangeError``.
        """

        workspace = self.repository.get_workspace_or_fail(workspace_id=workspace_id)
        validate_transition(workspace.status, target)
        updated = self.repository.compare_and_set_workspace_status(
            workspace_id=workspace_id,
            expected=workspace.status,
            target=target,
        )
        logger.info(
            "Workspace %s: %s -> %s",
            workspace_id,
            workspace.status.value,
            target.value,
        )
        return updated

    def force_status(self, workspace_id: str, target: WorkspaceStatus) -> WorkspaceView:
        """Administrative override that skips the transition table."""

        workspace = self.repository.get_workspace_or_fail(workspace_id=workspace_id)
        logger.warning(
            "Forcing workspace %s status %s -> %s",
            workspace_id,
            workspace.status.value,
            target.value,
        )
        return self.repository.overwrite_workspace_status(workspace_id=workspace_id, target=target)
