"""Workspace setup, version-control operations and administrative resets."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from agent_workbench.errors import (
    InvalidTransitionError,
    NoChangesError,
    VersionControlError,
    WorkspaceNotReadyError,
)
from agent_workbench.storage.common import utc_now
from agent_workbench.storage.repository import WorkbenchRepository
from agent_workbench.workspace.models import WorkspaceStatus, WorkspaceView
from agent_workbench.workspace.state_machine import WorkspaceStateMachine, needs_setup
from agent_workbench.workspace.vcs import VersionControlGateway

logger = logging.getLogger(__name__)


def generate_branch_name(workspace_id: str) -> str:
    return f"ws-{workspace_id[:8]}-{utc_now().strftime('%Y%m%d-%H%M%S')}"


def build_commit_message(
    message: str,
    *,
    author_email: str,
    conversation_id: str | None = None,
) -> str:
    lines = [message, "", f"Workbench user: {author_email}"]
    if conversation_id is not None:
        lines.append(f"Conversation ID: {conversation_id}")
    return "\n".join(lines)


class WorkspaceService:
    """Operations on one workspace's working copy and its status."""

    def __init__(
        self,
        *,
        repository: WorkbenchRepository,
        vcs: VersionControlGateway,
        git_token: str | None = None,
        state_machine: WorkspaceStateMachine | None = None,
    ) -> None:
        self.repository = repository
        self.vcs = vcs
        self.git_token = git_token
        self.state_machine = state_machine or WorkspaceStateMachine(repository)

    def run_setup(self, *, workspace_id: str, repository_url: str) -> WorkspaceView:
        """Clone the project and create the workspace branch.

        Accepts a workspace already claimed ``IN_SETUP`` or one still
        ``AVAILABLE_FOR_SETUP``. Any failure leaves the workspace in PROBLEM
        and re-raises.
        """

        workspace = self.repository.get_workspace_or_fail(workspace_id=workspace_id)
        if workspace.status != WorkspaceStatus.IN_SETUP:
            if not needs_setup(workspace.status):
                raise WorkspaceNotReadyError(
                    f"Cannot set up workspace {workspace_id} in status {workspace.status.value}",
                )
            self.state_machine.transition_to(workspace_id, WorkspaceStatus.IN_SETUP)

        path = Path(workspace.workspace_path)
        branch_name = generate_branch_name(workspace_id)
        try:
            if path.exists():
                shutil.rmtree(path)
            logger.debug("Cloning %s into %s", repository_url, path)
            self.vcs.clone(repository_url, path, self.git_token)
            self.vcs.checkout_new_branch(path, branch_name)
        except Exception:
            logger.exception("Workspace setup failed for %s", workspace_id)
            self._mark_problem(workspace_id)
            raise

        updated = self.repository.compare_and_set_workspace_status(
            workspace_id=workspace_id,
            expected=WorkspaceStatus.IN_SETUP,
            target=WorkspaceStatus.AVAILABLE_FOR_CONVERSATION,
            branch_name=branch_name,
        )
        logger.info("Workspace %s set up on branch %s", workspace_id, branch_name)
        return updated

    def commit_and_push(
        self,
        *,
        workspace_id: str,
        message: str,
        author_email: str,
        conversation_id: str | None = None,
    ) -> bool:
        """Commit and push all changes. Returns False when there was nothing to commit.

        A version-control failure moves the workspace to PROBLEM when the
        transition table allows it from the current status, then re-raises.
        """

        workspace = self.repository.get_workspace_or_fail(workspace_id=workspace_id)
        try:
            self.vcs.commit_and_push(
                Path(workspace.workspace_path),
                build_commit_message(
                    message,
                    author_email=author_email,
                    conversation_id=conversation_id,
                ),
                author_email,
            )
        except NoChangesError:
            logger.debug("No changes to commit in workspace %s", workspace_id)
            return False
        except VersionControlError:
            logger.exception("Commit and push failed for workspace %s", workspace_id)
            self._mark_problem(workspace_id)
            raise
        logger.info("Committed and pushed workspace %s", workspace_id)
        return True

    def _mark_problem(self, workspace_id: str) -> None:
        try:
            self.state_machine.transition_to(workspace_id, WorkspaceStatus.PROBLEM)
        except InvalidTransitionError as error:
            logger.warning("Workspace %s left unchanged after failure: %s", workspace_id, error)

    def ensure_pull_request(
        self,
        *,
        workspace_id: str,
        conversation_id: str | None = None,
        user_email: str | None = None,
    ) -> str:
        """Return the pull request URL for the workspace branch, creating it if needed.

        Raises ``NoChangesError`` when the branch has nothing to review.
        """

        workspace = self.repository.get_workspace_or_fail(workspace_id=workspace_id)
        if workspace.branch_name is None:
            raise VersionControlError(f"Workspace {workspace_id} has no branch name set")

        body_lines = ["Automated pull request from an agent workbench workspace."]
        if user_email is not None:
            body_lines.extend(["", f"**Workbench user:** {user_email}"])
        if conversation_id is not None:
            body_lines.extend(["", f"**Conversation ID:** {conversation_id}"])
        body_lines.extend(["", f"**Workspace ID:** {workspace_id}"])

        return self.vcs.ensure_pull_request(
            Path(workspace.workspace_path),
            workspace.branch_name,
            f"Workbench: {workspace.project_id} (workspace {workspace_id[:8]})",
            "\n".join(body_lines),
        )

    def mark_merged(self, *, workspace_id: str) -> WorkspaceView:
        return self.state_machine.transition_to(workspace_id, WorkspaceStatus.MERGED)

    def reset_problem_workspace(self, *, workspace_id: str) -> WorkspaceView:
        workspace = self.repository.get_workspace_or_fail(workspace_id=workspace_id)
        if workspace.status != WorkspaceStatus.PROBLEM:
            raise WorkspaceNotReadyError(
                f"Can only reset workspaces in {WorkspaceStatus.PROBLEM.value} status; "
                f"{workspace_id} is {workspace.status.value}",
            )
        return self.state_machine.transition_to(workspace_id, WorkspaceStatus.AVAILABLE_FOR_SETUP)

    def force_status(self, *, workspace_id: str, target: WorkspaceStatus) -> WorkspaceView:
        return self.state_machine.force_status(workspace_id, target)
