"""One active conversation per workspace, and owner-only conversation operations."""

from __future__ import annotations

import logging

from agent_workbench.agent.models import RunStatus, RunView
from agent_workbench.conversation.models import ConversationStatus, ConversationView
from agent_workbench.errors import (
    ConcurrentStatusChangeError,
    ConversationNotOngoingError,
    NoChangesError,
    NotOwnerError,
    VersionControlError,
    WorkspaceBusyError,
    WorkspaceNotFoundError,
)
from agent_workbench.storage.repository import WorkbenchRepository
from agent_workbench.workspace.models import SetupDispatch, WorkspaceStatus
from agent_workbench.workspace.service import WorkspaceService
from agent_workbench.workspace.state_machine import WorkspaceStateMachine, validate_transition

logger = logging.getLogger(__name__)

FINISH_COMMIT_MESSAGE = "Auto-commit on conversation finish"
REVIEW_COMMIT_MESSAGE = "Auto-commit before review"
_START_ATTEMPTS = 3


def fallback_author_email(user_id: str) -> str:
    return f"{user_id}@users.agent-workbench.invalid"


class SessionConcurrencyGuard:
    """Claims workspaces for setup and conversations, and checks conversation ownership."""

    def __init__(
        self,
        *,
        repository: WorkbenchRepository,
        workspace_service: WorkspaceService,
    ) -> None:
        self.repository = repository
        self.workspace_service = workspace_service
        self.state_machine: WorkspaceStateMachine = workspace_service.state_machine

    def dispatch_setup_if_needed(self, project_id: str) -> SetupDispatch:
        """Find or create the project's workspace and claim its setup at most once."""

        dispatch = self.repository.claim_workspace_for_setup(project_id=project_id)
        if dispatch.claimed:
            logger.info(
                "Claimed setup of workspace %s for project %s",
                dispatch.workspace.workspace_id,
                project_id,
            )
        return dispatch

    def start_or_resume(
        self,
        project_id: str,
        user_id: str,
        *,
        display_name: str | None = None,
        email: str | None = None,
    ) -> ConversationView:
        """Return the caller's ongoing conversation, or start one.

        Concurrent callers for the same workspace race on the compare-and-set
        claim of the workspace; losers re-read and get the winner's row.
        """

        self.repository.ensure_user(user_id=user_id, display_name=display_name, email=email)
        workspace = self.repository.find_workspace_by_project(project_id=project_id)
        if workspace is None:
            raise WorkspaceNotFoundError(f"Workspace not found for project: {project_id}")

        for _ in range(_START_ATTEMPTS):
            existing = self.repository.find_ongoing_conversation(
                workspace_id=workspace.workspace_id,
            )
            if existing is not None:
                return self._owned_or_busy(existing, user_id)

            current = self.repository.get_workspace_or_fail(workspace_id=workspace.workspace_id)
            if current.status == WorkspaceStatus.IN_CONVERSATION:
                # A concurrent start committed after the lookup above.
                continue
            validate_transition(current.status, WorkspaceStatus.IN_CONVERSATION)

            created = self.repository.open_conversation(
                workspace_id=workspace.workspace_id,
                user_id=user_id,
            )
            if created is not None:
                logger.info(
                    "Started conversation %s on workspace %s for %s",
                    created.conversation_id,
                    workspace.workspace_id,
                    user_id,
                )
                return created
            logger.debug("Lost conversation start race on workspace %s", workspace.workspace_id)

        raise ConcurrentStatusChangeError(
            "workspace",
            WorkspaceStatus.AVAILABLE_FOR_CONVERSATION.value,
            WorkspaceStatus.IN_CONVERSATION.value,
        )

    def finish(self, conversation_id: str, user_id: str) -> None:
        """Commit pending work, finish the conversation and release the workspace.

        Pending and running runs are moved to ``cancelling`` first. If the
        commit fails the workspace is already in PROBLEM; the conversation is
        still finished before the error propagates.
        """

        conversation = self._owned_ongoing(conversation_id, user_id)
        self._cancel_active_runs(conversation)
        try:
            self._commit(conversation, FINISH_COMMIT_MESSAGE)
        except VersionControlError:
            self.repository.finish_conversation(conversation_id=conversation_id)
            raise
        self._close(conversation)
        self.state_machine.transition_to(
            conversation.workspace_id,
            WorkspaceStatus.AVAILABLE_FOR_CONVERSATION,
        )

    def send_to_review(self, conversation_id: str, user_id: str) -> str:
        """Cancel active runs, commit, finish the conversation and open a pull request.

        Returns the pull request URL, or ``""`` when the branch has nothing
        to review; the workspace then goes back to AVAILABLE_FOR_CONVERSATION.
        """

        conversation = self._owned_ongoing(conversation_id, user_id)
        self._cancel_active_runs(conversation)
        try:
            self._commit(conversation, REVIEW_COMMIT_MESSAGE)
        except VersionControlError:
            self.repository.finish_conversation(conversation_id=conversation_id)
            raise
        self._close(conversation)

        self.state_machine.transition_to(conversation.workspace_id, WorkspaceStatus.IN_REVIEW)
        try:
            url = self.workspace_service.ensure_pull_request(
                workspace_id=conversation.workspace_id,
                conversation_id=conversation_id,
                user_email=self._author_email(user_id),
            )
        except NoChangesError:
            logger.info(
                "Nothing to review on workspace %s; releasing it",
                conversation.workspace_id,
            )
            self.state_machine.transition_to(
                conversation.workspace_id,
                WorkspaceStatus.AVAILABLE_FOR_CONVERSATION,
            )
            return ""
        logger.info("Workspace %s in review: %s", conversation.workspace_id, url)
        return url

    def submit_run(self, conversation_id: str, user_id: str, instruction: str) -> RunView:
        if not instruction.strip():
            raise ValueError("Instruction must not be empty.")
        self._owned_ongoing(conversation_id, user_id)
        run = self.repository.create_run(conversation_id=conversation_id, instruction=instruction)
        logger.info("Submitted run %s on conversation %s", run.run_id, conversation_id)
        return run

    def cancel_run(self, run_id: str, user_id: str) -> RunView:
        """Request cooperative cancellation; repeated requests are no-ops."""

        run = self.repository.get_run_or_fail(run_id=run_id)
        conversation = self.repository.get_conversation_or_fail(
            conversation_id=run.conversation_id,
        )
        self._check_owner(conversation, user_id)
        return self._request_cancel(run)

    def heartbeat(self, conversation_id: str, user_id: str) -> None:
        self._owned_ongoing(conversation_id, user_id)
        if not self.repository.touch_conversation(conversation_id=conversation_id):
            raise ConversationNotOngoingError(f"Conversation is not ongoing: {conversation_id}")

    def _request_cancel(self, run: RunView) -> RunView:
        for _ in range(_START_ATTEMPTS):
            if run.status == RunStatus.CANCELLING:
                return run
            try:
                cancelled = self.repository.transition_run(
                    run_id=run.run_id,
                    expected=run.status,
                    target=RunStatus.CANCELLING,
                )
            except ConcurrentStatusChangeError:
                run = self.repository.get_run_or_fail(run_id=run.run_id)
                continue
            logger.info("Cancellation requested for run %s", run.run_id)
            return cancelled
        raise ConcurrentStatusChangeError("run", run.status.value, RunStatus.CANCELLING.value)

    def _cancel_active_runs(self, conversation: ConversationView) -> None:
        for run in self.repository.list_runs(conversation_id=conversation.conversation_id):
            if run.status in {RunStatus.PENDING, RunStatus.RUNNING}:
                self._request_cancel(run)

    def _commit(self, conversation: ConversationView, message: str) -> bool:
        return self.workspace_service.commit_and_push(
            workspace_id=conversation.workspace_id,
            message=message,
            author_email=self._author_email(conversation.user_id),
            conversation_id=conversation.conversation_id,
        )

    def _close(self, conversation: ConversationView) -> None:
        if not self.repository.finish_conversation(conversation_id=conversation.conversation_id):
            raise ConversationNotOngoingError(
                f"Conversation is not ongoing: {conversation.conversation_id}",
            )

    def _author_email(self, user_id: str) -> str:
        return self.repository.get_user_email(user_id=user_id) or fallback_author_email(user_id)

    def _owned_ongoing(self, conversation_id: str, user_id: str) -> ConversationView:
        conversation = self.repository.get_conversation_or_fail(conversation_id=conversation_id)
        self._check_owner(conversation, user_id)
        if conversation.status != ConversationStatus.ONGOING:
            raise ConversationNotOngoingError(f"Conversation is not ongoing: {conversation_id}")
        return conversation

    @staticmethod
    def _check_owner(conversation: ConversationView, user_id: str) -> None:
        if conversation.user_id != user_id:
            raise NotOwnerError("Only the conversation owner can perform this action")

    @staticmethod
    def _owned_or_busy(conversation: ConversationView, user_id: str) -> ConversationView:
        if conversation.user_id != user_id:
            raise WorkspaceBusyError(conversation.workspace_id, conversation.user_id)
        return conversation
