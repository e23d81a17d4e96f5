"""Domain errors raised across the workbench."""

from __future__ import annotations


class WorkbenchError(RuntimeError):
    """Base class for errors surfaced to callers."""


class InvalidTransitionError(WorkbenchError):
    """Requested status change is not in the transition table."""

    def __init__(
        self,
        entity: str,
        current: str,
        target: str,
        *,
        message: str | None = None,
    ) -> None:
        super().__init__(
            message or f"Invalid {entity} status transition from {current} to {target}",
        )
        self.entity = entity
        self.current = current
        self.target = target


class ConcurrentStatusChangeError(InvalidTransitionError):
    """Status changed between read and compare-and-set update."""

    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(
            entity,
            current,
            target,
            message=(
                f"{entity} status changed concurrently while moving {current} -> {target}; "
                "please retry"
            ),
        )


class NotOwnerError(WorkbenchError):
    """Caller is not the creator of the conversation."""


class WorkspaceNotFoundError(WorkbenchError):
    pass


class WorkspaceBusyError(WorkbenchError):
    """Workspace is held by another user's ongoing conversation."""

    def __init__(self, workspace_id: str, owner_user_id: str) -> None:
        super().__init__(
            f"Workspace {workspace_id} is in conversation with user {owner_user_id}",
        )
        self.workspace_id = workspace_id
        self.owner_user_id = owner_user_id


class WorkspaceNotReadyError(WorkbenchError):
    """Workspace status does not allow starting a conversation."""


class ConversationNotFoundError(WorkbenchError):
    pass


class ConversationNotOngoingError(WorkbenchError):
    pass


class RunNotFoundError(WorkbenchError):
    pass


class ProcessError(WorkbenchError):
    """External agent process failed to start or crashed."""

    def __init__(self, message: str, *, exit_code: int | None = None, transient: bool = False):
        super().__init__(message)
        self.exit_code = exit_code
        self.transient = transient


class AgentReportedError(WorkbenchError):
    """Agent run did not complete successfully.

    The orchestrator records failures as data in the terminal Done chunk;
    this is raised only by ``RunOutcome.raise_for_failure``.
    """


class VersionControlError(WorkbenchError):
    """git or hosting API operation failed."""


class NoChangesError(VersionControlError):
    """Nothing to commit, or the branch has no commits to review."""


class VerificationError(WorkbenchError):
    """Post-run build verification failed."""


class RunInProgressError(WorkbenchError):
    """Conversation already has a run that has not reached a terminal status."""
