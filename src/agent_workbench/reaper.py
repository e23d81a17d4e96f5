"""Scheduled repair of abandoned conversations and stuck runs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from agent_workbench.agent.models import RunStatus, RunView, StreamChunk
from agent_workbench.conversation.guard import FINISH_COMMIT_MESSAGE, fallback_author_email
from agent_workbench.conversation.models import ConversationView
from agent_workbench.errors import ConcurrentStatusChangeError, VersionControlError
from agent_workbench.storage.common import utc_now
from agent_workbench.storage.repository import WorkbenchRepository
from agent_workbench.workspace.models import WorkspaceStatus
from agent_workbench.workspace.service import WorkspaceService
from agent_workbench.workspace.state_machine import WorkspaceStateMachine

logger = logging.getLogger(__name__)

TIMED_OUT_MESSAGE = "Session timed out."
CANCELLED_MESSAGE = "Cancelled by user."


@dataclass(slots=True)
class ReaperSummary:
    released_conversations: int = 0
    failed_runs: int = 0
    cancelled_runs: int = 0
    errors: list[str] = field(default_factory=list)


class StaleSessionReaper:
    """Releases idle conversations and closes runs nobody is driving anymore.

    Each check is idempotent: rows are selected by status and age, and every
    status write is a compare-and-set, so overlapping sweeps or a late
    orchestrator write leave exactly one terminal outcome.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: WorkbenchRepository,
        workspace_service: WorkspaceService | None = None,
        conversation_timeout: timedelta = timedelta(minutes=5),
        running_timeout: timedelta = timedelta(minutes=30),
        cancelling_timeout: timedelta = timedelta(minutes=2),
    ) -> None:
        self.repository = repository
        self.workspace_service = workspace_service
        self.state_machine = WorkspaceStateMachine(repository)
        self.conversation_timeout = conversation_timeout
        self.running_timeout = running_timeout
        self.cancelling_timeout = cancelling_timeout

    def sweep(self, now: datetime | None = None) -> ReaperSummary:
        """Run all checks once; per-row failures are logged and counted, never raised."""

        now = now or utc_now()
        summary = ReaperSummary()
        self._release_stale_conversations(now - self.conversation_timeout, summary)
        self._close_stuck_runs(
            status=RunStatus.RUNNING,
            target=RunStatus.FAILED,
            cutoff=now - self.running_timeout,
            message=TIMED_OUT_MESSAGE,
            summary=summary,
        )
        self._close_stuck_runs(
            status=RunStatus.CANCELLING,
            target=RunStatus.CANCELLED,
            cutoff=now - self.cancelling_timeout,
            message=CANCELLED_MESSAGE,
            summary=summary,
        )
        if summary.released_conversations or summary.failed_runs or summary.cancelled_runs:
            logger.info(
                "Reaper sweep: released=%s failed=%s cancelled=%s errors=%s",
                summary.released_conversations,
                summary.failed_runs,
                summary.cancelled_runs,
                len(summary.errors),
            )
        return summary

    def _release_stale_conversations(self, cutoff: datetime, summary: ReaperSummary) -> None:
        try:
            stale = self.repository.list_stale_conversations(cutoff=cutoff)
        except Exception as error:  # noqa: BLE001
            logger.exception("Could not list stale conversations")
            summary.errors.append(f"list stale conversations: {error}")
            return

        for conversation in stale:
            try:
                if self._release(conversation):
                    summary.released_conversations += 1
            except Exception as error:  # noqa: BLE001
                logger.exception(
                    "Could not release stale conversation %s",
                    conversation.conversation_id,
                )
                summary.errors.append(f"conversation {conversation.conversation_id}: {error}")

    def _release(self, conversation: ConversationView) -> bool:
        committed_cleanly = True
        if self.workspace_service is not None:
            try:
                self.workspace_service.commit_and_push(
                    workspace_id=conversation.workspace_id,
                    message=FINISH_COMMIT_MESSAGE,
                    author_email=self.repository.get_user_email(user_id=conversation.user_id)
                    or fallback_author_email(conversation.user_id),
                    conversation_id=conversation.conversation_id,
                )
            except VersionControlError as error:
                # Workspace is now PROBLEM; the conversation still ends.
                logger.warning(
                    "Commit for stale conversation %s failed: %s",
                    conversation.conversation_id,
                    error,
                )
                committed_cleanly = False

        if not self.repository.finish_conversation(conversation_id=conversation.conversation_id):
            return False
        logger.info("Finished stale conversation %s", conversation.conversation_id)
        if not committed_cleanly:
            return True

        workspace = self.repository.get_workspace_or_fail(workspace_id=conversation.workspace_id)
        if workspace.status == WorkspaceStatus.IN_CONVERSATION:
            self.state_machine.transition_to(
                conversation.workspace_id,
                WorkspaceStatus.AVAILABLE_FOR_CONVERSATION,
            )
        return True

    def _close_stuck_runs(
        self,
        *,
        status: RunStatus,
        target: RunStatus,
        cutoff: datetime,
        message: str,
        summary: ReaperSummary,
    ) -> None:
        try:
            runs = self.repository.list_runs_stuck_in(status=status, cutoff=cutoff)
        except Exception as error:  # noqa: BLE001
            logger.exception("Could not list %s runs", status.value)
            summary.errors.append(f"list {status.value} runs: {error}")
            return

        for run in runs:
            try:
                closed = self._close(run, status=status, target=target, message=message)
            except Exception as error:  # noqa: BLE001
                logger.exception("Could not close stuck run %s", run.run_id)
                summary.errors.append(f"run {run.run_id}: {error}")
                continue
            if not closed:
                continue
            if target == RunStatus.FAILED:
                summary.failed_runs += 1
            else:
                summary.cancelled_runs += 1

    def _close(self, run: RunView, *, status: RunStatus, target: RunStatus, message: str) -> bool:
        try:
            self.repository.transition_run(
                run_id=run.run_id,
                expected=status,
                target=target,
                done=StreamChunk.done(success=False, error_message=message),
                error_message=message,
            )
        except ConcurrentStatusChangeError:
            logger.debug("Run %s left %s before the reaper closed it", run.run_id, status.value)
            return False
        logger.warning("Reaper closed run %s: %s -> %s", run.run_id, status.value, target.value)
        return True
