"""Drive one agent run from pending to a terminal status."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from agent_workbench.agent.models import (
    AgentEvent,
    AgentEventKind,
    ChunkType,
    RunStatus,
    RunView,
    StreamChunk,
    ToolInput,
    validate_run_transition,
)
from agent_workbench.agent.process import (
    AgentProcessGateway,
    AgentProcessHandle,
    AgentProcessRequest,
)
from agent_workbench.agent.prompt import build_prompt
from agent_workbench.agent.stream_parser import DEFAULT_MAX_VALUE_CHARS, AgentStreamParser
from agent_workbench.agent.verification import BuildVerifier
from agent_workbench.conversation.guard import fallback_author_email
from agent_workbench.conversation.models import ConversationStatus, ConversationView, MessageRole
from agent_workbench.errors import (
    AgentReportedError,
    ConcurrentStatusChangeError,
    ProcessError,
    VerificationError,
    VersionControlError,
)
from agent_workbench.storage.repository import WorkbenchRepository
from agent_workbench.workspace.service import WorkspaceService

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 0.05
BUILD_TOOL_NAME = "run_build"
CANCELLED_BEFORE_START_MESSAGE = "Cancelled before execution started."
CANCELLED_MESSAGE = "Cancelled by user."
CANCELLED_ASSISTANT_NOTE = "[Cancelled by the user. Disregard this turn.]"
CONVERSATION_CLOSED_MESSAGE = "Conversation is no longer ongoing."
INTERNAL_ERROR_MESSAGE = "An error occurred during processing."
COMMIT_MESSAGE_INSTRUCTION_CHARS = 50

ChunkCallback = Callable[[int, StreamChunk], None]


@dataclass(slots=True)
class RunOutcome:
    """Result of ``AgentExecutionOrchestrator.execute``."""

    run_id: str
    status: RunStatus
    success: bool
    error_message: str | None = None
    backend_session_state: str | None = None
    chunks_written: int = 0

    def raise_for_failure(self) -> None:
        """Raise ``AgentReportedError`` unless the run completed successfully."""

        if self.status != RunStatus.COMPLETED or not self.success:
            raise AgentReportedError(
                self.error_message or f"Run {self.run_id} ended with status {self.status.value}.",
            )


class _RunStoppedError(Exception):
    """Run left RUNNING while the agent was still working."""

    def __init__(self, status: RunStatus) -> None:
        super().__init__(status.value)
        self.status = status


class AgentExecutionOrchestrator:
    """Runs the agent process for one run and writes its output to the chunk log.

    The poll loop drains the parser, persists chunks in drain order and
    re-reads the run status on every tick, so a cancellation request or a
    reaper decision stops the process within one poll interval.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: WorkbenchRepository,
        process_gateway: AgentProcessGateway,
        build_verifier: BuildVerifier,
        workspace_service: WorkspaceService | None = None,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        tool_value_max_chars: int = DEFAULT_MAX_VALUE_CHARS,
        system_instructions: str = "",
        on_chunk: ChunkCallback | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repository = repository
        self.process_gateway = process_gateway
        self.build_verifier = build_verifier
        self.workspace_service = workspace_service
        self.poll_interval_seconds = poll_interval_seconds
        self.tool_value_max_chars = tool_value_max_chars
        self.system_instructions = system_instructions
        self.on_chunk = on_chunk
        self._sleep = sleep
        self._chunks_written = 0
        self._assistant_text: list[str] = []

    def execute(self, run_id: str) -> RunOutcome:
        self._chunks_written = 0
        self._assistant_text = []

        run = self.repository.get_run_or_fail(run_id=run_id)
        if run.status == RunStatus.CANCELLING:
            return self._cancel_before_start(run)
        validate_run_transition(run.status, RunStatus.RUNNING)
        conversation = self.repository.get_conversation_or_fail(
            conversation_id=run.conversation_id,
        )
        try:
            if conversation.status != ConversationStatus.ONGOING:
                return self._reject_closed_conversation(run)
            run = self.repository.transition_run(
                run_id=run_id,
                expected=RunStatus.PENDING,
                target=RunStatus.RUNNING,
            )
        except ConcurrentStatusChangeError:
            run = self.repository.get_run_or_fail(run_id=run_id)
            if run.status == RunStatus.CANCELLING:
                return self._cancel_before_start(run)
            raise

        logger.info("Executing run %s in %s", run_id, conversation.workspace_path)
        return self._run(run, conversation)

    def _run(self, run: RunView, conversation: ConversationView) -> RunOutcome:
        parser = AgentStreamParser(max_value_chars=self.tool_value_max_chars)
        workspace_path = Path(conversation.workspace_path)
        handle: AgentProcessHandle | None = None
        try:
            history = self.repository.list_conversation_messages(
                conversation_id=conversation.conversation_id,
            )
            self.repository.append_conversation_message(
                conversation_id=conversation.conversation_id,
                role=MessageRole.USER,
                content=run.instruction,
            )
            prompt = build_prompt(
                instruction=run.instruction,
                history=history,
                workspace_path=workspace_path,
                system_instructions=self.system_instructions,
                resuming=conversation.backend_session_state is not None,
            )
            self._emit(
                run.run_id,
                StreamChunk.of_event(AgentEvent(kind=AgentEventKind.INFERENCE_START)),
            )

            if not workspace_path.is_dir():
                raise ProcessError(f"Workspace path does not exist: {workspace_path}")
            handle = self.process_gateway.start(
                AgentProcessRequest(
                    prompt=prompt,
                    workspace_path=workspace_path,
                    on_output=parser.feed,
                    resume_session_id=conversation.backend_session_state,
                ),
            )
            self._poll(run.run_id, handle, parser)
            handle.wait()
            parser.finish()
            handle.check_result(result_observed=parser.result_received)
            self._emit_all(run.run_id, parser.drain())
            self._verify(run.run_id, workspace_path)
        except _RunStoppedError as stopped:
            return self._stopped(run, conversation, parser, handle, stopped.status)
        except ProcessError as error:
            logger.warning("Agent process failed for run %s: %s", run.run_id, error)
            self._emit_all(run.run_id, parser.drain())
            return self._finish(
                run,
                conversation,
                success=False,
                error_message=str(error),
                session_id=parser.session_id,
            )
        except Exception:  # noqa: BLE001
            logger.exception("Run %s failed", run.run_id)
            if handle is not None and handle.is_running():
                handle.terminate()
            return self._finish(
                run,
                conversation,
                success=False,
                error_message=INTERNAL_ERROR_MESSAGE,
                session_id=None,
            )

        outcome = self._finish(
            run,
            conversation,
            success=parser.success,
            error_message=parser.error_message,
            session_id=parser.session_id,
        )
        if outcome.status == RunStatus.COMPLETED:
            self._commit_after_run(run, conversation)
        return outcome

    def _poll(self, run_id: str, handle: AgentProcessHandle, parser: AgentStreamParser) -> None:
        while handle.is_running():
            self._emit_all(run_id, parser.drain())
            status = self.repository.get_run_status(run_id=run_id)
            if status is not None and status != RunStatus.RUNNING:
                raise _RunStoppedError(status)
            self._sleep(self.poll_interval_seconds)

    def _verify(self, run_id: str, workspace_path: Path) -> None:
        self._emit(
            run_id,
            StreamChunk.of_event(
                AgentEvent(kind=AgentEventKind.TOOL_CALLING, tool_name=BUILD_TOOL_NAME),
            ),
        )
        try:
            output = self.build_verifier.verify(workspace_path)
        except VerificationError as error:
            self._emit(
                run_id,
                StreamChunk.of_event(
                    AgentEvent(
                        kind=AgentEventKind.TOOL_ERROR,
                        tool_name=BUILD_TOOL_NAME,
                        error_message=str(error),
                    ),
                ),
            )
            return
        self._emit(
            run_id,
            StreamChunk.of_event(
                AgentEvent(
                    kind=AgentEventKind.TOOL_CALLED,
                    tool_name=BUILD_TOOL_NAME,
                    tool_inputs=(ToolInput(key="workspace", value=str(workspace_path)),),
                    tool_result=output,
                    result_bytes=len(output.encode("utf-8")),
                ),
            ),
        )

    def _finish(
        self,
        run: RunView,
        conversation: ConversationView,
        *,
        success: bool,
        error_message: str | None,
        session_id: str | None,
    ) -> RunOutcome:
        self._emit(run.run_id, StreamChunk.of_event(AgentEvent(kind=AgentEventKind.INFERENCE_STOP)))
        if session_id is not None:
            self.repository.set_conversation_session_state(
                conversation_id=conversation.conversation_id,
                state=session_id,
            )
        if self._assistant_text:
            self.repository.append_conversation_message(
                conversation_id=conversation.conversation_id,
                role=MessageRole.ASSISTANT,
                content="".join(self._assistant_text),
            )

        target = RunStatus.COMPLETED if success else RunStatus.FAILED
        done = StreamChunk.done(
            success=success,
            error_message=None if success else error_message,
            backend_session_state=session_id,
        )
        try:
            self._close(run.run_id, expected=RunStatus.RUNNING, target=target, done=done)
        except ConcurrentStatusChangeError:
            status = self.repository.get_run_status(run_id=run.run_id)
            if status == RunStatus.CANCELLING:
                return self._close_cancelled(run, conversation)
            logger.warning(
                "Run %s was closed by another writer as %s",
                run.run_id,
                status.value if status else "missing",
            )
            return self._outcome(run.run_id, status or target, success=False)

        logger.info("Run %s finished: %s", run.run_id, target.value)
        return self._outcome(
            run.run_id,
            target,
            success=success,
            error_message=done.error_message,
            session_id=session_id,
        )

    def _stopped(
        self,
        run: RunView,
        conversation: ConversationView,
        parser: AgentStreamParser,
        handle: AgentProcessHandle | None,
        status: RunStatus,
    ) -> RunOutcome:
        if handle is not None:
            handle.terminate()
        self._emit_all(run.run_id, parser.drain())
        if status == RunStatus.CANCELLING:
            logger.info("Run %s cancelled by user", run.run_id)
            self._emit(
                run.run_id,
                StreamChunk.of_event(AgentEvent(kind=AgentEventKind.INFERENCE_STOP)),
            )
            return self._close_cancelled(run, conversation)
        logger.warning("Run %s closed externally as %s; agent stopped", run.run_id, status.value)
        return self._outcome(run.run_id, status, success=False)

    def _close_cancelled(self, run: RunView, conversation: ConversationView) -> RunOutcome:
        self.repository.append_conversation_message(
            conversation_id=conversation.conversation_id,
            role=MessageRole.ASSISTANT,
            content=CANCELLED_ASSISTANT_NOTE,
        )
        try:
            self._close(
                run.run_id,
                expected=RunStatus.CANCELLING,
                target=RunStatus.CANCELLED,
                done=StreamChunk.done(success=False, error_message=CANCELLED_MESSAGE),
            )
        except ConcurrentStatusChangeError:
            status = self.repository.get_run_status(run_id=run.run_id)
            logger.warning("Run %s already closed as %s", run.run_id, status)
            return self._outcome(run.run_id, status or RunStatus.CANCELLED, success=False)
        return self._outcome(
            run.run_id,
            RunStatus.CANCELLED,
            success=False,
            error_message=CANCELLED_MESSAGE,
        )

    def _reject_closed_conversation(self, run: RunView) -> RunOutcome:
        logger.warning(
            "Run %s not started: conversation %s is no longer ongoing",
            run.run_id,
            run.conversation_id,
        )
        self._close(
            run.run_id,
            expected=RunStatus.PENDING,
            target=RunStatus.FAILED,
            done=StreamChunk.done(success=False, error_message=CONVERSATION_CLOSED_MESSAGE),
        )
        return self._outcome(
            run.run_id,
            RunStatus.FAILED,
            success=False,
            error_message=CONVERSATION_CLOSED_MESSAGE,
        )

    def _cancel_before_start(self, run: RunView) -> RunOutcome:
        logger.info("Run %s cancelled before execution started", run.run_id)
        self._close(
            run.run_id,
            expected=RunStatus.CANCELLING,
            target=RunStatus.CANCELLED,
            done=StreamChunk.done(success=False, error_message=CANCELLED_BEFORE_START_MESSAGE),
        )
        return self._outcome(
            run.run_id,
            RunStatus.CANCELLED,
            success=False,
            error_message=CANCELLED_BEFORE_START_MESSAGE,
        )

    def _close(
        self,
        run_id: str,
        *,
        expected: RunStatus,
        target: RunStatus,
        done: StreamChunk,
    ) -> None:
        self.repository.transition_run(
            run_id=run_id,
            expected=expected,
            target=target,
            done=done,
            error_message=done.error_message,
            backend_session_state=done.backend_session_state,
        )
        self._chunks_written += 1
        if self.on_chunk is not None:
            self.on_chunk(self.repository.last_chunk_sequence(run_id=run_id), done)

    def _commit_after_run(self, run: RunView, conversation: ConversationView) -> None:
        if self.workspace_service is None:
            return
        instruction = run.instruction.strip()
        if len(instruction) > COMMIT_MESSAGE_INSTRUCTION_CHARS:
            instruction = instruction[:COMMIT_MESSAGE_INSTRUCTION_CHARS] + "..."
        author_email = self.repository.get_user_email(
            user_id=conversation.user_id,
        ) or fallback_author_email(conversation.user_id)
        try:
            self.workspace_service.commit_and_push(
                workspace_id=conversation.workspace_id,
                message=f"Edit session: {instruction}",
                author_email=author_email,
                conversation_id=conversation.conversation_id,
            )
        except VersionControlError as error:
            logger.error("Commit after run %s failed: %s", run.run_id, error)

    def _emit_all(self, run_id: str, chunks: list[StreamChunk]) -> None:
        for chunk in chunks:
            self._emit(run_id, chunk)

    def _emit(self, run_id: str, chunk: StreamChunk) -> None:
        sequence = self.repository.append_chunk(run_id=run_id, chunk=chunk)
        self._chunks_written += 1
        if chunk.chunk_type == ChunkType.TEXT and chunk.content is not None:
            self._assistant_text.append(chunk.content)
        if self.on_chunk is not None:
            self.on_chunk(sequence, chunk)

    def _outcome(
        self,
        run_id: str,
        status: RunStatus,
        *,
        success: bool,
        error_message: str | None = None,
        session_id: str | None = None,
    ) -> RunOutcome:
        return RunOutcome(
            run_id=run_id,
            status=status,
            success=success,
            error_message=error_message,
            backend_session_state=session_id,
            chunks_written=self._chunks_written,
        )
