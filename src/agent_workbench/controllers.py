"""Controllers for workbench CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from agent_workbench.agent.models import RunView, StreamChunk
from agent_workbench.agent.orchestrator import AgentExecutionOrchestrator, RunOutcome
from agent_workbench.agent.process import CliAgentProcessGateway
from agent_workbench.agent.verification import CommandBuildVerifier
from agent_workbench.config import Settings
from agent_workbench.conversation.guard import SessionConcurrencyGuard
from agent_workbench.conversation.models import ConversationView
from agent_workbench.errors import WorkspaceNotFoundError
from agent_workbench.reaper import StaleSessionReaper
from agent_workbench.storage.repository import WorkbenchRepository
from agent_workbench.workspace.models import WorkspaceStatus, WorkspaceView
from agent_workbench.workspace.service import WorkspaceService
from agent_workbench.workspace.vcs import GitCliGateway

AGENT_API_KEY_ENV = "CURSOR_API_KEY"

LineCallback = Callable[[str], None]


@dataclass(slots=True)
class DbInitCommand:
    db_path: Path | None


@dataclass(slots=True)
class WorkspaceSetupCommand:
    """CLI inputs for workspace setup."""

    db_path: Path | None
    project_id: str
    repository_url: str


@dataclass(slots=True)
class WorkspaceShowCommand:
    db_path: Path | None
    project_id: str | None
    status: str | None


@dataclass(slots=True)
class WorkspaceCommitCommand:
    db_path: Path | None
    workspace_id: str
    message: str
    author_email: str


@dataclass(slots=True)
class WorkspaceIdCommand:
    """CLI inputs for commands that act on one workspace."""

    db_path: Path | None
    workspace_id: str


@dataclass(slots=True)
class ConversationStartCommand:
    db_path: Path | None
    project_id: str
    user_id: str
    display_name: str | None
    email: str | None


@dataclass(slots=True)
class ConversationActionCommand:
    """CLI inputs for owner-only conversation commands."""

    db_path: Path | None
    conversation_id: str
    user_id: str


@dataclass(slots=True)
class RunSubmitCommand:
    db_path: Path | None
    conversation_id: str
    user_id: str
    instruction: str
    execute: bool
    on_line: LineCallback | None = None


@dataclass(slots=True)
class RunExecuteCommand:
    db_path: Path | None
    run_id: str
    on_line: LineCallback | None = None


@dataclass(slots=True)
class RunCancelCommand:
    db_path: Path | None
    run_id: str
    user_id: str


@dataclass(slots=True)
class RunPollCommand:
    """CLI inputs for reading a run's chunk log."""

    db_path: Path | None
    run_id: str
    after_sequence: int
    limit: int
    as_json: bool


@dataclass(slots=True)
class ReaperSweepCommand:
    db_path: Path | None


@dataclass(slots=True)
class AdminForceStatusCommand:
    db_path: Path | None
    workspace_id: str
    status: str


class WorkbenchCliController:
    """Coordinates workspace, conversation, run and maintenance CLI operations."""

    def init_db(self, command: DbInitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            revision = repository.schema_revision()
        return [f"Database ready: {settings.db_path} (revision {revision})"]

    def setup_workspace(self, command: WorkspaceSetupCommand) -> list[str]:
        """Claim setup for the project's workspace and run it when this call won the claim."""

        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository, _workspace_service(
            settings,
            repository,
        ) as service:
            guard = SessionConcurrencyGuard(repository=repository, workspace_service=service)
            dispatch = guard.dispatch_setup_if_needed(command.project_id)
            if not dispatch.claimed:
                return [
                    "Setup not dispatched: "
                    f"workspace_id={dispatch.workspace.workspace_id} "
                    f"status={dispatch.workspace.status.value}",
                ]
            workspace = service.run_setup(
                workspace_id=dispatch.workspace.workspace_id,
                repository_url=command.repository_url,
            )
        return ["Workspace set up:", _format_workspace(workspace)]

    def show_workspaces(self, command: WorkspaceShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            if command.project_id is not None:
                workspace = repository.find_workspace_by_project(project_id=command.project_id)
                if workspace is None:
                    raise WorkspaceNotFoundError(
                        f"Workspace not found for project: {command.project_id}",
                    )
                workspaces = [workspace]
            else:
                status = WorkspaceStatus(command.status) if command.status else None
                workspaces = repository.list_workspaces(status=status)

        if not workspaces:
            return ["No workspaces found."]
        return [_format_workspace(workspace) for workspace in workspaces]

    def commit_workspace(self, command: WorkspaceCommitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository, _workspace_service(
            settings,
            repository,
        ) as service:
            committed = service.commit_and_push(
                workspace_id=command.workspace_id,
                message=command.message,
                author_email=command.author_email,
            )
        if not committed:
            return [f"Nothing to commit: workspace_id={command.workspace_id}"]
        return [f"Committed and pushed: workspace_id={command.workspace_id}"]

    def mark_merged(self, command: WorkspaceIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository, _workspace_service(
            settings,
            repository,
        ) as service:
            workspace = service.mark_merged(workspace_id=command.workspace_id)
        return [_format_workspace(workspace)]

    def start_conversation(self, command: ConversationStartCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository, _workspace_service(
            settings,
            repository,
        ) as service:
            guard = SessionConcurrencyGuard(repository=repository, workspace_service=service)
            conversation = guard.start_or_resume(
                command.project_id,
                command.user_id,
                display_name=command.display_name,
                email=command.email,
            )
        return [_format_conversation(conversation)]

    def finish_conversation(self, command: ConversationActionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository, _workspace_service(
            settings,
            repository,
        ) as service:
            guard = SessionConcurrencyGuard(repository=repository, workspace_service=service)
            guard.finish(command.conversation_id, command.user_id)
        return [f"Conversation finished: conversation_id={command.conversation_id}"]

    def send_to_review(self, command: ConversationActionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository, _workspace_service(
            settings,
            repository,
        ) as service:
            guard = SessionConcurrencyGuard(repository=repository, workspace_service=service)
            url = guard.send_to_review(command.conversation_id, command.user_id)
        if not url:
            return [
                f"Conversation finished: conversation_id={command.conversation_id}",
                "Nothing to review; workspace released.",
            ]
        return [
            f"Conversation finished: conversation_id={command.conversation_id}",
            f"Pull request: {url}",
        ]

    def heartbeat(self, command: ConversationActionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository, _workspace_service(
            settings,
            repository,
        ) as service:
            guard = SessionConcurrencyGuard(repository=repository, workspace_service=service)
            guard.heartbeat(command.conversation_id, command.user_id)
        return [f"Heartbeat recorded: conversation_id={command.conversation_id}"]

    def submit_run(self, command: RunSubmitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository, _workspace_service(
            settings,
            repository,
        ) as service:
            guard = SessionConcurrencyGuard(repository=repository, workspace_service=service)
            run = guard.submit_run(command.conversation_id, command.user_id, command.instruction)
            lines = [_format_run(run)]
            if command.execute:
                outcome = _orchestrator(
                    settings,
                    repository,
                    service,
                    on_line=command.on_line,
                ).execute(run.run_id)
                lines.append(_format_outcome(outcome))
        return lines

    def execute_run(self, command: RunExecuteCommand) -> list[str]:
        """Drive one pending run to a terminal status in this process."""

        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository, _workspace_service(
            settings,
            repository,
        ) as service:
            outcome = _orchestrator(
                settings,
                repository,
                service,
                on_line=command.on_line,
            ).execute(command.run_id)
        return [_format_outcome(outcome)]

    def cancel_run(self, command: RunCancelCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository, _workspace_service(
            settings,
            repository,
        ) as service:
            guard = SessionConcurrencyGuard(repository=repository, workspace_service=service)
            run = guard.cancel_run(command.run_id, command.user_id)
        return [_format_run(run)]

    def poll_run(self, command: RunPollCommand) -> list[str]:
        """Print chunks after ``after_sequence``, as text or one JSON object per line."""

        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            run = repository.get_run_or_fail(run_id=command.run_id)
            chunks = repository.list_chunks(
                run_id=command.run_id,
                after_sequence=command.after_sequence,
                limit=command.limit,
            )

        if command.as_json:
            return [
                json.dumps(chunk.to_wire(), ensure_ascii=False, sort_keys=True) for chunk in chunks
            ]
        lines = [_format_run(run)]
        lines.extend(f"  {chunk.sequence:>4} {_format_chunk(chunk.chunk)}" for chunk in chunks)
        if not chunks:
            lines.append("  (no new chunks)")
        return lines

    def sweep(self, command: ReaperSweepCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository, _workspace_service(
            settings,
            repository,
        ) as service:
            reaper = StaleSessionReaper(
                repository=repository,
                workspace_service=service,
                conversation_timeout=timedelta(
                    minutes=settings.reaper.conversation_timeout_minutes,
                ),
                running_timeout=timedelta(minutes=settings.reaper.running_timeout_minutes),
                cancelling_timeout=timedelta(
                    minutes=settings.reaper.cancelling_timeout_minutes,
                ),
            )
            summary = reaper.sweep()

        lines = [
            "Reaper sweep: "
            f"released_conversations={summary.released_conversations} "
            f"failed_runs={summary.failed_runs} "
            f"cancelled_runs={summary.cancelled_runs} "
            f"errors={len(summary.errors)}",
        ]
        lines.extend(f"  error: {error}" for error in summary.errors)
        return lines

    def reset_problem(self, command: WorkspaceIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository, _workspace_service(
            settings,
            repository,
        ) as service:
            workspace = service.reset_problem_workspace(workspace_id=command.workspace_id)
        return [_format_workspace(workspace)]

    def force_status(self, command: AdminForceStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository, _workspace_service(
            settings,
            repository,
        ) as service:
            workspace = service.force_status(
                workspace_id=command.workspace_id,
                target=WorkspaceStatus(command.status),
            )
        return [_format_workspace(workspace)]


@contextmanager
def _repository(settings: Settings) -> Iterator[WorkbenchRepository]:
    repository = WorkbenchRepository(
        settings.db_path,
        workspace_root=settings.workspace_root,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    try:
        repository.init_schema()
        yield repository
    finally:
        repository.close()


@contextmanager
def _workspace_service(
    settings: Settings,
    repository: WorkbenchRepository,
) -> Iterator[WorkspaceService]:
    vcs = GitCliGateway(
        token=settings.git.token,
        api_url=settings.git.api_url,
        base_branch=settings.git.base_branch,
    )
    try:
        yield WorkspaceService(repository=repository, vcs=vcs, git_token=settings.git.token)
    finally:
        vcs.close()


def _orchestrator(
    settings: Settings,
    repository: WorkbenchRepository,
    service: WorkspaceService,
    *,
    on_line: LineCallback | None,
) -> AgentExecutionOrchestrator:
    extra_env = {AGENT_API_KEY_ENV: settings.agent.api_key} if settings.agent.api_key else {}

    def forward(sequence: int, chunk: StreamChunk) -> None:
        if on_line is not None:
            on_line(f"  {sequence:>4} {_format_chunk(chunk)}")

    return AgentExecutionOrchestrator(
        repository=repository,
        process_gateway=CliAgentProcessGateway(
            command_template=settings.agent.command_template,
            extra_env=extra_env,
        ),
        build_verifier=CommandBuildVerifier(
            command=settings.build.command,
            timeout_seconds=settings.build.timeout_seconds,
        ),
        workspace_service=service,
        poll_interval_seconds=settings.agent.poll_interval_seconds,
        tool_value_max_chars=settings.agent.tool_value_max_chars,
        system_instructions=settings.agent.system_instructions,
        on_chunk=forward if on_line is not None else None,
    )


def _format_workspace(workspace: WorkspaceView) -> str:
    return (
        f"workspace_id={workspace.workspace_id} project_id={workspace.project_id} "
        f"status={workspace.status.value} branch={workspace.branch_name or '-'} "
        f"path={workspace.workspace_path}"
    )


def _format_conversation(conversation: ConversationView) -> str:
    return (
        f"conversation_id={conversation.conversation_id} "
        f"workspace_id={conversation.workspace_id} user_id={conversation.user_id} "
        f"status={conversation.status.value} path={conversation.workspace_path}"
    )


def _format_run(run: RunView) -> str:
    line = (
        f"run_id={run.run_id} conversation_id={run.conversation_id} status={run.status.value}"
    )
    if run.error_message:
        line += f" error={run.error_message}"
    return line


def _format_outcome(outcome: RunOutcome) -> str:
    return (
        "Run finished: "
        f"run_id={outcome.run_id} status={outcome.status.value} "
        f"success={'yes' if outcome.success else 'no'} "
        f"chunks={outcome.chunks_written} "
        f"session={outcome.backend_session_state or '-'} "
        f"error={outcome.error_message or '-'}"
    )


def _format_chunk(chunk: StreamChunk) -> str:
    if chunk.event is not None:
        event = chunk.event
        parts = [f"event {event.kind.value}"]
        if event.tool_name:
            parts.append(f"tool={event.tool_name}")
        if event.error_message:
            parts.append(f"error={event.error_message}")
        return " ".join(parts)
    if chunk.success is not None:
        return (
            f"done success={'yes' if chunk.success else 'no'} "
            f"error={chunk.error_message or '-'}"
        )
    return f"{chunk.chunk_type.value} {chunk.content or ''}".rstrip()
