"""CLI entrypoint for agent-workbench."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from agent_workbench import __version__
from agent_workbench.config import LOG_LEVELS, Settings
from agent_workbench.controllers import (
    AdminForceStatusCommand,
    ConversationActionCommand,
    ConversationStartCommand,
    DbInitCommand,
    ReaperSweepCommand,
    RunCancelCommand,
    RunExecuteCommand,
    RunPollCommand,
    RunSubmitCommand,
    WorkbenchCliController,
    WorkspaceCommitCommand,
    WorkspaceIdCommand,
    WorkspaceSetupCommand,
    WorkspaceShowCommand,
)
from agent_workbench.errors import WorkbenchError
from agent_workbench.workspace.models import WorkspaceStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = WorkbenchCliController()
WORKSPACE_STATUSES = [status.value for status in WorkspaceStatus]

CommandT = TypeVar("CommandT")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-workbench")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Override AGENT_WORKBENCH_LOG_LEVEL.",
)
def agent_workbench(log_level: str | None) -> None:
    """Agent workbench CLI: workspaces, conversations and agent runs."""

    try:
        settings = Settings.from_env()
        if log_level is not None:
            settings.log_level = log_level.upper()
        settings.validate()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    settings.configure_logging()


@agent_workbench.group()
def db() -> None:
    """Database commands."""


@db.command("init")
@db_path_option
def db_init(db_path: Path | None) -> None:
    """Create or upgrade the database schema."""

    _run(CONTROLLER.init_db, DbInitCommand(db_path=db_path))


@agent_workbench.group()
def workspace() -> None:
    """Workspace commands."""


@workspace.command("setup")
@db_path_option
@click.option("--project-id", required=True, help="Project the workspace belongs to.")
@click.option("--repository-url", required=True, help="git URL to clone.")
def workspace_setup(db_path: Path | None, project_id: str, repository_url: str) -> None:
    """Clone the project into its workspace and create the workspace branch."""

    _run(
        CONTROLLER.setup_workspace,
        WorkspaceSetupCommand(
            db_path=db_path,
            project_id=project_id,
            repository_url=repository_url,
        ),
    )


@workspace.command("show")
@db_path_option
@click.option("--project-id", default=None, help="Show only this project's workspace.")
@click.option(
    "--status",
    type=click.Choice(WORKSPACE_STATUSES),
    default=None,
    help="Filter by workspace status.",
)
def workspace_show(db_path: Path | None, project_id: str | None, status: str | None) -> None:
    """List workspaces and their statuses."""

    _run(
        CONTROLLER.show_workspaces,
        WorkspaceShowCommand(db_path=db_path, project_id=project_id, status=status),
    )


@workspace.command("commit")
@db_path_option
@click.option("--workspace-id", required=True)
@click.option("--message", required=True, help="Commit message subject.")
@click.option("--author-email", required=True, help="Recorded as the workbench user.")
def workspace_commit(
    db_path: Path | None,
    workspace_id: str,
    message: str,
    author_email: str,
) -> None:
    """Commit and push all changes in a workspace."""

    _run(
        CONTROLLER.commit_workspace,
        WorkspaceCommitCommand(
            db_path=db_path,
            workspace_id=workspace_id,
            message=message,
            author_email=author_email,
        ),
    )


@workspace.command("mark-merged")
@db_path_option
@click.option("--workspace-id", required=True)
def workspace_mark_merged(db_path: Path | None, workspace_id: str) -> None:
    """Record that the workspace's pull request was merged."""

    _run(CONTROLLER.mark_merged, WorkspaceIdCommand(db_path=db_path, workspace_id=workspace_id))


@agent_workbench.group()
def conversation() -> None:
    """Conversation commands."""


@conversation.command("start")
@db_path_option
@click.option("--project-id", required=True)
@click.option("--user-id", required=True)
@click.option("--display-name", default=None)
@click.option("--email", default=None, help="Used as commit author for this user.")
def conversation_start(
    db_path: Path | None,
    project_id: str,
    user_id: str,
    display_name: str | None,
    email: str | None,
) -> None:
    """Start a conversation on the project's workspace, or resume your ongoing one."""

    _run(
        CONTROLLER.start_conversation,
        ConversationStartCommand(
            db_path=db_path,
            project_id=project_id,
            user_id=user_id,
            display_name=display_name,
            email=email,
        ),
    )


@conversation.command("finish")
@db_path_option
@click.option("--conversation-id", required=True)
@click.option("--user-id", required=True)
def conversation_finish(db_path: Path | None, conversation_id: str, user_id: str) -> None:
    """Commit pending work, finish the conversation and release the workspace."""

    _run(
        CONTROLLER.finish_conversation,
        ConversationActionCommand(
            db_path=db_path,
            conversation_id=conversation_id,
            user_id=user_id,
        ),
    )


@conversation.command("review")
@db_path_option
@click.option("--conversation-id", required=True)
@click.option("--user-id", required=True)
def conversation_review(db_path: Path | None, conversation_id: str, user_id: str) -> None:
    """Finish the conversation and open a pull request for the workspace branch."""

    _run(
        CONTROLLER.send_to_review,
        ConversationActionCommand(
            db_path=db_path,
            conversation_id=conversation_id,
            user_id=user_id,
        ),
    )


@conversation.command("heartbeat")
@db_path_option
@click.option("--conversation-id", required=True)
@click.option("--user-id", required=True)
def conversation_heartbeat(db_path: Path | None, conversation_id: str, user_id: str) -> None:
    """Keep an ongoing conversation from being released as stale."""

    _run(
        CONTROLLER.heartbeat,
        ConversationActionCommand(
            db_path=db_path,
            conversation_id=conversation_id,
            user_id=user_id,
        ),
    )


@agent_workbench.group()
def run() -> None:
    """Agent run commands."""


@run.command("submit")
@db_path_option
@click.option("--conversation-id", required=True)
@click.option("--user-id", required=True)
@click.option("--instruction", required=True, help="What the agent should do.")
@click.option(
    "--execute/--no-execute",
    default=False,
    show_default=True,
    help="Run the agent in this process right after submitting.",
)
@click.option(
    "--follow/--no-follow",
    default=False,
    show_default=True,
    help="Print chunks as they are written (with --execute).",
)
def run_submit(  # noqa: PLR0913
    db_path: Path | None,
    conversation_id: str,
    user_id: str,
    instruction: str,
    execute: bool,
    follow: bool,
) -> None:
    """Submit an instruction as a new agent run."""

    _run(
        CONTROLLER.submit_run,
        RunSubmitCommand(
            db_path=db_path,
            conversation_id=conversation_id,
            user_id=user_id,
            instruction=instruction,
            execute=execute,
            on_line=click.echo if follow else None,
        ),
    )


@run.command("execute")
@db_path_option
@click.option("--run-id", required=True)
@click.option(
    "--follow/--no-follow",
    default=True,
    show_default=True,
    help="Print chunks as they are written.",
)
def run_execute(db_path: Path | None, run_id: str, follow: bool) -> None:
    """Execute a pending run until it reaches a terminal status."""

    _run(
        CONTROLLER.execute_run,
        RunExecuteCommand(
            db_path=db_path,
            run_id=run_id,
            on_line=click.echo if follow else None,
        ),
    )


@run.command("cancel")
@db_path_option
@click.option("--run-id", required=True)
@click.option("--user-id", required=True)
def run_cancel(db_path: Path | None, run_id: str, user_id: str) -> None:
    """Request cancellation of a pending or running run."""

    _run(
        CONTROLLER.cancel_run,
        RunCancelCommand(db_path=db_path, run_id=run_id, user_id=user_id),
    )


@run.command("poll")
@db_path_option
@click.option("--run-id", required=True)
@click.option(
    "--after-sequence",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Only chunks with a larger sequence are returned.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=100,
    show_default=True,
)
@click.option(
    "--json",
    "as_json",
    is_flag=True,
    default=False,
    help="Print one canonical chunk JSON object per line.",
)
def run_poll(  # noqa: PLR0913
    db_path: Path | None,
    run_id: str,
    after_sequence: int,
    limit: int,
    as_json: bool,
) -> None:
    """Read a run's chunk log."""

    _run(
        CONTROLLER.poll_run,
        RunPollCommand(
            db_path=db_path,
            run_id=run_id,
            after_sequence=after_sequence,
            limit=limit,
            as_json=as_json,
        ),
    )


@agent_workbench.group()
def reaper() -> None:
    """Stale session maintenance."""


@reaper.command("sweep")
@db_path_option
def reaper_sweep(db_path: Path | None) -> None:
    """Release idle conversations and close stuck runs. Meant to run from cron."""

    _run(CONTROLLER.sweep, ReaperSweepCommand(db_path=db_path))


@agent_workbench.group()
def admin() -> None:
    """Administrative workspace overrides."""


@admin.command("reset-problem")
@db_path_option
@click.option("--workspace-id", required=True)
def admin_reset_problem(db_path: Path | None, workspace_id: str) -> None:
    """Move a PROBLEM workspace back to AVAILABLE_FOR_SETUP."""

    _run(
        CONTROLLER.reset_problem,
        WorkspaceIdCommand(db_path=db_path, workspace_id=workspace_id),
    )


@admin.command("force-status")
@db_path_option
@click.option("--workspace-id", required=True)
@click.option("--status", type=click.Choice(WORKSPACE_STATUSES), required=True)
def admin_force_status(db_path: Path | None, workspace_id: str, status: str) -> None:
    """Set a workspace status without transition checks."""

    _run(
        CONTROLLER.force_status,
        AdminForceStatusCommand(db_path=db_path, workspace_id=workspace_id, status=status),
    )


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except (WorkbenchError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_workbench()
