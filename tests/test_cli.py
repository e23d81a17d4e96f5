from __future__ import annotations

import json
import re
import shlex
import shutil
import subprocess
import sys
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from conftest import scripted_agent_command

from agent_workbench.main import agent_workbench
from agent_workbench.storage.repository import WorkbenchRepository

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Command Line"),
]


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("AGENT_WORKBENCH_WORKSPACE_ROOT", str(tmp_path / "workspaces"))
    monkeypatch.setenv("AGENT_WORKBENCH_LOG_LEVEL", "WARNING")
    monkeypatch.setenv(
        "AGENT_WORKBENCH_AGENT_COMMAND",
        scripted_agent_command("--text", "Edited the page.", "--touch", "notes.txt"),
    )
    monkeypatch.setenv(
        "AGENT_WORKBENCH_BUILD_COMMAND",
        f"{shlex.quote(sys.executable)} -c {shlex.quote('print(1)')}",
    )
    monkeypatch.delenv("AGENT_WORKBENCH_GIT_TOKEN", raising=False)
    return tmp_path / "cli.db"


def _invoke(runner: CliRunner, *args: str):
    result = runner.invoke(agent_workbench, list(args))
    assert result.exit_code == 0, result.output
    return result


def test_db_init_and_empty_workspace_listing(cli_env: Path) -> None:
    runner = CliRunner()

    init = _invoke(runner, "db", "init", "--db-path", str(cli_env))
    show = _invoke(runner, "workspace", "show", "--db-path", str(cli_env))

    assert f"Database ready: {cli_env} (revision 20261018_0001)" in init.output
    assert "No workspaces found." in show.output


def test_domain_errors_become_click_errors(cli_env: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(
        agent_workbench,
        [
            "conversation",
            "start",
            "--db-path",
            str(cli_env),
            "--project-id",
            "nope",
            "--user-id",
            "u",
        ],
    )

    assert result.exit_code == 1
    assert "Workspace not found for project: nope" in result.output


def test_invalid_log_level_env_is_rejected(
    cli_env: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("AGENT_WORKBENCH_LOG_LEVEL", "LOUD")

    result = CliRunner().invoke(agent_workbench, ["db", "init", "--db-path", str(cli_env)])

    assert result.exit_code == 1
    assert "AGENT_WORKBENCH_LOG_LEVEL" in result.output


def test_reaper_sweep_reports_counts(cli_env: Path) -> None:
    result = _invoke(CliRunner(), "reaper", "sweep", "--db-path", str(cli_env))

    assert (
        "Reaper sweep: released_conversations=0 failed_runs=0 cancelled_runs=0 errors=0"
        in result.output
    )


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_full_session_from_setup_to_finish(cli_env: Path, tmp_path: Path) -> None:
    remote = tmp_path / "remote.git"
    subprocess.run(["git", "init", "--bare", str(remote)], check=True, capture_output=True)
    runner = CliRunner()
    db = str(cli_env)

    setup = _invoke(
        runner,
        "workspace",
        "setup",
        "--db-path",
        db,
        "--project-id",
        "site",
        "--repository-url",
        str(remote),
    )
    assert "status=available_for_conversation" in setup.output
    workspace_id = re.search(r"workspace_id=(\S+)", setup.output).group(1)

    start = _invoke(
        runner,
        "conversation",
        "start",
        "--db-path",
        db,
        "--project-id",
        "site",
        "--user-id",
        "alice",
        "--email",
        "alice@example.com",
    )
    conversation_id = re.search(r"conversation_id=(\S+)", start.output).group(1)

    submit = _invoke(
        runner,
        "run",
        "submit",
        "--db-path",
        db,
        "--conversation-id",
        conversation_id,
        "--user-id",
        "alice",
        "--instruction",
        "Add notes",
        "--execute",
        "--follow",
    )
    assert "status=completed success=yes" in submit.output
    assert "session=scripted-session" in submit.output
    run_id = re.search(r"run_id=(\S+)", submit.output).group(1)

    poll = _invoke(runner, "run", "poll", "--db-path", db, "--run-id", run_id, "--json")
    chunks = [json.loads(line) for line in poll.output.splitlines()]
    assert [chunk["sequence"] for chunk in chunks] == list(range(1, len(chunks) + 1))
    assert chunks[-1]["chunkType"] == "done"
    assert chunks[-1]["success"] is True
    text = "".join(chunk.get("content") or "" for chunk in chunks if chunk["chunkType"] == "text")
    assert text == "Edited the page."

    later = _invoke(
        runner,
        "run",
        "poll",
        "--db-path",
        db,
        "--run-id",
        run_id,
        "--after-sequence",
        str(len(chunks)),
    )
    assert "(no new chunks)" in later.output

    _invoke(
        runner,
        "conversation",
        "finish",
        "--db-path",
        db,
        "--conversation-id",
        conversation_id,
        "--user-id",
        "alice",
    )
    show = _invoke(runner, "workspace", "show", "--db-path", db, "--project-id", "site")
    assert f"workspace_id={workspace_id}" in show.output
    assert "status=available_for_conversation" in show.output

    pushed = subprocess.run(
        ["git", "log", "--format=%s", "--all"],
        cwd=remote,
        check=True,
        capture_output=True,
        text=True,
    ).stdout
    assert "Edit session: Add notes" in pushed


def test_admin_force_status_and_reset(cli_env: Path) -> None:
    runner = CliRunner()
    db = str(cli_env)
    repository = WorkbenchRepository(cli_env, workspace_root=cli_env.parent / "workspaces")
    repository.init_schema()
    dispatch = repository.claim_workspace_for_setup(project_id="site")
    repository.close()
    workspace_id = dispatch.workspace.workspace_id

    forced = _invoke(
        runner,
        "admin",
        "force-status",
        "--db-path",
        db,
        "--workspace-id",
        workspace_id,
        "--status",
        "problem",
    )
    reset = _invoke(
        runner,
        "admin",
        "reset-problem",
        "--db-path",
        db,
        "--workspace-id",
        workspace_id,
    )

    assert "status=problem" in forced.output
    assert "status=available_for_setup" in reset.output
