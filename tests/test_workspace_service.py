from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from conftest import FakeVersionControl, ready_workspace

from agent_workbench.conversation.guard import SessionConcurrencyGuard
from agent_workbench.errors import VersionControlError, WorkspaceNotReadyError
from agent_workbench.storage.repository import WorkbenchRepository
from agent_workbench.workspace.models import WorkspaceStatus
from agent_workbench.workspace.service import (
    WorkspaceService,
    build_commit_message,
    generate_branch_name,
)

pytestmark = [
    allure.epic("Workspaces"),
    allure.feature("Setup & Version Control"),
]


def test_branch_name_has_workspace_prefix_and_timestamp() -> None:
    name = generate_branch_name("0123456789abcdef")

    assert re.fullmatch(r"ws-01234567-\d{8}-\d{6}", name)


def test_commit_message_carries_user_and_conversation() -> None:
    message = build_commit_message(
        "Edit session: tweak",
        author_email="alice@example.com",
        conversation_id="conv-1",
    )

    assert message.splitlines() == [
        "Edit session: tweak",
        "",
        "Workbench user: alice@example.com",
        "Conversation ID: conv-1",
    ]


def test_setup_clones_checks_out_branch_and_opens_workspace(
    guard: SessionConcurrencyGuard,
    workspace_service: WorkspaceService,
    vcs: FakeVersionControl,
) -> None:
    workspace = ready_workspace(guard, workspace_service)

    assert workspace.status == WorkspaceStatus.AVAILABLE_FOR_CONVERSATION
    assert workspace.branch_name is not None
    assert workspace.branch_name.startswith(f"ws-{workspace.workspace_id[:8]}-")
    assert [call[0] for call in vcs.calls] == ["clone", "checkout"]
    assert vcs.calls[1][2] == workspace.branch_name


def test_setup_failure_moves_workspace_to_problem(
    guard: SessionConcurrencyGuard,
    workspace_service: WorkspaceService,
    repository: WorkbenchRepository,
    vcs: FakeVersionControl,
) -> None:
    vcs.clone_error = VersionControlError("repository not found")
    dispatch = guard.dispatch_setup_if_needed("site")

    with pytest.raises(VersionControlError, match="repository not found"):
        workspace_service.run_setup(
            workspace_id=dispatch.workspace.workspace_id,
            repository_url="https://github.com/acme/site.git",
        )

    workspace = repository.get_workspace_or_fail(workspace_id=dispatch.workspace.workspace_id)
    assert workspace.status == WorkspaceStatus.PROBLEM


def test_setup_rejects_workspace_in_conversation(
    guard: SessionConcurrencyGuard,
    workspace_service: WorkspaceService,
) -> None:
    workspace = ready_workspace(guard, workspace_service)
    guard.start_or_resume("site", "alice")

    with pytest.raises(WorkspaceNotReadyError):
        workspace_service.run_setup(
            workspace_id=workspace.workspace_id,
            repository_url="https://github.com/acme/site.git",
        )


def test_commit_failure_during_conversation_moves_workspace_to_problem(
    guard: SessionConcurrencyGuard,
    workspace_service: WorkspaceService,
    repository: WorkbenchRepository,
    vcs: FakeVersionControl,
) -> None:
    workspace = ready_workspace(guard, workspace_service)
    guard.start_or_resume("site", "alice")
    vcs.commit_error = VersionControlError("push rejected")

    with pytest.raises(VersionControlError, match="push rejected"):
        workspace_service.commit_and_push(
            workspace_id=workspace.workspace_id,
            message="manual",
            author_email="ops@example.com",
        )

    stored = repository.get_workspace_or_fail(workspace_id=workspace.workspace_id)
    assert stored.status == WorkspaceStatus.PROBLEM


def test_commit_failure_outside_conversation_keeps_status(
    guard: SessionConcurrencyGuard,
    workspace_service: WorkspaceService,
    repository: WorkbenchRepository,
    vcs: FakeVersionControl,
) -> None:
    workspace = ready_workspace(guard, workspace_service)
    vcs.commit_error = VersionControlError("push rejected")

    with pytest.raises(VersionControlError, match="push rejected"):
        workspace_service.commit_and_push(
            workspace_id=workspace.workspace_id,
            message="manual",
            author_email="ops@example.com",
        )

    stored = repository.get_workspace_or_fail(workspace_id=workspace.workspace_id)
    assert stored.status == WorkspaceStatus.AVAILABLE_FOR_CONVERSATION


def test_commit_without_changes_returns_false(
    guard: SessionConcurrencyGuard,
    workspace_service: WorkspaceService,
    vcs: FakeVersionControl,
) -> None:
    workspace = ready_workspace(guard, workspace_service)
    vcs.has_changes = False

    assert (
        workspace_service.commit_and_push(
            workspace_id=workspace.workspace_id,
            message="manual",
            author_email="ops@example.com",
        )
        is False
    )


def test_reset_only_applies_to_problem_workspaces(
    guard: SessionConcurrencyGuard,
    workspace_service: WorkspaceService,
) -> None:
    workspace = ready_workspace(guard, workspace_service)

    with pytest.raises(WorkspaceNotReadyError):
        workspace_service.reset_problem_workspace(workspace_id=workspace.workspace_id)

    workspace_service.force_status(
        workspace_id=workspace.workspace_id,
        target=WorkspaceStatus.PROBLEM,
    )
    reset = workspace_service.reset_problem_workspace(workspace_id=workspace.workspace_id)
    assert reset.status == WorkspaceStatus.AVAILABLE_FOR_SETUP


def test_setup_of_reset_workspace_replaces_old_checkout(
    guard: SessionConcurrencyGuard,
    workspace_service: WorkspaceService,
) -> None:
    workspace = ready_workspace(guard, workspace_service)
    stale_file = Path(workspace.workspace_path) / "stale.txt"
    stale_file.write_text("old", encoding="utf-8")
    workspace_service.force_status(
        workspace_id=workspace.workspace_id,
        target=WorkspaceStatus.PROBLEM,
    )
    workspace_service.reset_problem_workspace(workspace_id=workspace.workspace_id)

    again = workspace_service.run_setup(
        workspace_id=workspace.workspace_id,
        repository_url="https://github.com/acme/site.git",
    )

    assert again.status == WorkspaceStatus.AVAILABLE_FOR_CONVERSATION
    assert not stale_file.exists()
