"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from agent_workbench.conversation.guard import SessionConcurrencyGuard
from agent_workbench.conversation.models import ConversationView
from agent_workbench.errors import NoChangesError, VerificationError, VersionControlError
from agent_workbench.storage.repository import WorkbenchRepository
from agent_workbench.workspace.models import WorkspaceView
from agent_workbench.workspace.service import WorkspaceService


def scripted_agent_command(*args: str) -> str:
    """Command template that runs the scripted stream-json agent with ``args``."""

    extra = " ".join(shlex.quote(arg) for arg in args)
    return (
        f"{shlex.quote(sys.executable)} -m agent_workbench.agent.scripted_agent "
        f"{extra} {{resume}} -p {{prompt}}"
    )


class FakeVersionControl:
    """In-memory ``VersionControlGateway`` that records calls."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, ...]] = []
        self.commits: list[tuple[Path, str, str]] = []
        self.has_changes = True
        self.commit_error: VersionControlError | None = None
        self.clone_error: VersionControlError | None = None
        self.pull_request_url = "https://github.com/acme/site/pull/7"
        self.branch_has_commits = True

    def clone(self, url: str, path: Path, token: str | None) -> None:
        self.calls.append(("clone", url, str(path)))
        if self.clone_error is not None:
            raise self.clone_error
        path.mkdir(parents=True, exist_ok=True)

    def checkout_new_branch(self, path: Path, branch: str) -> None:
        self.calls.append(("checkout", str(path), branch))

    def commit_and_push(self, path: Path, message: str, author_email: str) -> None:
        self.calls.append(("commit", str(path)))
        if self.commit_error is not None:
            raise self.commit_error
        if not self.has_changes:
            raise NoChangesError("Nothing to commit.")
        self.commits.append((path, message, author_email))

    def ensure_pull_request(self, path: Path, branch: str, title: str, body: str) -> str:
        self.calls.append(("pull_request", branch, title))
        if not self.branch_has_commits:
            raise NoChangesError("Branch has no commits to review.")
        return self.pull_request_url


class RecordingVerifier:
    def __init__(self, *, error: str | None = None, output: str = "build ok") -> None:
        self.error = error
        self.output = output
        self.paths: list[Path] = []

    def verify(self, workspace_path: Path) -> str:
        self.paths.append(workspace_path)
        if self.error is not None:
            raise VerificationError(self.error)
        return self.output


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[WorkbenchRepository]:
    repo = WorkbenchRepository(
        tmp_path / "workbench.db",
        workspace_root=tmp_path / "workspaces",
    )
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def vcs() -> FakeVersionControl:
    return FakeVersionControl()


@pytest.fixture()
def workspace_service(
    repository: WorkbenchRepository,
    vcs: FakeVersionControl,
) -> WorkspaceService:
    return WorkspaceService(repository=repository, vcs=vcs)


@pytest.fixture()
def guard(
    repository: WorkbenchRepository,
    workspace_service: WorkspaceService,
) -> SessionConcurrencyGuard:
    return SessionConcurrencyGuard(repository=repository, workspace_service=workspace_service)


def ready_workspace(
    guard: SessionConcurrencyGuard,
    service: WorkspaceService,
    project_id: str = "site",
) -> WorkspaceView:
    """Dispatch and run setup so the workspace is AVAILABLE_FOR_CONVERSATION."""

    dispatch = guard.dispatch_setup_if_needed(project_id)
    return service.run_setup(
        workspace_id=dispatch.workspace.workspace_id,
        repository_url="https://github.com/acme/site.git",
    )


def open_conversation(
    guard: SessionConcurrencyGuard,
    service: WorkspaceService,
    *,
    project_id: str = "site",
    user_id: str = "alice",
) -> ConversationView:
    ready_workspace(guard, service, project_id)
    return guard.start_or_resume(project_id, user_id, email=f"{user_id}@example.com")
