from __future__ import annotations

import json
import shutil
import subprocess
from pathlib import Path

import allure
import httpx
import pytest

from agent_workbench.errors import NoChangesError, VersionControlError
from agent_workbench.workspace.vcs import (
    GitCliGateway,
    inject_token,
    parse_github_repository,
)

pytestmark = [
    allure.epic("Workspaces"),
    allure.feature("Setup & Version Control"),
]

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _github_gateway(
    handler,
    monkeypatch: pytest.MonkeyPatch,
    *,
    has_commits: bool = True,
) -> GitCliGateway:
    gateway = GitCliGateway(
        token="ghp_secret",
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    monkeypatch.setattr(
        gateway,
        "_remote_url",
        lambda path: "git@github.com:acme/site.git",
    )
    monkeypatch.setattr(gateway, "_has_branch_commits", lambda path: has_commits)
    return gateway


@pytest.mark.parametrize(
    "url",
    [
        "https://github.com/acme/site.git",
        "https://github.com/acme/site",
        "https://token@github.com/acme/site.git/",
        "git@github.com:acme/site.git",
    ],
)
def test_parse_github_repository_accepts_https_and_ssh(url: str) -> None:
    assert parse_github_repository(url) == ("acme", "site")


def test_parse_github_repository_rejects_other_hosts() -> None:
    with pytest.raises(VersionControlError, match="Unable to parse GitHub repository"):
        parse_github_repository("https://gitlab.com/acme/site.git")


def test_inject_token_only_touches_https_urls() -> None:
    assert inject_token("https://github.com/acme/site.git", "tok") == (
        "https://tok@github.com/acme/site.git"
    )
    assert inject_token("https://old@github.com/acme/site.git", "tok") == (
        "https://tok@github.com/acme/site.git"
    )
    assert inject_token("git@github.com:acme/site.git", "tok") == "git@github.com:acme/site.git"
    assert inject_token("https://github.com/acme/site.git", None) == (
        "https://github.com/acme/site.git"
    )


def test_existing_pull_request_is_reused(monkeypatch: pytest.MonkeyPatch) -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=[{"html_url": "https://github.com/acme/site/pull/3"}])

    gateway = _github_gateway(handler, monkeypatch)

    url = gateway.ensure_pull_request(Path("."), "ws-1", "Title", "Body")

    assert url == "https://github.com/acme/site/pull/3"
    assert [request.method for request in requests] == ["GET"]
    assert requests[0].url.params["head"] == "acme:ws-1"
    assert requests[0].headers["Authorization"] == "Bearer ghp_secret"


def test_pull_request_is_created_against_base_branch(monkeypatch: pytest.MonkeyPatch) -> None:
    created: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json=[])
        created.append(json.loads(request.content))
        return httpx.Response(201, json={"html_url": "https://github.com/acme/site/pull/9"})

    gateway = _github_gateway(handler, monkeypatch)

    url = gateway.ensure_pull_request(Path("."), "ws-1", "Title", "Body")

    assert url == "https://github.com/acme/site/pull/9"
    assert created == [{"title": "Title", "body": "Body", "head": "ws-1", "base": "main"}]


def test_branch_without_commits_raises_no_changes(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway = _github_gateway(
        lambda request: httpx.Response(200, json=[]),
        monkeypatch,
        has_commits=False,
    )

    with pytest.raises(NoChangesError):
        gateway.ensure_pull_request(Path("."), "ws-1", "Title", "Body")


def test_github_error_status_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json=[])
        return httpx.Response(422, json={"message": "Validation Failed"})

    gateway = _github_gateway(handler, monkeypatch)

    with pytest.raises(VersionControlError, match="HTTP 422"):
        gateway.ensure_pull_request(Path("."), "ws-1", "Title", "Body")


def test_transport_failure_becomes_version_control_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    gateway = _github_gateway(handler, monkeypatch)

    with pytest.raises(VersionControlError, match="GitHub API request failed"):
        gateway.ensure_pull_request(Path("."), "ws-1", "Title", "Body")


@requires_git
def test_clone_branch_commit_and_push_against_local_remote(tmp_path: Path) -> None:
    remote = tmp_path / "remote.git"
    subprocess.run(["git", "init", "--bare", str(remote)], check=True, capture_output=True)
    gateway = GitCliGateway()
    checkout = tmp_path / "workspaces" / "ws-1"

    gateway.clone(str(remote), checkout, None)
    gateway.checkout_new_branch(checkout, "ws-1-branch")
    (checkout / "index.html").write_text("<h1>Hi</h1>\n", encoding="utf-8")
    gateway.commit_and_push(checkout, "Edit session: title", "alice@example.com")

    log = subprocess.run(
        ["git", "log", "-1", "--format=%an|%ae|%s", "ws-1-branch"],
        cwd=remote,
        check=True,
        capture_output=True,
        text=True,
    ).stdout.strip()
    assert log == "Workbench user alice@example.com|alice@example.com|Edit session: title"

    with pytest.raises(NoChangesError):
        gateway.commit_and_push(checkout, "again", "alice@example.com")


@requires_git
def test_git_failure_raises_version_control_error(tmp_path: Path) -> None:
    gateway = GitCliGateway()

    with pytest.raises(VersionControlError, match="Failed to clone repository"):
        gateway.clone(str(tmp_path / "missing.git"), tmp_path / "checkout", None)


def test_clone_error_masks_the_clone_token(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fake_run(args, **kwargs):
        return subprocess.CompletedProcess(
            args,
            128,
            stdout="",
            stderr=f"fatal: could not read from {args[2]}",
        )

    monkeypatch.setattr(subprocess, "run", fake_run)
    gateway = GitCliGateway(token="ghp_default")

    with pytest.raises(VersionControlError) as raised:
        gateway.clone("https://github.com/acme/site.git", tmp_path / "checkout", "ghp_per_call")

    assert "ghp_per_call" not in str(raised.value)
    assert "https://***@github.com/acme/site.git" in str(raised.value)
