"""Version-control gateway: git CLI for local operations, GitHub REST for pull requests."""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import Protocol

import httpx

from agent_workbench.errors import NoChangesError, VersionControlError

logger = logging.getLogger(__name__)

DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_GIT_TIMEOUT_SECONDS = 300
COMMIT_AUTHOR_PREFIX = "Workbench user"

_GITHUB_URL_RE = re.compile(r"github\.com[/:]([^/]+)/(.+?)(?:\.git)?/?$")


class VersionControlGateway(Protocol):
    """Operations the workbench needs from version control."""

    def clone(self, url: str, path: Path, token: str | None) -> None: ...

    def checkout_new_branch(self, path: Path, branch: str) -> None: ...

    def commit_and_push(self, path: Path, message: str, author_email: str) -> None:
        """Stage everything, commit and push; ``NoChangesError`` if the tree is clean."""
        ...

    def ensure_pull_request(self, path: Path, branch: str, title: str, body: str) -> str:
        """Return the open pull request URL for ``branch``, creating one if needed."""
        ...


def parse_github_repository(url: str) -> tuple[str, str]:
    """Extract ``(owner, repo)`` from an https or ssh GitHub remote URL."""

    match = _GITHUB_URL_RE.search(url.strip())
    if match is None:
        raise VersionControlError(f"Unable to parse GitHub repository from URL: {url}")
    return match.group(1), match.group(2)


def inject_token(url: str, token: str | None) -> str:
    """Embed ``token`` as https credentials; non-https URLs pass through unchanged."""

    if not token or not url.startswith("https://"):
        return url
    host_and_path = url.removeprefix("https://")
    if "@" in host_and_path.split("/", 1)[0]:
        host_and_path = host_and_path.split("@", 1)[1]
    return f"https://{token}@{host_and_path}"


class GitCliGateway:
    """``VersionControlGateway`` backed by the ``git`` binary and the GitHub REST API."""

    def __init__(
        self,
        *,
        token: str | None = None,
        api_url: str = DEFAULT_GITHUB_API_URL,
        base_branch: str = "main",
        timeout_seconds: int = DEFAULT_GIT_TIMEOUT_SECONDS,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.base_branch = base_branch
        self.timeout_seconds = timeout_seconds
        self._client = http_client or httpx.Client(
            timeout=httpx.Timeout(30.0, connect=10.0),
            transport=httpx.HTTPTransport(retries=3),
        )

    def close(self) -> None:
        self._client.close()

    def clone(self, url: str, path: Path, token: str | None) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._git(
            ["clone", inject_token(url, token or self.token), str(path)],
            cwd=None,
            failure="Failed to clone repository",
            secret=token,
        )
        if token or self.token:
            # Keep credentials out of .git/config.
            self._git(
                ["remote", "set-url", "origin", url],
                cwd=path,
                failure="Failed to reset remote URL",
            )

    def checkout_new_branch(self, path: Path, branch: str) -> None:
        self._git(
            ["checkout", "-b", branch],
            cwd=path,
            failure="Failed to create and checkout branch",
        )

    def has_changes(self, path: Path) -> bool:
        output = self._git(
            ["status", "--porcelain"],
            cwd=path,
            failure="Failed to check git status",
        )
        return bool(output.strip())

    def commit_and_push(self, path: Path, message: str, author_email: str) -> None:
        if not self.has_changes(path):
            raise NoChangesError(f"No changes to commit in {path}")

        self._git(["add", "-A"], cwd=path, failure="Failed to stage changes")
        self._git(
            [
                "-c",
                f"user.name={COMMIT_AUTHOR_PREFIX} {author_email}",
                "-c",
                f"user.email={author_email}",
                "commit",
                "-m",
                message,
            ],
            cwd=path,
            failure="Failed to commit changes",
        )
        self._push(path)

    def ensure_pull_request(self, path: Path, branch: str, title: str, body: str) -> str:
        owner, repo = parse_github_repository(self._remote_url(path))

        existing = self._find_pull_request(owner=owner, repo=repo, branch=branch)
        if existing is not None:
            logger.debug("Found existing pull request for %s: %s", branch, existing)
            return existing

        if not self._has_branch_commits(path):
            raise NoChangesError(
                f"Branch {branch} has no commits compared to {self.base_branch}",
            )

        response = self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json={"title": title, "body": body, "head": branch, "base": self.base_branch},
        )
        if response.status_code != httpx.codes.CREATED:
            raise VersionControlError(
                f"Failed to create pull request: HTTP {response.status_code}",
            )
        url = response.json().get("html_url")
        if not isinstance(url, str):
            raise VersionControlError("Invalid pull request response from GitHub API")
        logger.info("Created pull request for %s: %s", branch, url)
        return url

    def _find_pull_request(self, *, owner: str, repo: str, branch: str) -> str | None:
        response = self._request(
            "GET",
            f"/repos/{owner}/{repo}/pulls",
            params={"head": f"{owner}:{branch}", "state": "open"},
        )
        if response.status_code != httpx.codes.OK:
            raise VersionControlError(
                f"Failed to list pull requests: HTTP {response.status_code}",
            )
        data = response.json()
        if not isinstance(data, list) or not data:
            return None
        url = data[0].get("html_url") if isinstance(data[0], dict) else None
        return url if isinstance(url, str) else None

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            return self._client.request(method, f"{self.api_url}{path}", headers=headers, **kwargs)
        except httpx.HTTPError as error:
            raise VersionControlError(f"GitHub API request failed: {error}") from error

    def _has_branch_commits(self, path: Path) -> bool:
        output = self._git(
            ["rev-list", "--count", f"origin/{self.base_branch}..HEAD"],
            cwd=path,
            failure="Failed to compare branch with base",
        )
        try:
            return int(output.strip() or "0") > 0
        except ValueError:
            return False

    def _remote_url(self, path: Path) -> str:
        return self._git(
            ["remote", "get-url", "origin"],
            cwd=path,
            failure="Failed to get remote URL",
        ).strip()

    def _push(self, path: Path) -> None:
        remote_url = self._remote_url(path)
        authenticated = inject_token(remote_url, self.token)
        if authenticated == remote_url:
            self._git(["push", "-u", "origin", "HEAD"], cwd=path, failure="Failed to push branch")
            return

        self._git(
            ["remote", "set-url", "origin", authenticated],
            cwd=path,
            failure="Failed to set remote URL",
        )
        try:
            self._git(["push", "-u", "origin", "HEAD"], cwd=path, failure="Failed to push branch")
        finally:
            self._git(
                ["remote", "set-url", "origin", remote_url],
                cwd=path,
                failure="Failed to restore remote URL",
            )

    def _git(
        self,
        args: list[str],
        *,
        cwd: Path | None,
        failure: str,
        secret: str | None = None,
    ) -> str:
        try:
            completed = subprocess.run(  # noqa: S603
                ["git", *args],  # noqa: S607
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as error:
            raise VersionControlError("git executable not found") from error
        except subprocess.TimeoutExpired as error:
            raise VersionControlError(f"{failure}: timed out") from error
        if completed.returncode != 0:
            detail = _redact(
                completed.stderr.strip() or completed.stdout.strip(),
                self.token,
                secret,
            )
            raise VersionControlError(f"{failure}: {detail}")
        return completed.stdout


def _redact(text: str, *tokens: str | None) -> str:
    for token in tokens:
        if token:
            text = text.replace(token, "***")
    return text
