"""Shared pytest fixtures for glstack tests."""

from __future__ import annotations

import os
import subprocess
import time
from collections.abc import Generator
from pathlib import Path
from typing import Optional, Union

import pytest

from glstack import stack_manager
from glstack.exceptions import GitError, MergeRequestError
from glstack.models import Stack, StackRef
from glstack.mr_ops import OPENED_STATE, MergeRequest


@pytest.fixture
def temp_git_repo(tmp_path: Path) -> Generator[Path, None, None]:
    """Create a temporary git repository with an initial commit.

    The repository is initialized with:
    - 'main' as the default branch
    - An initial commit with a README file
    - Working directory changed to the repo root

    Yields:
        Path to the temporary repository root.
    """
    original_cwd = os.getcwd()
    repo_path = tmp_path / "repo"
    repo_path.mkdir()
    os.chdir(repo_path)

    subprocess.run(["git", "init", "-b", "main"], check=True, capture_output=True)
    subprocess.run(
        ["git", "config", "user.email", "test@example.com"],
        check=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Test User"],
        check=True,
        capture_output=True,
    )

    readme = repo_path / "README.md"
    readme.write_text("# Test Repository\n")
    subprocess.run(["git", "add", "README.md"], check=True, capture_output=True)
    subprocess.run(
        ["git", "commit", "-m", "Initial commit"],
        check=True,
        capture_output=True,
    )

    yield repo_path

    os.chdir(original_cwd)


@pytest.fixture
def temp_git_repo_with_remote(temp_git_repo: Path, tmp_path: Path) -> Generator[Path, None, None]:
    """Create a temporary git repository with a bare remote.

    Extends temp_git_repo with:
    - A bare remote repository at tmp_path/remote.git
    - Remote 'origin' configured pointing to the bare repo
    - Initial push to origin/main

    Yields:
        Path to the temporary repository root (same as temp_git_repo).
    """
    remote_path = tmp_path / "remote.git"
    subprocess.run(
        ["git", "init", "--bare", "-b", "main", str(remote_path)], check=True, capture_output=True
    )

    subprocess.run(
        ["git", "remote", "add", "origin", str(remote_path)],
        check=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "push", "-u", "origin", "main"],
        check=True,
        capture_output=True,
    )

    yield temp_git_repo


Response = Union[str, Exception]


class FakeGitRunner:
    """GitRunner that answers from a script instead of running git.

    Responses are keyed by a prefix of the argument tuple; the longest
    matching prefix wins. Unscripted commands succeed with empty output.
    Every call is recorded in ``calls``.

    Example:
        runner = FakeGitRunner({("status", "-uno"): "nothing to commit"})
    """

    def __init__(self, responses: Optional[dict[tuple[str, ...], Response]] = None) -> None:
        self.responses: dict[tuple[str, ...], Response] = dict(responses or {})
        self.calls: list[tuple[str, ...]] = []

    def git(self, *args: str) -> str:
        self.calls.append(args)

        match: Optional[tuple[str, ...]] = None
        for prefix in self.responses:
            if args[: len(prefix)] == prefix and (match is None or len(prefix) > len(match)):
                match = prefix

        if match is None:
            return ""

        response = self.responses[match]
        if isinstance(response, Exception):
            raise response
        return response

    def called(self, *prefix: str) -> list[tuple[str, ...]]:
        """Recorded calls that start with prefix."""
        return [call for call in self.calls if call[: len(prefix)] == prefix]


class FakeMergeRequestAPI:
    """MergeRequestAPI backed by a dict of merge requests keyed by source branch."""

    def __init__(self, mrs: Optional[dict[str, MergeRequest]] = None) -> None:
        self.mrs: dict[str, MergeRequest] = dict(mrs or {})
        self.created: list[MergeRequest] = []
        self.retargeted: list[tuple[str, str]] = []
        self.update_error: Optional[MergeRequestError] = None
        self.closed = False
        self._next_iid = 100

    def __enter__(self) -> "FakeMergeRequestAPI":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.closed = True

    def create_merge_request(
        self,
        source_branch: str,
        target_branch: str,
        title: str,
        remove_source_branch: bool = True,
    ) -> MergeRequest:
        mr = make_mr(source_branch, target_branch, iid=self._next_iid, title=title)
        self._next_iid += 1
        self.mrs[source_branch] = mr
        self.created.append(mr)
        return mr

    def get_merge_request_by_branch(self, branch: str, state: str = "all") -> MergeRequest:
        mr = self.mrs.get(branch)
        if mr is None or (state != "all" and mr.state != state):
            raise MergeRequestError(f"No merge request found for branch '{branch}'.")
        return mr

    def find_open_merge_request(self, branch: str) -> Optional[MergeRequest]:
        mr = self.mrs.get(branch)
        if mr is not None and mr.state == OPENED_STATE:
            return mr
        return None

    def get_merge_request(self, iid: int) -> MergeRequest:
        for mr in self.mrs.values():
            if mr.iid == iid:
                return mr
        raise MergeRequestError(f"Error getting merge request !{iid}: 404", status_code=404)

    def update_target_branch(self, mr: MergeRequest, target_branch: str) -> MergeRequest:
        if self.update_error is not None:
            raise self.update_error
        mr.target_branch = target_branch
        self.retargeted.append((mr.source_branch, target_branch))
        return mr


@pytest.fixture
def fake_git() -> FakeGitRunner:
    return FakeGitRunner()


@pytest.fixture
def fake_mr_api() -> FakeMergeRequestAPI:
    return FakeMergeRequestAPI()


# Helper functions for tests


def make_mr(
    branch: str,
    target: str = "main",
    iid: int = 1,
    state: str = OPENED_STATE,
    title: str = "",
) -> MergeRequest:
    return MergeRequest(
        iid=iid,
        project_id=42,
        web_url=f"https://gitlab.example.com/group/project/-/merge_requests/{iid}",
        state=state,
        source_branch=branch,
        target_branch=target,
        title=title,
    )


def make_stack(title: str, *branches: str, mrs: bool = False) -> Stack:
    """Build a linked stack whose refs have SHAs s1, s2, ... in order."""
    stack = Stack(title=title)
    shas = [f"s{index}" for index in range(1, len(branches) + 1)]

    for index, branch in enumerate(branches):
        stack.refs[shas[index]] = StackRef(
            sha=shas[index],
            branch=branch,
            prev=shas[index - 1] if index > 0 else "",
            next=shas[index + 1] if index < len(shas) - 1 else "",
            mr=f"https://gitlab.example.com/group/project/-/merge_requests/{index + 1}"
            if mrs
            else "",
            description=f"Change {branch}",
        )

    return stack


def write_stack(repo_root: Path, stack: Stack, base: Optional[str] = "main") -> None:
    """Persist every ref of stack, plus its base branch file."""
    stack_manager.add_stack_dir(repo_root, stack.title)
    if base is not None:
        stack_manager.add_base_branch(repo_root, stack.title, base)
    for ref in stack.refs.values():
        stack_manager.add_stack_ref_file(repo_root, stack.title, ref)


def git_error(message: str = "fatal: failed") -> GitError:
    return GitError(message, returncode=128, stderr=message)


def create_branch(name: str, parent: Optional[str] = None) -> None:
    """Create a new git branch, optionally from a specific parent."""
    if parent:
        subprocess.run(["git", "checkout", parent], check=True, capture_output=True)
    subprocess.run(["git", "checkout", "-b", name], check=True, capture_output=True)


def make_commit(message: str = "Test commit", filename: Optional[str] = None) -> str:
    """Create a commit with an optional specific filename.

    Returns the commit SHA.
    """
    if filename is None:
        filename = f"file_{time.time_ns()}.txt"

    Path(filename).write_text(f"Content for {message}\n")
    subprocess.run(["git", "add", filename], check=True, capture_output=True)
    subprocess.run(["git", "commit", "-m", message], check=True, capture_output=True)

    result = subprocess.run(
        ["git", "rev-parse", "HEAD"],
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


def get_current_branch() -> str:
    """Get the current branch name."""
    result = subprocess.run(
        ["git", "rev-parse", "--abbrev-ref", "HEAD"],
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()
