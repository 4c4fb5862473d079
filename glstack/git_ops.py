"""Git operations wrapper for glstack.

Every git command goes through run_git, which pins the locale so that the
status strings the sync engine matches on ("have diverged", ...) are always
English. Stack logic talks to git through the GitRunner protocol so tests can
script git's answers without a shell.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from glstack.exceptions import GitError, NotAGitRepoError

logger = logging.getLogger(__name__)

DEFAULT_REMOTE = "origin"

_HEAD_BRANCH_RE = re.compile(r"^HEAD branch:\s+(\S+)")


@dataclass
class GitResult:
    """Result of a git command execution."""

    stdout: str
    stderr: str
    returncode: int


def run_git(*args: str, check: bool = True, cwd: Optional[Path] = None) -> GitResult:
    """Run a git command and return the result.

    Args:
        *args: Git command arguments (e.g., "status", "-uno").
        check: If True, raise GitError on non-zero exit code.
        cwd: Working directory for the command.

    Returns:
        GitResult with stdout, stderr, and returncode.

    Raises:
        GitError: If check=True and command fails.
    """
    cmd = ["git", *args]

    env = os.environ.copy()
    # Keep output English for string matching, and never open an editor.
    env["LC_ALL"] = "C"
    env["GIT_EDITOR"] = "true"

    logger.debug("Running: %s", " ".join(cmd))
    result = subprocess.run(
        cmd,
        capture_output=True,
        text=True,
        cwd=cwd,
        env=env,
    )

    git_result = GitResult(
        stdout=result.stdout,
        stderr=result.stderr,
        returncode=result.returncode,
    )

    if check and result.returncode != 0:
        error_msg = (
            result.stderr.strip() or result.stdout.strip() or f"Git command failed: {' '.join(cmd)}"
        )
        raise GitError(error_msg, returncode=result.returncode, stderr=result.stderr)

    return git_result


class GitRunner(Protocol):
    """Anything that can run a git subcommand and hand back its output."""

    def git(self, *args: str) -> str:
        """Run ``git <args>`` and return stdout.

        Raises:
            GitError: If the command exits non-zero.
        """
        ...


class StandardGitRunner:
    """GitRunner that shells out to the real git binary."""

    def __init__(self, cwd: Optional[Path] = None) -> None:
        self.cwd = cwd

    def git(self, *args: str) -> str:
        result = run_git(*args, cwd=self.cwd)
        # Several porcelain commands (checkout, push) report on stderr.
        return result.stdout + result.stderr


def repo_root(runner: GitRunner) -> Path:
    """Get the root directory of the current git repository.

    Raises:
        NotAGitRepoError: If not inside a git repository.
    """
    try:
        output = runner.git("rev-parse", "--show-toplevel")
    except GitError as e:
        raise NotAGitRepoError() from e

    return Path(output.strip())


def current_branch(runner: GitRunner) -> str:
    """Name of the checked out branch.

    Raises:
        GitError: In detached HEAD state.
    """
    return runner.git("symbolic-ref", "--quiet", "--short", "HEAD").strip()


def checkout_branch(branch: str, runner: GitRunner) -> None:
    output = runner.git("checkout", branch)
    logger.debug("Checked out: %s", output.strip())


def checkout_new_branch(branch: str, runner: GitRunner) -> None:
    output = runner.git("checkout", "-b", branch)
    logger.debug("Created branch: %s", output.strip())


def delete_local_branch(branch: str, runner: GitRunner) -> None:
    output = runner.git("branch", "-D", branch)
    logger.debug("Deleted branch: %s", output.strip())


def remote_branch_exists(branch: str, runner: GitRunner, remote: str = DEFAULT_REMOTE) -> bool:
    """Check whether the remote has a head named branch."""
    try:
        runner.git("ls-remote", "--exit-code", "--heads", remote, branch)
    except GitError:
        return False

    return True


def parse_default_branch(output: str) -> str:
    """Extract the ``HEAD branch:`` value from ``git remote show`` output.

    Raises:
        GitError: If the output has no HEAD branch line.
    """
    for line in output.splitlines():
        match = _HEAD_BRANCH_RE.match(line.strip())
        if match:
            return match.group(1)

    raise GitError("Could not find 'HEAD branch:' in remote output.")


def default_branch(runner: GitRunner, remote: str = DEFAULT_REMOTE) -> str:
    """The default branch of a remote, as reported by ``git remote show``."""
    return parse_default_branch(runner.git("remote", "show", remote))


def get_config(key: str, runner: GitRunner) -> Optional[str]:
    """Read a git config value, None if unset."""
    try:
        value = runner.git("config", "--get", key).strip()
    except GitError:
        return None

    return value or None


def set_local_config(key: str, value: str, runner: GitRunner) -> None:
    """Write a value to the repository's local git config, skipping no-op writes."""
    if get_config(key, runner) == value:
        return

    runner.git("config", "--local", key, value)


def has_changes(runner: GitRunner) -> bool:
    """True if the working tree has anything to commit."""
    return runner.git("status", "--porcelain").strip() != ""


def user_name(runner: GitRunner) -> str:
    return get_config("user.name", runner) or ""


def remote_url(runner: GitRunner, remote: str = DEFAULT_REMOTE) -> str:
    return runner.git("remote", "get-url", remote).strip()
