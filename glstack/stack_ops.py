"""Stack operations behind create, save, amend and the navigation commands."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from glstack import git_ops, stack_manager
from glstack.exceptions import GlstackError, NoChangesError, StackEdgeError, StackNotFoundError
from glstack.git_ops import GitRunner
from glstack.models import Stack, StackRef

# Runs of characters git refuses in branch names (or that read badly in them).
_INVALID_TITLE_CHARS_RE = re.compile(r"[^A-Za-z0-9_.\-]+")


def sanitize_title(title: str) -> tuple[str, bool]:
    """Turn a free-form title into something usable in branch names.

    Spaces become dashes. Any other run of unusable characters also becomes
    a single dash, and is reported so the caller can warn about it.

    Returns:
        The cleaned title, and whether characters other than spaces were replaced.
    """
    spaced = re.sub(r"\s+", "-", title.strip())
    cleaned = _INVALID_TITLE_CHARS_RE.sub("-", spaced)
    return cleaned.strip("-"), cleaned != spaced


def create_stack(title: str, repo_root: Path, runner: GitRunner) -> str:
    """Create a stack on top of the checked out branch and select it.

    Returns:
        The base branch recorded for the stack.
    """
    base = git_ops.current_branch(runner)

    stack_manager.set_current_stack_title(title, runner)
    stack_manager.add_stack_dir(repo_root, title)
    stack_manager.add_base_branch(repo_root, title, base)

    return base


def switch_stack(title: str, repo_root: Path, runner: GitRunner) -> Stack:
    """Select an existing stack.

    Raises:
        StackNotFoundError: If there is no stack with that title.
    """
    if not stack_manager.stack_exists(repo_root, title):
        raise StackNotFoundError(title)

    stack_manager.set_current_stack_title(title, runner)
    return stack_manager.gather_stack_refs(repo_root, title)


def generate_stack_sha(message: str, title: str, author: str, timestamp: datetime) -> str:
    """Short id for a new diff, derived from what was saved, where, by whom and when."""
    data = (message + title + author + str(timestamp)).encode()
    return hashlib.shake_256(data).hexdigest(4)


def create_sha_branch(prefix: str, title: str, sha: str) -> str:
    return "-".join([prefix, title, sha])


def require_changes(runner: GitRunner) -> None:
    """Raises NoChangesError if the working tree is clean."""
    if not git_ops.has_changes(runner):
        raise NoChangesError()


def add_files(files: list[str], runner: GitRunner) -> list[str]:
    """Stage files, or everything when none are given.

    Raises:
        GlstackError: If a given path does not exist.
    """
    paths = files or ["."]
    for path in paths:
        if not Path(path).exists():
            raise GlstackError(f"Pathspec '{path}' does not exist.")

    runner.git("add", *paths)
    return paths


def save_diff(
    stack: Stack,
    repo_root: Path,
    runner: GitRunner,
    description: str,
    files: list[str],
    branch_prefix: str,
    timestamp: Optional[datetime] = None,
) -> StackRef:
    """Commit the staged changes as a new diff on top of the stack.

    The diff gets its own branch, ``<prefix>-<title>-<sha>``, created from
    the checked out branch.
    """
    add_files(files, runner)

    author = git_ops.user_name(runner)
    sha = generate_stack_sha(description, stack.title, author, timestamp or datetime.now())
    branch = create_sha_branch(branch_prefix, stack.title, sha)

    git_ops.checkout_new_branch(branch, runner)
    runner.git("commit", "-m", description)

    return stack_manager.append_ref(stack, repo_root, sha, branch, description)


def amend_diff(
    stack: Stack,
    repo_root: Path,
    runner: GitRunner,
    ref: StackRef,
    description: str,
    files: list[str],
) -> StackRef:
    """Fold more changes into the diff of ref, which must be checked out."""
    add_files(files, runner)
    runner.git("commit", "--amend", "-m", description)

    ref.description = description
    stack.refs[ref.sha] = ref
    stack_manager.update_stack_ref_file(repo_root, stack.title, ref)

    return ref


def next_ref(stack: Stack, runner: GitRunner) -> StackRef:
    """Ref after the checked out one.

    Raises:
        StackEdgeError: If the checked out diff is the last one.
    """
    ref = stack_manager.current_ref(stack, runner)
    if ref.is_last():
        raise StackEdgeError(
            "You are already at the last diff. Use 'glstack list' to see the complete list."
        )
    return stack.refs[ref.next]


def prev_ref(stack: Stack, runner: GitRunner) -> StackRef:
    """Ref before the checked out one.

    Raises:
        StackEdgeError: If the checked out diff is the first one.
    """
    ref = stack_manager.current_ref(stack, runner)
    if ref.is_first():
        raise StackEdgeError(
            "You are already at the first diff. Use 'glstack list' to see the complete list."
        )
    return stack.refs[ref.prev]


def switch_to(ref: StackRef, runner: GitRunner) -> StackRef:
    git_ops.checkout_branch(ref.branch, runner)
    return ref
