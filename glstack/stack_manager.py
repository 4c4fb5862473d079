"""Stack persistence for glstack.

Each stack lives in .git/stacked/<title>/ with one <SHA>.json file per ref
and an optional BASE_BRANCH file. The selected stack title is kept in the
local git config under glab.currentstack; commands read it once and pass the
title (and repository root) explicitly from there on.

Writes go to a temporary file that is renamed over the target, so an
interrupted command leaves either the old or the new file, never half of one.
There is no locking: glstack must not run concurrently on one checkout.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from pydantic import ValidationError

from glstack import git_ops
from glstack.exceptions import (
    BaseBranchError,
    GitError,
    NoCurrentStackError,
    StackCorruptedError,
    StackNotFoundError,
)
from glstack.git_ops import GitRunner
from glstack.models import Stack, StackRef, validate_chain, validate_stack_refs

logger = logging.getLogger(__name__)

STACK_LOCATION = Path(".git") / "stacked"
BASE_BRANCH_FILE = "BASE_BRANCH"
STACK_DIR_MODE = 0o755
CURRENT_STACK_KEY = "glab.currentstack"


def get_stacks_dir(repo_root: Path) -> Path:
    """Directory holding every stack of the repository."""
    return repo_root / STACK_LOCATION


def get_stack_root(repo_root: Path, title: str) -> Path:
    """Directory holding the refs of one stack."""
    return get_stacks_dir(repo_root) / title


def get_ref_path(repo_root: Path, title: str, sha: str) -> Path:
    return get_stack_root(repo_root, title) / f"{sha}.json"


def _write_atomic(path: Path, content: str) -> None:
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(content)
    os.replace(tmp_path, path)


def add_stack_dir(repo_root: Path, title: str) -> Path:
    """Create the metadata directory of a stack (no-op if it exists)."""
    root = get_stack_root(repo_root, title)
    root.mkdir(mode=STACK_DIR_MODE, parents=True, exist_ok=True)
    return root


def add_stack_ref_file(repo_root: Path, title: str, ref: StackRef) -> None:
    """Write a new ref file, creating the stack directory if needed."""
    root = get_stack_root(repo_root, title)
    root.mkdir(mode=STACK_DIR_MODE, parents=True, exist_ok=True)
    _write_atomic(root / f"{ref.sha}.json", ref.model_dump_json())


def update_stack_ref_file(repo_root: Path, title: str, ref: StackRef) -> None:
    """Overwrite the file of an existing ref."""
    _write_atomic(get_ref_path(repo_root, title, ref.sha), ref.model_dump_json())


def delete_stack_ref_file(repo_root: Path, title: str, ref: StackRef) -> None:
    get_ref_path(repo_root, title, ref.sha).unlink()


def add_base_branch(repo_root: Path, title: str, branch: str) -> None:
    """Record the branch the first diff of the stack merges into."""
    root = add_stack_dir(repo_root, title)
    _write_atomic(root / BASE_BRANCH_FILE, branch)


def gather_stack_refs(repo_root: Path, title: str) -> Stack:
    """Load and validate a stack from disk.

    A missing stack directory yields an empty stack. Every ref file must be
    named after the SHA it holds.

    Raises:
        StackCorruptedError: If a ref file is unreadable or the refs do not
            form a single chain. Nothing is repaired.
    """
    stack = Stack(title=title)
    root = get_stack_root(repo_root, title)

    if not root.is_dir():
        return stack

    for path in sorted(root.glob("*.json")):
        try:
            ref = StackRef.model_validate_json(path.read_text())
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise StackCorruptedError(f"Invalid stack ref file {path}: {e}") from e

        if ref.sha != path.stem:
            raise StackCorruptedError(
                f"Stack ref file {path} holds SHA {ref.sha!r}. Data might be corrupted."
            )

        stack.refs[ref.sha] = ref

    validate_stack_refs(stack)
    validate_chain(stack)

    return stack


def stack_exists(repo_root: Path, title: str) -> bool:
    return get_stack_root(repo_root, title).is_dir()


def list_stacks(repo_root: Path) -> list[str]:
    """Titles of all stacks in the repository, sorted."""
    stacks_dir = get_stacks_dir(repo_root)
    if not stacks_dir.is_dir():
        return []

    return sorted(entry.name for entry in stacks_dir.iterdir() if entry.is_dir())


def get_current_stack_title(runner: GitRunner) -> str:
    """Title of the selected stack.

    Raises:
        NoCurrentStackError: If no stack is selected.
    """
    title = git_ops.get_config(CURRENT_STACK_KEY, runner)
    if not title:
        raise NoCurrentStackError()
    return title


def set_current_stack_title(title: str, runner: GitRunner) -> None:
    git_ops.set_local_config(CURRENT_STACK_KEY, title, runner)


def load_current_stack(repo_root: Path, runner: GitRunner) -> Stack:
    """Load the selected stack.

    Raises:
        NoCurrentStackError: If no stack is selected.
        StackNotFoundError: If the selected stack has no directory.
    """
    title = get_current_stack_title(runner)
    if not stack_exists(repo_root, title):
        raise StackNotFoundError(title)
    return gather_stack_refs(repo_root, title)


def current_ref(stack: Stack, runner: GitRunner) -> StackRef:
    """Ref of the checked out branch.

    Raises:
        RefNotFoundError: If the current branch is not part of the stack.
    """
    return stack.ref_from_branch(git_ops.current_branch(runner))


def append_ref(
    stack: Stack, repo_root: Path, sha: str, branch: str, description: str
) -> StackRef:
    """Add a ref after the current last ref and persist both ends of the link."""
    ref = StackRef(sha=sha, branch=branch, description=description)

    if not stack.empty():
        last = stack.last()
        last.next = sha
        update_stack_ref_file(repo_root, stack.title, last)
        ref.prev = last.sha

    add_stack_ref_file(repo_root, stack.title, ref)
    stack.refs[sha] = ref

    return ref


def base_branch(
    stack: Stack, repo_root: Path, runner: GitRunner, remote: str = git_ops.DEFAULT_REMOTE
) -> str:
    """Branch the first ref of the stack merges into.

    The BASE_BRANCH file wins; without it the remote's HEAD branch is used.

    Raises:
        BaseBranchError: If the file exists but can't be read, or the remote
            can't be queried or parsed.
    """
    filename = get_stack_root(repo_root, stack.title) / BASE_BRANCH_FILE

    try:
        content = filename.read_text()
    except FileNotFoundError:
        content = ""
    except OSError as e:
        raise BaseBranchError(f"Could not read base branch file: {e}") from e

    branch = content.strip()
    if branch:
        return branch

    try:
        output = runner.git("remote", "show", remote)
    except GitError as e:
        raise BaseBranchError(f"Could not get remote data: {e}") from e

    try:
        return git_ops.parse_default_branch(output)
    except GitError as e:
        raise BaseBranchError(f"Could not parse default branch from remote data: {e}") from e


def remove_branch(
    stack: Stack,
    ref: StackRef,
    repo_root: Path,
    runner: GitRunner,
    remote: str = git_ops.DEFAULT_REMOTE,
) -> None:
    """Delete the branch of ref after moving to its logical predecessor."""
    if ref.is_first():
        fallback = base_branch(stack, repo_root, runner, remote)
    else:
        fallback = stack.refs[ref.prev].branch

    git_ops.checkout_branch(fallback, runner)
    git_ops.delete_local_branch(ref.branch, runner)


def remove_ref(
    stack: Stack,
    ref: StackRef,
    repo_root: Path,
    runner: GitRunner,
    remote: str = git_ops.DEFAULT_REMOTE,
) -> None:
    """Take ref out of the stack.

    A sole ref only loses its file. Otherwise its neighbors are relinked and
    saved first, then its branch is deleted, then its own file.
    """
    if ref.is_first() and ref.is_last():
        delete_stack_ref_file(repo_root, stack.title, ref)
        del stack.refs[ref.sha]
        return

    for neighbor in stack.unlink(ref):
        update_stack_ref_file(repo_root, stack.title, neighbor)

    remove_branch(stack, ref, repo_root, runner, remote)

    delete_stack_ref_file(repo_root, stack.title, ref)
    del stack.refs[ref.sha]
    logger.debug("Removed ref %s (%s) from stack %s", ref.sha, ref.branch, stack.title)
