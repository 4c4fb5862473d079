"""Reorder engine for ``glstack reorder``.

The user gets the branches of the stack in an editor, moves lines around,
and the stack's links are rebuilt to follow the new order. Merge requests
whose neighbors changed are retargeted. Branches are not rebased here; the
next ``glstack sync`` takes care of that.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import click

from glstack import git_ops, stack_manager
from glstack.exceptions import (
    DuplicateBranchError,
    MergeRequestError,
    MissingBranchesError,
    ReorderFormatError,
)
from glstack.git_ops import GitRunner
from glstack.models import Stack, StackRef
from glstack.mr_ops import OPENED_STATE, MergeRequestAPI

logger = logging.getLogger(__name__)

EditFunc = Callable[[str], Optional[str]]
ConnectFunc = Callable[[], MergeRequestAPI]

CURRENT_BRANCH_MARKER = "# current branch"

INSTRUCTIONS = """
# Reorder the diffs of stack "{title}" by moving the lines above.
# The first line is the bottom of the stack and merges into the base branch;
# each following line merges into the one before it.
#
# Lines starting with '#' and blank lines are ignored.
# Every branch must stay in the list; removing one aborts the reorder.
"""


@dataclass
class ReorderResult:
    """Result of a reorder operation."""

    branches: list[str] = field(default_factory=list)
    changed: bool = False
    retargeted: list[str] = field(default_factory=list)


def render_reorder_text(stack: Stack, current_branch: str) -> str:
    """Editor buffer listing the branches of stack, bottom first."""
    lines = []
    for ref in stack.iter_refs():
        if ref.branch == current_branch:
            lines.append(f"{ref.branch} {CURRENT_BRANCH_MARKER}")
        else:
            lines.append(ref.branch)

    return "\n".join(lines) + "\n" + INSTRUCTIONS.format(title=stack.title)


def has_comment(words: list[str]) -> bool:
    """True if the words after the first one form a ``#`` comment."""
    return len(words) > 1 and words[1].startswith("#")


def parse_reorder_text(text: str) -> list[str]:
    """Branch names from an edited reorder buffer, in order.

    Raises:
        ReorderFormatError: If a line has anything but a comment after the
            branch name.
    """
    branches = []

    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue

        words = stripped.split()
        if len(words) == 1 or has_comment(words):
            branches.append(words[0])
        else:
            raise ReorderFormatError(
                f"Unexpected text after branch name in line '{stripped}'. "
                "Only a single branch per line, optionally followed by a '#' comment, is allowed."
            )

    return branches


def _default_edit(text: str) -> Optional[str]:
    if not sys.stdin.isatty():
        raise ReorderFormatError("Reordering needs an interactive terminal to open an editor.")
    return click.edit(text, extension=".txt")


def prompt_for_order(stack: Stack, current_branch: str, edit: Optional[EditFunc] = None) -> list[str]:
    """Open the reorder buffer in an editor and parse the result.

    Raises:
        ReorderFormatError: If there is no terminal, the editor was closed
            without saving, or the buffer doesn't parse.
    """
    edit = edit or _default_edit
    edited = edit(render_reorder_text(stack, current_branch))
    if edited is None:
        raise ReorderFormatError("Reorder aborted: the file was not saved.")

    return parse_reorder_text(edited)


def relink_stack(stack: Stack, branches: list[str]) -> Stack:
    """Build the stack that follows the order of branches, without writing it.

    The links of every ref come only from its neighbors in branches. The
    whole list is checked first, so a rejected list changes nothing.

    Raises:
        RefNotFoundError: If a branch is not in the stack.
        DuplicateBranchError: If a branch is listed twice.
        MissingBranchesError: If stack branches are left out.
    """
    seen: set[str] = set()
    ordered: list[StackRef] = []

    for branch in branches:
        if branch in seen:
            raise DuplicateBranchError(branch)
        seen.add(branch)
        ordered.append(stack.ref_from_branch(branch))

    missing = [branch for branch in stack.branches() if branch not in seen]
    if missing:
        raise MissingBranchesError(missing)

    new_stack = Stack(title=stack.title)

    for index, ref in enumerate(ordered):
        prev = ordered[index - 1].sha if index > 0 else ""
        nxt = ordered[index + 1].sha if index < len(ordered) - 1 else ""
        new_stack.refs[ref.sha] = ref.model_copy(update={"prev": prev, "next": nxt})

    return new_stack


def save_relinked_refs(new_stack: Stack, old_stack: Stack, repo_root: Path) -> None:
    """Rewrite the files of refs whose links changed."""
    for ref in new_stack.refs.values():
        if ref != old_stack.refs[ref.sha]:
            stack_manager.update_stack_ref_file(repo_root, new_stack.title, ref)


def match_branches_to_stack(stack: Stack, branches: list[str], repo_root: Path) -> Stack:
    """Relink the stack to follow branches and persist the refs that changed.

    Nothing is written unless every branch matched.
    """
    new_stack = relink_stack(stack, branches)
    save_relinked_refs(new_stack, stack, repo_root)
    return new_stack


def update_mrs(
    new_stack: Stack,
    old_stack: Stack,
    repo_root: Path,
    runner: GitRunner,
    mr_api: MergeRequestAPI,
    remote: str = git_ops.DEFAULT_REMOTE,
) -> list[str]:
    """Retarget the merge requests of refs that moved.

    Retargeting is idempotent, so running it again for the same new order
    is safe.

    Returns:
        Branches whose merge request got a new target.

    Raises:
        MergeRequestError: If GitLab can't find or update a merge request.
    """
    retargeted = []

    for ref in new_stack.iter_refs():
        old = old_stack.refs[ref.sha]
        if ref.mr == "" or (ref.next == old.next and ref.prev == old.prev):
            continue

        try:
            mr = mr_api.get_merge_request_by_branch(ref.branch, state=OPENED_STATE)
        except MergeRequestError as e:
            raise MergeRequestError(
                f"Error getting merge request from GitLab: {e}", status_code=e.status_code
            ) from e

        if ref.is_first():
            target = stack_manager.base_branch(new_stack, repo_root, runner, remote)
        else:
            target = new_stack.refs[ref.prev].branch

        logger.debug("Retargeting !%s (%s) to %s", mr.iid, ref.branch, target)
        mr_api.update_target_branch(mr, target)
        retargeted.append(ref.branch)

    return retargeted


def run_reorder(
    stack: Stack,
    repo_root: Path,
    runner: GitRunner,
    connect: ConnectFunc,
    edit: Optional[EditFunc] = None,
    remote: str = git_ops.DEFAULT_REMOTE,
) -> ReorderResult:
    """Run the reorder workflow.

    Algorithm:
    1. Make sure the checked out branch belongs to the stack
    2. Ask for the new order in an editor
    3. Relink the refs in memory
    4. Connect to GitLab and retarget merge requests of refs whose
       neighbors changed
    5. Persist the relinked refs

    The ref files are written last. If retargeting fails, the stack on disk
    keeps its old order and rerunning the same reorder retargets again.

    Raises:
        RefNotFoundError: If the current branch is not in the stack.
        ReorderFormatError, DuplicateBranchError, MissingBranchesError: If
            the new order is rejected.
        MergeRequestError: If retargeting fails.
    """
    current = stack_manager.current_ref(stack, runner)

    branches = prompt_for_order(stack, current.branch, edit)
    new_stack = relink_stack(stack, branches)

    if new_stack == stack:
        return ReorderResult(branches=branches, changed=False)

    retargeted = update_mrs(new_stack, stack, repo_root, runner, connect(), remote)
    save_relinked_refs(new_stack, stack, repo_root)

    return ReorderResult(branches=branches, changed=True, retargeted=retargeted)
