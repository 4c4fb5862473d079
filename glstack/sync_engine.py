"""Sync engine for ``glstack sync``.

Walks the stack from the first ref to the last. For each ref it reconciles
the local branch with its remote (pull or rebase), then makes sure a merge
request exists, dropping refs whose merge request has merged. Branches
rewritten by a rebase are force-pushed together at the end.

Nothing is retried and nothing is rolled back: the first error stops the
sync, and rerunning it picks up from whatever state git and GitLab are in.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import typer

from glstack import git_ops, stack_manager
from glstack.exceptions import (
    BranchAheadError,
    GitError,
    MergeRequestError,
    RebaseConflictError,
    RemoteBranchMissingError,
)
from glstack.git_ops import GitRunner
from glstack.models import Stack, StackRef
from glstack.mr_ops import CLOSED_STATE, MERGED_STATE, MergeRequest, MergeRequestAPI

logger = logging.getLogger(__name__)

BRANCH_IS_BEHIND = "Your branch is behind"
BRANCH_HAS_DIVERGED = "have diverged"
NOTHING_TO_COMMIT = "nothing to commit"

# GitLab caps titles at 255 characters.
MAX_MR_TITLE_SIZE = 252


@dataclass
class SyncResult:
    """Result of a sync operation."""

    pulled: list[str] = field(default_factory=list)
    rebased: list[str] = field(default_factory=list)
    created_mrs: list[str] = field(default_factory=list)
    adopted_mrs: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    closed: list[str] = field(default_factory=list)
    pushed: list[str] = field(default_factory=list)

    @property
    def push_needed(self) -> bool:
        return bool(self.rebased)


def fetch_remote(runner: GitRunner, remote: str = git_ops.DEFAULT_REMOTE) -> None:
    output = runner.git("fetch", remote)
    logger.debug("Fetched from remote: %s", output.strip())


def branch_status(ref: StackRef, runner: GitRunner) -> str:
    """Check out the branch of ref and return ``git status -uno``."""
    git_ops.checkout_branch(ref.branch, runner)
    output = runner.git("status", "-uno")
    logger.debug("Git status of %s: %s", ref.branch, output)
    return output


def branch_behind(ref: StackRef, runner: GitRunner) -> None:
    """Pull commits someone else added, e.g. applied review suggestions."""
    typer.echo(f"{ref.branch} is behind - pulling updates.")
    output = runner.git("pull")
    logger.debug("Pulled: %s", output.strip())


def rebase_with_update_refs(ref: StackRef, stack: Stack, runner: GitRunner) -> None:
    """Rebase the top of the stack onto ref, moving every branch in between.

    Raises:
        RebaseConflictError: If the rebase stops. It is left in progress for
            the user to resolve.
    """
    last = stack.last()
    typer.echo(f"{ref.branch} has diverged. Rebasing...")

    try:
        git_ops.checkout_branch(last.branch, runner)
        output = runner.git("rebase", "--fork-point", "--update-refs", ref.branch)
    except GitError as e:
        raise RebaseConflictError(ref.branch) from e

    logger.debug("Rebased: %s", output.strip())


def force_push_all_with_lease(
    stack: Stack, runner: GitRunner, remote: str = git_ops.DEFAULT_REMOTE
) -> list[str]:
    """Push every branch of the stack in one force-with-lease push."""
    branches = stack.branches()
    typer.echo(f"Updating branches: {', '.join(branches)}")

    output = runner.git("push", remote, "--force-with-lease", *branches)
    logger.debug("Push output: %s", output.strip())

    return branches


def mr_title(description: str) -> str:
    if len(description) > MAX_MR_TITLE_SIZE:
        return description[:68] + "..."
    return description


def target_branch_for(
    ref: StackRef,
    stack: Stack,
    repo_root: Path,
    runner: GitRunner,
    remote: str = git_ops.DEFAULT_REMOTE,
) -> str:
    """Branch the merge request of ref should target.

    Raises:
        RemoteBranchMissingError: If ref is first and the base branch is not
            on the remote.
    """
    if not ref.is_first():
        return stack.refs[ref.prev].branch

    base = stack_manager.base_branch(stack, repo_root, runner, remote)
    if not git_ops.remote_branch_exists(base, runner, remote):
        raise RemoteBranchMissingError(base, remote)

    return base


def populate_mr(
    ref: StackRef,
    stack: Stack,
    repo_root: Path,
    runner: GitRunner,
    mr_api: MergeRequestAPI,
    remote: str = git_ops.DEFAULT_REMOTE,
) -> tuple[MergeRequest, bool]:
    """Push the branch of ref and give it a merge request.

    An open merge request that already exists for the branch is adopted
    instead of creating a second one. This happens when an earlier sync died
    between creating the merge request and saving its URL.

    Returns:
        The merge request, and whether it was newly created.
    """
    typer.echo(f"{ref.branch} needs a merge request. Creating it now.")

    try:
        runner.git("push", "--set-upstream", remote, ref.branch)
    except GitError as e:
        raise GitError(f"Error pushing branch: {e}", e.returncode, e.stderr) from e

    target = target_branch_for(ref, stack, repo_root, runner, remote)

    mr = mr_api.find_open_merge_request(ref.branch)
    created = mr is None
    if mr is None:
        mr = mr_api.create_merge_request(
            source_branch=ref.branch,
            target_branch=target,
            title=mr_title(ref.description),
            remove_source_branch=True,
        )
        typer.echo(f"Merge request created! !{mr.iid} {mr.web_url}")
    else:
        typer.echo(f"Found existing merge request !{mr.iid} {mr.web_url}")

    ref.mr = mr.web_url
    stack.refs[ref.sha] = ref
    stack_manager.update_stack_ref_file(repo_root, stack.title, ref)

    return mr, created


def remove_old_mr(
    ref: StackRef,
    mr: MergeRequest,
    stack: Stack,
    repo_root: Path,
    runner: GitRunner,
    remote: str = git_ops.DEFAULT_REMOTE,
) -> bool:
    """Drop ref if its merge request merged; only warn if it closed.

    Returns:
        True if the ref was removed.
    """
    if mr.state == MERGED_STATE:
        typer.echo(f"Merge request !{mr.iid} has merged. Removing reference...")
        stack_manager.remove_ref(stack, ref, repo_root, runner, remote)
        return True

    if mr.state == CLOSED_STATE:
        logger.warning("Merge request !%s for %s is closed but still in the stack", mr.iid, ref.branch)
        typer.echo(f"Warning: MR !{mr.iid} has closed", err=True)

    return False


def run_sync(
    stack: Stack,
    repo_root: Path,
    runner: GitRunner,
    mr_api: MergeRequestAPI,
    remote: str = git_ops.DEFAULT_REMOTE,
) -> SyncResult:
    """Run the sync workflow over the whole stack.

    Algorithm:
    1. Fetch the remote
    2. For each ref, first to last:
       a. Checkout its branch and classify ``git status -uno``
       b. Behind: pull. Diverged: rebase the last branch onto this one with
          --update-refs. Clean: nothing. Anything else: stop.
       c. No MR: push and create one. MR merged: remove the ref.
          MR closed: warn.
    3. If anything was rebased, force-push all branches with lease

    Raises:
        BranchAheadError: If a branch is ahead of its remote.
        RebaseConflictError: If a rebase stops on conflicts.
        RemoteBranchMissingError: If the base branch is not on the remote.
        MergeRequestError: If the GitLab API fails.
        GitError: If any other git command fails.
    """
    result = SyncResult()

    fetch_remote(runner, remote)

    for ref in stack.iter_refs():
        status = branch_status(ref, runner)

        if BRANCH_IS_BEHIND in status:
            branch_behind(ref, runner)
            result.pulled.append(ref.branch)
        elif BRANCH_HAS_DIVERGED in status:
            rebase_with_update_refs(ref, stack, runner)
            result.rebased.append(ref.branch)
        elif NOTHING_TO_COMMIT in status:
            pass
        else:
            raise BranchAheadError(ref.branch)

        if ref.mr == "":
            _, created = populate_mr(ref, stack, repo_root, runner, mr_api, remote)
            if created:
                result.created_mrs.append(ref.branch)
            else:
                result.adopted_mrs.append(ref.branch)
            continue

        try:
            mr = mr_api.get_merge_request_by_branch(ref.branch, state="all")
        except MergeRequestError as e:
            raise MergeRequestError(
                f"Error getting merge request from branch: {e}. Does it still exist?",
                status_code=e.status_code,
            ) from e

        if remove_old_mr(ref, mr, stack, repo_root, runner, remote):
            result.removed.append(ref.branch)
        elif mr.state == CLOSED_STATE:
            result.closed.append(ref.branch)

    if result.push_needed and not stack.empty():
        result.pushed = force_push_all_with_lease(stack, runner, remote)

    return result
