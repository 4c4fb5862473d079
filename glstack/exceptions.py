"""Custom exceptions for glstack."""

from __future__ import annotations


class GlstackError(Exception):
    """Base exception for all glstack errors."""

    pass


class GitError(GlstackError):
    """Error executing a git command."""

    def __init__(self, message: str, returncode: int = 1, stderr: str = "") -> None:
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


class NotAGitRepoError(GlstackError):
    """Current directory is not a git repository."""

    def __init__(self) -> None:
        super().__init__("Not a git repository. Please run this command inside a git repo.")


class ConfigError(GlstackError):
    """Settings could not be loaded or are invalid."""

    pass


class NoCurrentStackError(GlstackError):
    """No stack is selected in the local git config."""

    def __init__(self) -> None:
        super().__init__("No current stack. Run 'glstack create' or 'glstack switch' first.")


class StackNotFoundError(GlstackError):
    """A stack title has no metadata directory."""

    def __init__(self, title: str) -> None:
        self.title = title
        super().__init__(f"Stack '{title}' does not exist.")


class StackCorruptedError(GlstackError):
    """Stack metadata breaks the linked-list invariants.

    This is never repaired automatically; the ref files under
    .git/stacked/<title> have to be fixed by hand.
    """

    pass


class RefNotFoundError(GlstackError):
    """No stack ref exists for a branch."""

    def __init__(self, branch: str) -> None:
        self.branch = branch
        super().__init__(f"Could not find stack ref for branch: {branch}")


class EmptyStackError(GlstackError):
    """The current stack has no diffs yet."""

    def __init__(self) -> None:
        super().__init__("You are on an empty stack. To use a stack, first save a diff.")


class StackEdgeError(GlstackError):
    """Navigation past the first or last diff."""

    pass


class NoChangesError(GlstackError):
    """There is nothing to save or amend."""

    def __init__(self) -> None:
        super().__init__("No changes to save.")


class BaseBranchError(GlstackError):
    """The stack base branch could not be determined."""

    pass


class RemoteBranchMissingError(GlstackError):
    """A merge request target branch does not exist on the remote."""

    def __init__(self, branch: str, remote: str) -> None:
        self.branch = branch
        self.remote = remote
        super().__init__(
            f"Branch '{branch}' does not exist on remote '{remote}'. "
            "Please push the branch to the remote before syncing."
        )


class RebaseConflictError(GlstackError):
    """Rebase encountered merge conflicts."""

    def __init__(self, branch: str) -> None:
        self.branch = branch
        super().__init__(
            f"Could not rebase onto '{branch}', likely due to a merge conflict. "
            "Fix the issues with Git and run 'glstack sync' again."
        )


class BranchAheadError(GlstackError):
    """A stack branch is ahead of its remote without having diverged."""

    def __init__(self, branch: str) -> None:
        self.branch = branch
        super().__init__(
            f"Your Git branch '{branch}' is ahead, but it shouldn't be. "
            "You might need to squash your commits."
        )


class ReorderFormatError(GlstackError):
    """The edited reorder buffer could not be parsed."""

    pass


class MissingBranchesError(GlstackError):
    """The reordered list left out branches of the stack."""

    def __init__(self, branches: list[str]) -> None:
        self.branches = branches
        super().__init__(
            "Missing one or more refs from the reordered list: " + ", ".join(branches)
        )


class DuplicateBranchError(GlstackError):
    """A branch appears more than once in the reordered list."""

    def __init__(self, branch: str) -> None:
        self.branch = branch
        super().__init__(f"Branch '{branch}' is listed more than once.")


class MergeRequestError(GlstackError):
    """Error talking to the GitLab merge request API."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)
