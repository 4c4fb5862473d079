"""Data models for stacked diffs.

A stack is a doubly linked list of refs stored as a map from SHA to
StackRef. The links are the ``prev`` and ``next`` SHAs, never object
references, so a ref can be copied, serialized or dropped without leaving
dangling pointers behind.
"""

from __future__ import annotations

from collections.abc import Iterator

from pydantic import BaseModel, Field

from glstack.exceptions import EmptyStackError, RefNotFoundError, StackCorruptedError

SUBJECT_MAX_LENGTH = 72


class StackRef(BaseModel):
    """One diff of a stack.

    Attributes:
        prev: SHA of the previous ref, empty for the first ref.
        branch: Local branch holding the diff.
        sha: Identity of the ref; also the key in Stack.refs and the file name.
        next: SHA of the next ref, empty for the last ref.
        mr: Web URL of the merge request, empty until one is created.
        description: Description given when the diff was saved.
    """

    prev: str = ""
    branch: str = ""
    sha: str = ""
    next: str = ""
    mr: str = ""
    description: str = ""

    def empty(self) -> bool:
        """True if the ref has no SHA and so cannot be part of a stack."""
        return self.sha == ""

    def is_first(self) -> bool:
        return self.prev == ""

    def is_last(self) -> bool:
        return self.next == ""

    @property
    def subject(self) -> str:
        """First line of the description, truncated for space limited places."""
        line = self.description.split("\n", 1)[0]
        if len(line) <= SUBJECT_MAX_LENGTH:
            return line
        return line[: SUBJECT_MAX_LENGTH - 3] + "..."


class Stack(BaseModel):
    """A titled chain of StackRefs keyed by SHA.

    Stacks read from disk come from stack_manager.gather_stack_refs, which
    validates them; the traversal methods rely on that.
    """

    title: str
    refs: dict[str, StackRef] = Field(default_factory=dict)

    def empty(self) -> bool:
        return len(self.refs) == 0

    def first(self) -> StackRef:
        """Return the ref without a previous ref.

        Raises:
            EmptyStackError: If the stack has no refs.
            StackCorruptedError: If no ref qualifies. Validated stacks never
                get here, so this signals broken metadata, not a user error.
        """
        if self.empty():
            raise EmptyStackError()

        for ref in self.refs.values():
            if ref.is_first():
                return ref

        raise StackCorruptedError("Can't find the first ref in the chain. Data might be corrupted.")

    def last(self) -> StackRef:
        """Return the ref without a next ref.

        Raises:
            EmptyStackError: If the stack has no refs.
            StackCorruptedError: If no ref qualifies.
        """
        if self.empty():
            raise EmptyStackError()

        for ref in self.refs.values():
            if ref.is_last():
                return ref

        raise StackCorruptedError("Can't find the last ref in the chain. Data might be corrupted.")

    def iter_refs(self) -> Iterator[StackRef]:
        """Yield refs from the first to the last by following ``next``.

        The generator resolves each ``next`` lazily, so the ref being yielded
        may be removed from the stack before the loop moves on. It cannot be
        rewound; call iter_refs() again for another pass.
        """
        if self.empty():
            return

        ref = self.first()
        seen: set[str] = set()

        while True:
            if ref.sha in seen:
                raise StackCorruptedError(
                    f"Ref {ref.sha} is linked more than once. Data might be corrupted."
                )
            seen.add(ref.sha)

            yield ref

            if ref.is_last():
                return

            try:
                ref = self.refs[ref.next]
            except KeyError:
                raise StackCorruptedError(
                    f"Ref {ref.sha} points to missing ref {ref.next}. Data might be corrupted."
                ) from None

    def iter_indexed(self) -> Iterator[tuple[int, StackRef]]:
        """Like iter_refs, with the position of each ref."""
        return enumerate(self.iter_refs())

    def branches(self) -> list[str]:
        """Branch names in stack order."""
        return [ref.branch for ref in self.iter_refs()]

    def ref_from_branch(self, branch: str) -> StackRef:
        """Find the ref for a branch.

        Raises:
            RefNotFoundError: If no ref uses the branch.
        """
        for ref in self.iter_refs():
            if ref.branch == branch:
                return ref

        raise RefNotFoundError(branch)

    def index_at(self, ref: StackRef) -> int:
        """Position of ref in stack order, or -1 if it is not in the stack."""
        for index, candidate in self.iter_indexed():
            if candidate == ref:
                return index

        return -1

    def unlink(self, ref: StackRef) -> list[StackRef]:
        """Point the neighbors of ref at each other.

        The ref itself stays in ``refs``; removing it is up to the caller,
        which also has to persist the returned neighbors.

        Returns:
            The neighbors that changed, previous one first.
        """
        changed = []

        if not ref.is_first():
            prev = self.refs[ref.prev]
            prev.next = ref.next
            changed.append(prev)

        if not ref.is_last():
            nxt = self.refs[ref.next]
            nxt.prev = ref.prev
            changed.append(nxt)

        return changed


def validate_stack_refs(stack: Stack) -> None:
    """Check that a non-empty stack has exactly one first and one last ref.

    Raises:
        StackCorruptedError: If either count is not exactly one.
    """
    if stack.empty():
        return

    start_refs = 0
    end_refs = 0

    for ref in stack.refs.values():
        if ref.is_first():
            start_refs += 1
        if ref.is_last():
            end_refs += 1

        if start_refs > 1 or end_refs > 1:
            raise StackCorruptedError(
                "More than one end or start ref detected. Data might be corrupted."
            )

    if start_refs != 1:
        raise StackCorruptedError("Expected exactly one start ref. Data might be corrupted.")
    if end_refs != 1:
        raise StackCorruptedError("Expected exactly one end ref. Data might be corrupted.")


def validate_chain(stack: Stack) -> None:
    """Check that walking from the first ref visits every ref exactly once.

    Expects validate_stack_refs to have passed.

    Raises:
        StackCorruptedError: On a key that differs from its ref's SHA, a
            dangling link, a cycle or an orphaned ref.
    """
    for key, ref in stack.refs.items():
        if key != ref.sha:
            raise StackCorruptedError(
                f"Ref stored as {key} has SHA {ref.sha}. Data might be corrupted."
            )

    visited = 0
    for ref in stack.iter_refs():
        visited += 1
        if not ref.is_last() and stack.refs[ref.next].prev != ref.sha:
            raise StackCorruptedError(
                f"Ref {ref.next} does not link back to {ref.sha}. Data might be corrupted."
            )

    if visited != len(stack.refs):
        raise StackCorruptedError(
            f"Only {visited} of {len(stack.refs)} refs are reachable from the first ref. "
            "Data might be corrupted."
        )
