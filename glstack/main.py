"""CLI entry point for glstack."""

import logging
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Optional

import click
import typer

from glstack import git_ops, reorder_engine, stack_manager, stack_ops, sync_engine
from glstack.exceptions import GitError, GlstackError
from glstack.git_ops import GitRunner, StandardGitRunner
from glstack.models import StackRef
from glstack.mr_ops import GitLabClient, parse_project_path
from glstack.settings import Settings, load_settings

app = typer.Typer(
    name="glstack",
    help="Manage stacked diffs as chains of Git branches with GitLab merge requests.",
    no_args_is_help=True,
)

DESCRIPTION_TEMPLATE = "\n# Describe this change. Lines starting with '#' are ignored.\n"


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log git and API calls"),
) -> None:
    """Stacked diffs for GitLab."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@contextmanager
def handle_errors() -> Iterator[None]:
    """Print glstack errors the same way for every command and exit non-zero."""
    try:
        yield
    except GlstackError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None


def get_runner() -> GitRunner:
    return StandardGitRunner()


def get_repo_root_or_exit(runner: GitRunner) -> Path:
    """Get the repository root, or exit with error if not in a git repo."""
    with handle_errors():
        return git_ops.repo_root(runner)


def make_mr_api(settings: Settings, runner: GitRunner) -> GitLabClient:
    """GitLab client for the project behind the configured remote. Close it after use."""
    host, project_path = parse_project_path(git_ops.remote_url(runner, settings.remote))
    return GitLabClient(settings.host or host, project_path, token=settings.token)


def switch_message(ref: StackRef) -> None:
    typer.echo(f"Switched to branch: {ref.branch} - {ref.subject}")


def _ask_description(initial: str = "") -> str:
    edited = click.edit(initial + DESCRIPTION_TEMPLATE, extension=".txt") or ""
    lines = [line for line in edited.splitlines() if not line.startswith("#")]
    return "\n".join(lines).strip()


@app.command()
def create(
    title: Optional[str] = typer.Argument(None, help="Title of the new stack"),
) -> None:
    """Create a new stack on top of the current branch and switch to it."""
    runner = get_runner()
    repo_root = get_repo_root_or_exit(runner)

    if not title:
        title = typer.prompt("New stack title?")

    clean, replaced = stack_ops.sanitize_title(title)
    if not clean:
        typer.echo("Error: The stack title must contain letters or digits.", err=True)
        raise typer.Exit(1)

    if replaced:
        typer.echo(f"! warning: invalid characters have been replaced with dashes: {clean}", err=True)

    if stack_manager.stack_exists(repo_root, clean):
        typer.echo(f"Error: Stack '{clean}' already exists.", err=True)
        raise typer.Exit(1)

    with handle_errors():
        stack_ops.create_stack(clean, repo_root, runner)

    typer.echo(f'New stack created with title "{clean}".')


@app.command()
def save(
    files: Optional[list[str]] = typer.Argument(None, help="Files to add (defaults to all changes)"),
    message: Optional[str] = typer.Option(None, "--message", "-m", help="Alias for --description"),
    description: Optional[str] = typer.Option(
        None, "--description", "-d", help="Description of the change"
    ),
) -> None:
    """Save your changes as a new diff on top of the stack."""
    if message is not None and description is not None:
        typer.echo("Error: Specify either --message or --description.", err=True)
        raise typer.Exit(1)

    runner = get_runner()
    repo_root = get_repo_root_or_exit(runner)

    with handle_errors():
        stack_ops.require_changes(runner)
        settings = load_settings(runner)
        stack = stack_manager.load_current_stack(repo_root, runner)

    description = message if message is not None else description
    if not description:
        description = _ask_description()
    if not description:
        typer.echo("Error: A description is required.", err=True)
        raise typer.Exit(1)

    with handle_errors():
        ref = stack_ops.save_diff(
            stack,
            repo_root,
            runner,
            description,
            files or [],
            settings.resolved_branch_prefix(),
        )

    typer.echo(f'{stack.title}: Saved with message: "{ref.description}".')


@app.command()
def amend(
    files: Optional[list[str]] = typer.Argument(None, help="Files to add (defaults to all changes)"),
    description: Optional[str] = typer.Option(
        None, "--description", "-d", "--message", "-m", help="New description of the change"
    ),
) -> None:
    """Add more changes to the diff that is checked out."""
    runner = get_runner()
    repo_root = get_repo_root_or_exit(runner)

    with handle_errors():
        stack_ops.require_changes(runner)
        stack = stack_manager.load_current_stack(repo_root, runner)
        ref = stack_manager.current_ref(stack, runner)

    if not description:
        description = typer.prompt("How would you describe this change?", default=ref.description)

    with handle_errors():
        stack_ops.amend_diff(stack, repo_root, runner, ref, description, files or [])

    typer.echo(f"Amended stack item with description: {description!r}.")


@app.command(name="list")
def list_() -> None:
    """Show the diffs of the current stack in merge order."""
    runner = get_runner()
    repo_root = get_repo_root_or_exit(runner)

    with handle_errors():
        stack = stack_manager.load_current_stack(repo_root, runner)

    try:
        current = git_ops.current_branch(runner)
    except GitError:
        current = ""

    if stack.empty():
        typer.echo(f"Stack '{stack.title}' is empty. Save a diff with 'glstack save'.")
        return

    typer.echo(f"Stack: {stack.title}")
    for index, ref in stack.iter_indexed():
        marker = "* " if ref.branch == current else "  "
        mr_info = f" ({ref.mr})" if ref.mr else ""
        typer.echo(f"{marker}{index + 1}: {ref.branch} - {ref.subject}{mr_info}")


@app.command()
def sync() -> None:
    """Push diffs, create merge requests, rebase and drop merged diffs."""
    runner = get_runner()
    repo_root = get_repo_root_or_exit(runner)

    with handle_errors():
        settings = load_settings(runner)
        stack = stack_manager.load_current_stack(repo_root, runner)

        with make_mr_api(settings, runner) as mr_api:
            typer.echo("Syncing...")
            result = sync_engine.run_sync(stack, repo_root, runner, mr_api, settings.remote)

    if result.created_mrs:
        typer.echo(f"Created {len(result.created_mrs)} merge request(s):")
        for branch in result.created_mrs:
            typer.echo(f"  - {branch}")
    if result.removed:
        typer.echo(f"Removed {len(result.removed)} merged diff(s):")
        for branch in result.removed:
            typer.echo(f"  - {branch}")
    if result.closed:
        typer.echo(
            f"{len(result.closed)} diff(s) have closed merge requests and were left in the stack.",
            err=True,
        )
    if result.pushed:
        typer.echo(f"Force-pushed {len(result.pushed)} branch(es).")

    typer.echo("Sync finished!")


@app.command()
def reorder() -> None:
    """Change the order in which the diffs of the stack are merged."""
    runner = get_runner()
    repo_root = get_repo_root_or_exit(runner)

    with handle_errors():
        settings = load_settings(runner)
        stack = stack_manager.load_current_stack(repo_root, runner)

        # The client is only built once the new order is known to change something.
        with ExitStack() as clients:
            result = reorder_engine.run_reorder(
                stack,
                repo_root,
                runner,
                lambda: clients.enter_context(make_mr_api(settings, runner)),
                remote=settings.remote,
            )

    if not result.changed:
        typer.echo("No updates needed.")
        return

    for branch in result.retargeted:
        typer.echo(f"  Retargeted merge request of {branch}")
    typer.echo("Reordering complete.")


@app.command()
def switch(
    title: Optional[str] = typer.Argument(None, help="Title of the stack to switch to"),
) -> None:
    """Switch the current stack."""
    runner = get_runner()
    repo_root = get_repo_root_or_exit(runner)

    if not title:
        titles = stack_manager.list_stacks(repo_root)
        if not titles:
            typer.echo("Error: No stacks yet. Create one with 'glstack create'.", err=True)
            raise typer.Exit(1)

        for index, candidate in enumerate(titles, start=1):
            typer.echo(f"{index}: {candidate}")
        choice = typer.prompt("Choose a stack", type=int)
        if not 1 <= choice <= len(titles):
            typer.echo(f"Error: Choose a number between 1 and {len(titles)}.", err=True)
            raise typer.Exit(1)
        title = titles[choice - 1]

    with handle_errors():
        stack = stack_ops.switch_stack(title, repo_root, runner)

    typer.echo(f"Switched to stack: {stack.title} ({len(stack.refs)} diff(s))")


@app.command()
def first() -> None:
    """Check out the first diff in the stack."""
    runner = get_runner()
    repo_root = get_repo_root_or_exit(runner)

    with handle_errors():
        stack = stack_manager.load_current_stack(repo_root, runner)
        ref = stack_ops.switch_to(stack.first(), runner)

    switch_message(ref)


@app.command()
def last() -> None:
    """Check out the last diff in the stack."""
    runner = get_runner()
    repo_root = get_repo_root_or_exit(runner)

    with handle_errors():
        stack = stack_manager.load_current_stack(repo_root, runner)
        ref = stack_ops.switch_to(stack.last(), runner)

    switch_message(ref)


@app.command(name="next")
def next_() -> None:
    """Check out the next diff in the stack."""
    runner = get_runner()
    repo_root = get_repo_root_or_exit(runner)

    with handle_errors():
        stack = stack_manager.load_current_stack(repo_root, runner)
        ref = stack_ops.switch_to(stack_ops.next_ref(stack, runner), runner)

    switch_message(ref)


@app.command()
def prev() -> None:
    """Check out the previous diff in the stack."""
    runner = get_runner()
    repo_root = get_repo_root_or_exit(runner)

    with handle_errors():
        stack = stack_manager.load_current_stack(repo_root, runner)
        ref = stack_ops.switch_to(stack_ops.prev_ref(stack, runner), runner)

    switch_message(ref)


@app.command()
def move() -> None:
    """Pick any diff of the stack from a list and check it out."""
    runner = get_runner()
    repo_root = get_repo_root_or_exit(runner)

    with handle_errors():
        stack = stack_manager.load_current_stack(repo_root, runner)
        refs = list(stack.iter_refs())

    if not refs:
        typer.echo("Error: You are on an empty stack. To use a stack, first save a diff.", err=True)
        raise typer.Exit(1)

    for index, ref in enumerate(refs, start=1):
        typer.echo(f"{index}: {ref.branch} - {ref.subject}")

    choice = typer.prompt("Choose a diff to be checked out", type=int)
    if not 1 <= choice <= len(refs):
        typer.echo(f"Error: Choose a number between 1 and {len(refs)}.", err=True)
        raise typer.Exit(1)

    with handle_errors():
        ref = stack_ops.switch_to(refs[choice - 1], runner)

    switch_message(ref)


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
