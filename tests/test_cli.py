"""Tests for glstack CLI commands."""

import subprocess
from pathlib import Path

import pytest
from conftest import FakeMergeRequestAPI, get_current_branch
from pytest_mock import MockerFixture
from typer.testing import CliRunner

from glstack import stack_manager
from glstack.git_ops import StandardGitRunner
from glstack.main import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def fixed_prefix(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GLSTACK_BRANCH_PREFIX", "jo")


def save(path: Path, name: str, message: str) -> None:
    path.write_text(f"{name}\n")
    result = runner.invoke(app, ["save", "-m", message])
    assert result.exit_code == 0, result.output


def stack_branches(repo: Path, title: str = "feat") -> list[str]:
    return stack_manager.gather_stack_refs(repo, title).branches()


class TestCreateCommand:
    """Tests for glstack create."""

    def test_creates_stack(self, temp_git_repo: Path) -> None:
        """Create selects the stack and records the base branch."""
        result = runner.invoke(app, ["create", "feat"])

        assert result.exit_code == 0
        assert 'New stack created with title "feat".' in result.output
        assert stack_manager.get_current_stack_title(StandardGitRunner()) == "feat"
        base_file = stack_manager.get_stack_root(temp_git_repo, "feat") / "BASE_BRANCH"
        assert base_file.read_text() == "main"

    def test_prompts_for_title(self, temp_git_repo: Path) -> None:
        result = runner.invoke(app, ["create"], input="my feature\n")

        assert result.exit_code == 0
        assert stack_manager.stack_exists(temp_git_repo, "my-feature")

    def test_warns_about_replaced_characters(self, temp_git_repo: Path) -> None:
        result = runner.invoke(app, ["create", "hey@#$!^$#)()*1234hmm"])

        assert result.exit_code == 0
        assert "invalid characters have been replaced with dashes: hey-1234hmm" in result.output
        assert stack_manager.stack_exists(temp_git_repo, "hey-1234hmm")

    def test_fails_if_stack_exists(self, temp_git_repo: Path) -> None:
        runner.invoke(app, ["create", "feat"])
        result = runner.invoke(app, ["create", "feat"])

        assert result.exit_code != 0
        assert "already exists" in result.output

    def test_fails_outside_repo(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(app, ["create", "feat"])

        assert result.exit_code != 0
        assert "Not a git repository" in result.output


class TestSaveCommand:
    """Tests for glstack save."""

    def test_saves_diff(self, temp_git_repo: Path) -> None:
        runner.invoke(app, ["create", "feat"])
        (temp_git_repo / "a.txt").write_text("a\n")

        result = runner.invoke(app, ["save", "-m", "Add a"])

        assert result.exit_code == 0, result.output
        assert 'feat: Saved with message: "Add a".' in result.output
        branches = stack_branches(temp_git_repo)
        assert len(branches) == 1
        assert branches[0].startswith("jo-feat-")
        assert get_current_branch() == branches[0]

    def test_description_from_editor(self, temp_git_repo: Path, mocker: MockerFixture) -> None:
        mocker.patch("click.edit", return_value="From editor\n# comment\n")
        runner.invoke(app, ["create", "feat"])
        (temp_git_repo / "a.txt").write_text("a\n")

        result = runner.invoke(app, ["save"])

        assert result.exit_code == 0, result.output
        ref = stack_manager.gather_stack_refs(temp_git_repo, "feat").first()
        assert ref.description == "From editor"

    def test_no_changes(self, temp_git_repo: Path) -> None:
        runner.invoke(app, ["create", "feat"])

        result = runner.invoke(app, ["save", "-m", "Nothing"])

        assert result.exit_code == 1
        assert "No changes to save." in result.output

    def test_message_and_description_conflict(self, temp_git_repo: Path) -> None:
        result = runner.invoke(app, ["save", "-m", "a", "-d", "b"])

        assert result.exit_code != 0

    def test_requires_current_stack(self, temp_git_repo: Path) -> None:
        (temp_git_repo / "a.txt").write_text("a\n")

        result = runner.invoke(app, ["save", "-m", "Add a"])

        assert result.exit_code == 1
        assert "No current stack" in result.output


class TestAmendCommand:
    """Tests for glstack amend."""

    def test_amends_current_diff(self, temp_git_repo: Path) -> None:
        runner.invoke(app, ["create", "feat"])
        save(temp_git_repo / "a.txt", "a", "Add a")
        (temp_git_repo / "a.txt").write_text("a2\n")

        result = runner.invoke(app, ["amend", "-d", "Add a v2"])

        assert result.exit_code == 0, result.output
        ref = stack_manager.gather_stack_refs(temp_git_repo, "feat").first()
        assert ref.description == "Add a v2"


class TestListAndNavigation:
    """Tests for glstack list, first, last, next, prev and move."""

    @pytest.fixture
    def three_diffs(self, temp_git_repo: Path) -> list[str]:
        runner.invoke(app, ["create", "feat"])
        save(temp_git_repo / "a.txt", "a", "Add a")
        save(temp_git_repo / "b.txt", "b", "Add b")
        save(temp_git_repo / "c.txt", "c", "Add c")
        return stack_branches(temp_git_repo)

    def test_list(self, three_diffs: list[str]) -> None:
        result = runner.invoke(app, ["list"])

        assert result.exit_code == 0
        assert "Stack: feat" in result.output
        assert f"* 3: {three_diffs[2]} - Add c" in result.output
        assert f"  1: {three_diffs[0]} - Add a" in result.output

    def test_list_empty_stack(self, temp_git_repo: Path) -> None:
        runner.invoke(app, ["create", "feat"])

        result = runner.invoke(app, ["list"])

        assert result.exit_code == 0
        assert "is empty" in result.output

    def test_first_and_last(self, three_diffs: list[str]) -> None:
        result = runner.invoke(app, ["first"])
        assert result.exit_code == 0
        assert f"Switched to branch: {three_diffs[0]} - Add a" in result.output
        assert get_current_branch() == three_diffs[0]

        runner.invoke(app, ["last"])
        assert get_current_branch() == three_diffs[2]

    def test_next_and_prev(self, three_diffs: list[str]) -> None:
        runner.invoke(app, ["prev"])
        assert get_current_branch() == three_diffs[1]

        runner.invoke(app, ["next"])
        assert get_current_branch() == three_diffs[2]

    def test_next_at_last(self, three_diffs: list[str]) -> None:
        result = runner.invoke(app, ["next"])

        assert result.exit_code == 1
        assert "already at the last diff" in result.output

    def test_first_on_empty_stack(self, temp_git_repo: Path) -> None:
        runner.invoke(app, ["create", "feat"])

        result = runner.invoke(app, ["first"])

        assert result.exit_code == 1
        assert "empty stack" in result.output

    def test_move(self, three_diffs: list[str]) -> None:
        result = runner.invoke(app, ["move"], input="2\n")

        assert result.exit_code == 0, result.output
        assert get_current_branch() == three_diffs[1]


class TestSwitchCommand:
    """Tests for glstack switch."""

    def test_switch_by_title(self, temp_git_repo: Path) -> None:
        runner.invoke(app, ["create", "one"])
        runner.invoke(app, ["create", "two"])

        result = runner.invoke(app, ["switch", "one"])

        assert result.exit_code == 0
        assert stack_manager.get_current_stack_title(StandardGitRunner()) == "one"

    def test_switch_from_list(self, temp_git_repo: Path) -> None:
        runner.invoke(app, ["create", "one"])
        runner.invoke(app, ["create", "two"])

        result = runner.invoke(app, ["switch"], input="2\n")

        assert result.exit_code == 0
        assert stack_manager.get_current_stack_title(StandardGitRunner()) == "two"

    def test_switch_to_missing_stack(self, temp_git_repo: Path) -> None:
        result = runner.invoke(app, ["switch", "nope"])

        assert result.exit_code == 1
        assert "does not exist" in result.output


class TestSyncCommand:
    """Tests for glstack sync against a local bare remote."""

    def test_creates_mrs_then_is_idempotent(
        self, temp_git_repo_with_remote: Path, mocker: MockerFixture
    ) -> None:
        mr_api = FakeMergeRequestAPI()
        mocker.patch("glstack.main.make_mr_api", return_value=mr_api)
        runner.invoke(app, ["create", "feat"])
        save(temp_git_repo_with_remote / "a.txt", "a", "Add a")
        save(temp_git_repo_with_remote / "b.txt", "b", "Add b")
        branches = stack_branches(temp_git_repo_with_remote)

        result = runner.invoke(app, ["sync"])

        assert result.exit_code == 0, result.output
        assert "Sync finished!" in result.output
        assert [(mr.source_branch, mr.target_branch) for mr in mr_api.created] == [
            (branches[0], "main"),
            (branches[1], branches[0]),
        ]
        remote_heads = subprocess.run(
            ["git", "ls-remote", "--heads", "origin"], check=True, capture_output=True, text=True
        ).stdout
        assert all(branch in remote_heads for branch in branches)

        again = runner.invoke(app, ["sync"])

        assert again.exit_code == 0, again.output
        assert len(mr_api.created) == 2
        assert mr_api.closed

    def test_merged_diff_is_removed(
        self, temp_git_repo_with_remote: Path, mocker: MockerFixture
    ) -> None:
        mr_api = FakeMergeRequestAPI()
        mocker.patch("glstack.main.make_mr_api", return_value=mr_api)
        runner.invoke(app, ["create", "feat"])
        save(temp_git_repo_with_remote / "a.txt", "a", "Add a")
        save(temp_git_repo_with_remote / "b.txt", "b", "Add b")
        branches = stack_branches(temp_git_repo_with_remote)
        runner.invoke(app, ["sync"])

        mr_api.mrs[branches[1]].state = "merged"
        result = runner.invoke(app, ["sync"])

        assert result.exit_code == 0, result.output
        assert stack_branches(temp_git_repo_with_remote) == [branches[0]]
        local = subprocess.run(
            ["git", "branch", "--list", branches[1]], check=True, capture_output=True, text=True
        ).stdout
        assert local.strip() == ""


class TestReorderCommand:
    """Tests for glstack reorder."""

    def test_reorders_stack(self, temp_git_repo: Path, mocker: MockerFixture) -> None:
        mocker.patch("glstack.main.make_mr_api", return_value=FakeMergeRequestAPI())
        runner.invoke(app, ["create", "feat"])
        save(temp_git_repo / "a.txt", "a", "Add a")
        save(temp_git_repo / "b.txt", "b", "Add b")
        first, second = stack_branches(temp_git_repo)
        mocker.patch("glstack.reorder_engine._default_edit", return_value=f"{second}\n{first}\n")

        result = runner.invoke(app, ["reorder"])

        assert result.exit_code == 0, result.output
        assert "Reordering complete." in result.output
        assert stack_branches(temp_git_repo) == [second, first]

    def test_no_updates_needed(self, temp_git_repo: Path, mocker: MockerFixture) -> None:
        mocker.patch("glstack.main.make_mr_api", return_value=FakeMergeRequestAPI())
        runner.invoke(app, ["create", "feat"])
        save(temp_git_repo / "a.txt", "a", "Add a")
        mocker.patch("glstack.reorder_engine._default_edit", side_effect=lambda text: text)

        result = runner.invoke(app, ["reorder"])

        assert result.exit_code == 0, result.output
        assert "No updates needed." in result.output

    def test_missing_branch_is_rejected(self, temp_git_repo: Path, mocker: MockerFixture) -> None:
        mocker.patch("glstack.main.make_mr_api", return_value=FakeMergeRequestAPI())
        runner.invoke(app, ["create", "feat"])
        save(temp_git_repo / "a.txt", "a", "Add a")
        save(temp_git_repo / "b.txt", "b", "Add b")
        first, second = stack_branches(temp_git_repo)
        mocker.patch("glstack.reorder_engine._default_edit", return_value=f"{second}\n")

        result = runner.invoke(app, ["reorder"])

        assert result.exit_code == 1
        assert "Missing one or more refs" in result.output
        assert stack_branches(temp_git_repo) == [first, second]

    def test_unchanged_order_needs_no_gitlab(self, temp_git_repo: Path, mocker: MockerFixture) -> None:
        """Without a remote there is no GitLab project, which only matters once refs move."""
        runner.invoke(app, ["create", "feat"])
        save(temp_git_repo / "a.txt", "a", "Add a")
        mocker.patch("glstack.reorder_engine._default_edit", side_effect=lambda text: text)

        result = runner.invoke(app, ["reorder"])

        assert result.exit_code == 0, result.output
        assert "No updates needed." in result.output

    def test_client_is_closed(self, temp_git_repo: Path, mocker: MockerFixture) -> None:
        mr_api = FakeMergeRequestAPI()
        mocker.patch("glstack.main.make_mr_api", return_value=mr_api)
        runner.invoke(app, ["create", "feat"])
        save(temp_git_repo / "a.txt", "a", "Add a")
        save(temp_git_repo / "b.txt", "b", "Add b")
        first, second = stack_branches(temp_git_repo)
        mocker.patch("glstack.reorder_engine._default_edit", return_value=f"{second}\n{first}\n")

        result = runner.invoke(app, ["reorder"])

        assert result.exit_code == 0, result.output
        assert mr_api.closed

    def test_requires_terminal(self, temp_git_repo: Path) -> None:
        runner.invoke(app, ["create", "feat"])
        save(temp_git_repo / "a.txt", "a", "Add a")

        result = runner.invoke(app, ["reorder"])

        assert result.exit_code == 1
        assert "interactive terminal" in result.output
