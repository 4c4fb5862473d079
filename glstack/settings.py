"""Settings for glstack, read from the environment and local git config."""

from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, ValidationError, field_validator

from glstack import git_ops
from glstack.exceptions import ConfigError
from glstack.git_ops import GitRunner

DEFAULT_HOST = "gitlab.com"
DEFAULT_BRANCH_PREFIX = "glab-stack"


class Settings(BaseModel):
    """Runtime settings.

    Attributes:
        remote: Git remote that stack branches are pushed to.
        host: GitLab host; when unset it is taken from the remote URL.
        token: Personal access token for the GitLab API.
        branch_prefix: Prefix for branches created by ``glstack save``.
    """

    remote: str = git_ops.DEFAULT_REMOTE
    host: Optional[str] = None
    token: Optional[str] = None
    branch_prefix: Optional[str] = None

    @field_validator("remote")
    @classmethod
    def _remote_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("remote must not be empty")
        return value

    def resolved_branch_prefix(self) -> str:
        """Configured prefix, else $USER, else a fixed fallback."""
        return self.branch_prefix or os.environ.get("USER") or DEFAULT_BRANCH_PREFIX


def load_settings(runner: Optional[GitRunner] = None) -> Settings:
    """Build Settings from the environment, then local git config overrides.

    Raises:
        ConfigError: If a value fails validation.
    """
    values: dict[str, Optional[str]] = {
        "remote": os.environ.get("GLSTACK_REMOTE"),
        "host": os.environ.get("GITLAB_HOST"),
        "token": os.environ.get("GITLAB_TOKEN") or os.environ.get("GLAB_TOKEN"),
        "branch_prefix": os.environ.get("GLSTACK_BRANCH_PREFIX"),
    }

    if runner is not None:
        values["remote"] = git_ops.get_config("glab.remote", runner) or values["remote"]
        values["branch_prefix"] = (
            git_ops.get_config("glab.branchprefix", runner) or values["branch_prefix"]
        )

    try:
        return Settings(**{key: value for key, value in values.items() if value is not None})
    except ValidationError as e:
        raise ConfigError(f"Invalid settings: {e}") from e
