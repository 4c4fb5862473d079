"""glstack - stacked diffs for GitLab."""

__version__ = "0.1.0"
