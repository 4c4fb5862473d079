"""GitLab merge request operations for glstack.

The stack engines only see the MergeRequestAPI protocol. GitLabClient is the
production implementation on top of the GitLab REST v4 API.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional, Protocol
from urllib.parse import quote, urlparse

import httpx

from glstack.exceptions import MergeRequestError

logger = logging.getLogger(__name__)

MERGED_STATE = "merged"
CLOSED_STATE = "closed"
OPENED_STATE = "opened"

DEFAULT_TIMEOUT = 30.0

_SCP_LIKE_RE = re.compile(r"^(?:[^@/]+@)?(?P<host>[^:/]+):(?P<path>.+)$")


@dataclass
class MergeRequest:
    """The parts of a GitLab merge request the stack cares about."""

    iid: int
    project_id: int
    web_url: str
    state: str
    source_branch: str
    target_branch: str
    title: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "MergeRequest":
        return cls(
            iid=data["iid"],
            project_id=data["project_id"],
            web_url=data["web_url"],
            state=data["state"],
            source_branch=data["source_branch"],
            target_branch=data["target_branch"],
            title=data.get("title") or "",
        )


class MergeRequestAPI(Protocol):
    """Merge request operations used by sync and reorder."""

    def create_merge_request(
        self,
        source_branch: str,
        target_branch: str,
        title: str,
        remove_source_branch: bool = True,
    ) -> MergeRequest: ...

    def get_merge_request_by_branch(self, branch: str, state: str = "all") -> MergeRequest: ...

    def find_open_merge_request(self, branch: str) -> Optional[MergeRequest]: ...

    def get_merge_request(self, iid: int) -> MergeRequest: ...

    def update_target_branch(self, mr: MergeRequest, target_branch: str) -> MergeRequest: ...


def parse_project_path(remote_url: str) -> tuple[str, str]:
    """Split a git remote URL into (host, "namespace/project").

    Handles https://, ssh:// and scp-like (git@host:group/project.git) URLs.

    Raises:
        MergeRequestError: If the URL has no project path.
    """
    if "://" in remote_url:
        parsed = urlparse(remote_url)
        host = parsed.hostname or ""
        path = parsed.path
    else:
        match = _SCP_LIKE_RE.match(remote_url)
        if not match:
            raise MergeRequestError(f"Can't parse a GitLab project from remote URL '{remote_url}'.")
        host = match.group("host")
        path = match.group("path")

    path = path.strip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]

    if not host or "/" not in path:
        raise MergeRequestError(f"Can't parse a GitLab project from remote URL '{remote_url}'.")

    return host, path


class GitLabClient:
    """MergeRequestAPI over the GitLab REST API.

    The current user (used as assignee) and the target project id are looked
    up on first use and cached. Calls are never retried.
    """

    def __init__(
        self,
        host: str,
        project_path: str,
        token: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.project_path = project_path
        base_url = host if "://" in host else f"https://{host}"
        headers = {"PRIVATE-TOKEN": token} if token else {}
        self._client = httpx.Client(
            base_url=f"{base_url.rstrip('/')}/api/v4",
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self._user_id: Optional[int] = None
        self._project_id: Optional[int] = None

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "GitLabClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def _project(self) -> str:
        return quote(self.project_path, safe="")

    def _request(self, operation: str, method: str, url: str, **kwargs: Any) -> Any:
        logger.debug("%s %s", method, url)
        try:
            response = self._client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise MergeRequestError(
                f"Error {operation}: {e.response.status_code} {e.response.text.strip()}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise MergeRequestError(f"Error {operation}: {e}") from e

        return response.json()

    def current_user_id(self) -> int:
        if self._user_id is None:
            data = self._request("getting current user", "GET", "/user")
            self._user_id = data["id"]
        return self._user_id

    def target_project_id(self) -> int:
        if self._project_id is None:
            data = self._request("getting target project", "GET", f"/projects/{self._project}")
            self._project_id = data["id"]
        return self._project_id

    def create_merge_request(
        self,
        source_branch: str,
        target_branch: str,
        title: str,
        remove_source_branch: bool = True,
    ) -> MergeRequest:
        payload = {
            "title": title,
            "source_branch": source_branch,
            "target_branch": target_branch,
            "assignee_id": self.current_user_id(),
            "remove_source_branch": remove_source_branch,
            "target_project_id": self.target_project_id(),
        }
        data = self._request(
            "creating merge request with the API",
            "POST",
            f"/projects/{self._project}/merge_requests",
            json=payload,
        )
        return MergeRequest.from_api(data)

    def _list_by_branch(self, branch: str, state: str) -> list[MergeRequest]:
        data = self._request(
            f"listing merge requests for branch '{branch}'",
            "GET",
            f"/projects/{self._project}/merge_requests",
            params={"source_branch": branch, "state": state},
        )
        return [MergeRequest.from_api(item) for item in data]

    def get_merge_request_by_branch(self, branch: str, state: str = "all") -> MergeRequest:
        """Most recent merge request whose source is branch.

        Raises:
            MergeRequestError: If there is none.
        """
        mrs = self._list_by_branch(branch, state)
        if not mrs:
            raise MergeRequestError(f"No merge request found for branch '{branch}'.")
        return mrs[0]

    def find_open_merge_request(self, branch: str) -> Optional[MergeRequest]:
        mrs = self._list_by_branch(branch, OPENED_STATE)
        return mrs[0] if mrs else None

    def get_merge_request(self, iid: int) -> MergeRequest:
        data = self._request(
            f"getting merge request !{iid}",
            "GET",
            f"/projects/{self._project}/merge_requests/{iid}",
        )
        return MergeRequest.from_api(data)

    def update_target_branch(self, mr: MergeRequest, target_branch: str) -> MergeRequest:
        data = self._request(
            f"updating merge request !{mr.iid}",
            "PUT",
            f"/projects/{mr.project_id}/merge_requests/{mr.iid}",
            json={"target_branch": target_branch},
        )
        return MergeRequest.from_api(data)
