"""Async client for the GitLab merge request REST API."""

import logging
from datetime import datetime
from typing import Any

import httpx

from review_bot.config.settings import Settings
from review_bot.exceptions import GitLabClientError
from review_bot.models.gitlab_types import DiffFile, DiffRefs, MergeRequest

logger = logging.getLogger(__name__)


class GitLabClient:
    """
    Thin wrapper over the endpoints the review pipeline needs.

    Non-2xx responses and transport failures raise ``GitLabClientError``;
    a missing merge request is reported as ``None``.

    Usage:
        async with GitLabClient(settings) as gitlab:
            mr = await gitlab.get_merge_request(42, 7)
    """

    def __init__(
        self, config: Settings, http_client: httpx.AsyncClient | None = None
    ) -> None:
        self.config = config
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=config.gitlab_api_url.rstrip("/"),
            headers={"PRIVATE-TOKEN": config.gitlab_token or ""},
            timeout=httpx.Timeout(
                config.gitlab_read_timeout, connect=config.gitlab_connect_timeout
            ),
        )

    async def __aenter__(self) -> "GitLabClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    @staticmethod
    def _mr_path(project_id: int, mr_iid: int) -> str:
        return f"/projects/{project_id}/merge_requests/{mr_iid}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise GitLabClientError(
                f"GitLab {method} {path} failed: {type(e).__name__}: {e}"
            ) from e

        if response.is_success:
            return response
        raise GitLabClientError(
            f"GitLab {method} {path} returned {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )

    async def get_merge_request(self, project_id: int, mr_iid: int) -> MergeRequest | None:
        try:
            response = await self._request("GET", self._mr_path(project_id, mr_iid))
        except GitLabClientError as e:
            if e.status_code == 404:
                logger.info(f"MR !{mr_iid} not found in project {project_id}")
                return None
            raise
        return MergeRequest.model_validate(response.json())

    async def get_diffs(self, project_id: int, mr_iid: int) -> list[DiffFile]:
        response = await self._request(
            "GET", f"{self._mr_path(project_id, mr_iid)}/changes"
        )
        changes = response.json().get("changes") or []
        diffs = [DiffFile.model_validate(change) for change in changes]
        logger.debug(f"Fetched {len(diffs)} diffs for MR !{mr_iid}")
        return diffs

    async def post_summary_comment(
        self, project_id: int, mr_iid: int, markdown: str
    ) -> None:
        await self._request(
            "POST",
            f"{self._mr_path(project_id, mr_iid)}/notes",
            json={"body": markdown},
        )

    async def post_inline_comment(
        self,
        project_id: int,
        mr_iid: int,
        diff_refs: DiffRefs,
        old_path: str,
        new_path: str,
        line: int,
        body: str,
    ) -> None:
        form = {
            "body": body,
            "position[base_sha]": diff_refs.base_sha or "",
            "position[start_sha]": diff_refs.start_sha or "",
            "position[head_sha]": diff_refs.head_sha or "",
            "position[position_type]": "text",
            "position[old_path]": old_path,
            "position[new_path]": new_path,
            "position[new_line]": str(line),
        }
        await self._request(
            "POST", f"{self._mr_path(project_id, mr_iid)}/discussions", data=form
        )

    async def get_diff_refs(self, project_id: int, mr_iid: int) -> DiffRefs:
        """Commit triple of the latest diff version, falling back to the MR."""
        response = await self._request(
            "GET", f"{self._mr_path(project_id, mr_iid)}/versions"
        )
        versions = response.json() or []
        if versions:
            refs = DiffRefs.model_validate(versions[0])
            if refs.is_complete:
                return refs

        mr = await self.get_merge_request(project_id, mr_iid)
        if mr is not None and mr.diff_refs is not None and mr.diff_refs.is_complete:
            return mr.diff_refs
        raise GitLabClientError(f"No diff refs available for MR !{mr_iid}")

    async def list_open_merge_requests_updated_after(
        self, project_id: int, updated_after: datetime, per_page: int = 10
    ) -> list[MergeRequest]:
        response = await self._request(
            "GET",
            f"/projects/{project_id}/merge_requests",
            params={
                "state": "opened",
                "order_by": "updated_at",
                "sort": "desc",
                "per_page": per_page,
                "updated_after": updated_after.isoformat(),
            },
        )
        return [MergeRequest.model_validate(item) for item in response.json() or []]
