"""GitLab API data models."""

from pydantic import BaseModel, ConfigDict, Field


class DiffRefs(BaseModel):
    """Commit triple that anchors a diff position on GitLab."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    base_sha: str | None = Field(default=None, alias="base_commit_sha")
    start_sha: str | None = Field(default=None, alias="start_commit_sha")
    head_sha: str | None = Field(default=None, alias="head_commit_sha")

    @property
    def is_complete(self) -> bool:
        return bool(self.base_sha and self.start_sha and self.head_sha)


class MergeRequest(BaseModel):
    """Merge request metadata as returned by ``GET /merge_requests/:iid``."""

    model_config = ConfigDict(extra="ignore")

    iid: int
    project_id: int
    title: str | None = None
    description: str | None = None
    state: str | None = None
    draft: bool = False
    work_in_progress: bool = False
    sha: str | None = None
    web_url: str | None = None
    diff_refs: DiffRefs | None = None

    @property
    def is_reviewable(self) -> bool:
        """Open, not a draft and not marked as work in progress."""
        return self.state == "opened" and not self.draft and not self.work_in_progress


class DiffFile(BaseModel):
    """One changed file of a merge request.

    Parsed from the ``changes`` array of ``GET /merge_requests/:iid/changes``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    old_path: str | None = None
    new_path: str | None = None
    diff_text: str | None = Field(default=None, alias="diff")
    is_new: bool = Field(default=False, alias="new_file")
    is_deleted: bool = Field(default=False, alias="deleted_file")
    is_renamed: bool = Field(default=False, alias="renamed_file")

    @property
    def path(self) -> str | None:
        """New path, falling back to the old one."""
        return self.new_path or self.old_path

    @property
    def has_diff(self) -> bool:
        return bool(self.diff_text and self.diff_text.strip())

    @property
    def status_label(self) -> str:
        if self.is_new:
            return "ADDED"
        if self.is_deleted:
            return "DELETED"
        if self.is_renamed:
            return f"RENAMED from {self.old_path}"
        return "MODIFIED"


class ChangeRequestRef(BaseModel):
    """Identifies one commit of one merge request."""

    model_config = ConfigDict(frozen=True)

    project_id: int
    mr_iid: int
    head_sha: str

    def __str__(self) -> str:
        return f"{self.project_id}!{self.mr_iid}@{self.head_sha[:8]}"
