"""Data models for the merge request review bot."""

from .gitlab_types import ChangeRequestRef, DiffFile, DiffRefs, MergeRequest
from .outputs import (
    Category,
    Finding,
    InlineComment,
    RagBlock,
    ReviewResult,
    Severity,
)
from .review_status import Base, ReviewStatus, RunState

__all__ = [
    "Base",
    "Category",
    "ChangeRequestRef",
    "DiffFile",
    "DiffRefs",
    "Finding",
    "InlineComment",
    "MergeRequest",
    "RagBlock",
    "ReviewResult",
    "ReviewStatus",
    "RunState",
    "Severity",
]
