"""SQLAlchemy model tracking the review run status of each merge request."""

import enum
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

MAX_ERROR_LENGTH = 2000


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class RunState(str, enum.Enum):
    """Lifecycle state of the latest review run for a merge request."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def truncate_error(message: str | None, limit: int = MAX_ERROR_LENGTH) -> str | None:
    """Cut an error message so it fits the ``last_error`` column."""
    if message is None or len(message) <= limit:
        return message
    return message[: limit - 1] + "…"


class ReviewStatus(Base):
    """
    One row per merge request, keyed by ``(project_id, mr_iid)``.

    The row is created lazily on the first attempt and is never deleted;
    ``attempts`` keeps counting across commits. ``version`` is the optimistic
    lock: every UPDATE is issued with ``WHERE version = <observed>`` and a
    concurrent writer makes the flush raise ``StaleDataError``.
    """

    __tablename__ = "mr_review_status"
    __table_args__ = (
        UniqueConstraint(
            "project_id", "mr_iid", name="uk_mr_review_status_project_mr"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # GitLab identifiers
    project_id: Mapped[int] = mapped_column(
        Integer, nullable=False, comment="GitLab project id"
    )
    mr_iid: Mapped[int] = mapped_column(
        Integer, nullable=False, comment="Merge request iid within the project"
    )

    # Run state
    head_sha: Mapped[str | None] = mapped_column(
        String(64), nullable=True, comment="Head commit of the latest claimed run"
    )
    status: Mapped[RunState] = mapped_column(
        Enum(RunState, name="review_run_state", native_enum=False, length=16),
        nullable=False,
        default=RunState.PENDING,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        """String representation for debugging."""
        sha = (self.head_sha or "")[:8]
        return (
            f"<ReviewStatus(project={self.project_id}, mr={self.mr_iid}, "
            f"sha={sha}, status={self.status}, attempts={self.attempts})>"
        )

    def is_done_for(self, head_sha: str) -> bool:
        """True when this exact commit was already reviewed successfully."""
        return self.status == RunState.SUCCESS and self.head_sha == head_sha

    def is_running_for(self, head_sha: str) -> bool:
        """True when a run for this exact commit is already in progress."""
        return self.status == RunState.RUNNING and self.head_sha == head_sha

    def mark_running(self, head_sha: str) -> None:
        self.status = RunState.RUNNING
        self.head_sha = head_sha
        self.attempts = (self.attempts or 0) + 1
        self.last_error = None
        self.started_at = _utcnow()
        self.finished_at = None

    def mark_success(self, head_sha: str) -> None:
        self.status = RunState.SUCCESS
        self.head_sha = head_sha
        self.last_error = None
        self.finished_at = _utcnow()

    def mark_failed(self, head_sha: str, error: str | None) -> None:
        self.status = RunState.FAILED
        self.head_sha = head_sha
        self.last_error = truncate_error(error)
        self.finished_at = _utcnow()
