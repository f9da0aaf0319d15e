"""Coordination of one review run per merge request commit.

``ReviewRunCoordinator.start`` is the single entry point used by the webhook
and the scheduler: it only enqueues. A worker later executes ``run_review``,
which fetches the merge request, claims the run through the guarded
transition, asks the model, publishes, and records the terminal state.

The guarded transition is a compare-and-swap on the ``mr_review_status``
row: the version column makes a concurrent update raise ``StaleDataError``
and the unique ``(project_id, mr_iid)`` pair makes a concurrent insert raise
``IntegrityError``. Either way the loser returns SKIPPED and does no work.
"""

import enum
import logging
import uuid
from collections.abc import Callable
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from review_bot.config.settings import Settings, settings
from review_bot.exceptions import AiReviewError, ReviewBotError
from review_bot.models.gitlab_types import ChangeRequestRef
from review_bot.models.review_status import ReviewStatus, RunState
from review_bot.services.comment_publisher import ReviewPublisher
from review_bot.services.gitlab_client import GitLabClient
from review_bot.services.review_analyzer import ReviewAnalyzer
from review_bot.utils.logging import review_log_context

logger = logging.getLogger(__name__)

STATUS_REASON_CHARS = 300


class ReviewOutcome(str, enum.Enum):
    SKIPPED = "SKIPPED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


def describe_error(error: BaseException) -> str:
    """Short ``CODE: message`` description of a failure."""
    message = str(error) or type(error).__name__
    if isinstance(error, ReviewBotError):
        return f"{error.code}: {message}"
    return f"{type(error).__name__}: {message}"


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "…"


class ReviewRunCoordinator:
    """Runs reviews with at most one RUNNING execution per commit."""

    def __init__(
        self,
        config: Settings,
        session_factory: Callable[[], Session] | None = None,
        gitlab: GitLabClient | None = None,
        analyzer: ReviewAnalyzer | None = None,
        publisher: ReviewPublisher | None = None,
        enqueue: Callable[[int, int], Any] | None = None,
    ) -> None:
        if session_factory is None:
            from review_bot.database.db import SessionLocal

            session_factory = SessionLocal
        self.config = config
        self.session_factory = session_factory
        self.gitlab = gitlab
        self.analyzer = analyzer
        self.publisher = publisher
        self._enqueue = enqueue

    # === ENTRY POINT ===

    def start(self, project_id: int, mr_iid: int) -> Any:
        """Schedule a review and return immediately.

        Returns the queued job, or ``None`` when reviews are disabled.

        Raises:
            ReviewQueueFullError: The queue is saturated
        """
        if not self.config.review_enabled:
            logger.info(f"Review disabled; ignoring trigger for {project_id}!{mr_iid}")
            return None

        enqueue = self._enqueue
        if enqueue is None:
            from review_bot.queue.config import enqueue_review

            enqueue = enqueue_review
        return enqueue(project_id, mr_iid)

    # === EXECUTION UNIT ===

    async def run_review(self, project_id: int, mr_iid: int) -> ReviewOutcome:
        """Execute one review run; the outcome is never an exception."""
        if self.gitlab is None or self.analyzer is None or self.publisher is None:
            raise RuntimeError("Coordinator was built without review collaborators")

        run_id = uuid.uuid4().hex[:8]
        with review_log_context(run_id, project_id, mr_iid):
            return await self._execute(run_id, project_id, mr_iid)

    async def _execute(
        self, run_id: str, project_id: int, mr_iid: int
    ) -> ReviewOutcome:
        tag = f"[{run_id}]"

        try:
            mr = await self.gitlab.get_merge_request(project_id, mr_iid)
        except Exception as e:
            logger.error(f"Cannot fetch MR {project_id}!{mr_iid}: {e}")
            return ReviewOutcome.FAILED

        if mr is None:
            logger.info(f"MR {project_id}!{mr_iid} not found; skipping")
            return ReviewOutcome.SKIPPED
        if not mr.is_reviewable:
            logger.info(
                f"MR {project_id}!{mr_iid} not reviewable "
                f"(state={mr.state}, draft={mr.draft}, wip={mr.work_in_progress}); skipping"
            )
            return ReviewOutcome.SKIPPED

        head_sha = (mr.sha or "").strip()
        if not head_sha:
            logger.info(f"MR {project_id}!{mr_iid} has no head commit; skipping")
            return ReviewOutcome.SKIPPED

        ref = ChangeRequestRef(project_id=project_id, mr_iid=mr_iid, head_sha=head_sha)
        if not self.try_mark_running(ref):
            return ReviewOutcome.SKIPPED

        logger.info(f"Review started for {ref}")
        await self._status(ref, f"{tag} Review started. SHA={head_sha[:8]}")

        try:
            diffs = await self.gitlab.get_diffs(project_id, mr_iid)
            await self._status(ref, f"{tag} Analyzing changes in {len(diffs)} files…")

            result = await self.analyzer.analyze(mr, diffs)

            await self._status(ref, f"{tag} Publishing review (score={result.score})…")
            await self.publisher.publish_review(project_id, mr_iid, result)
            await self.publisher.publish_inline_comments(
                project_id, mr_iid, result, diffs
            )
        except AiReviewError as e:
            reason = describe_error(e)
            logger.error(f"AI review failed for {ref}: {reason}")
            self.mark_failed(ref, reason)
            await self._status(
                ref,
                f"{tag} AI review unavailable, review not published. "
                f"Reason: {_truncate(reason, STATUS_REASON_CHARS)}",
            )
            return ReviewOutcome.FAILED
        except Exception as e:
            reason = describe_error(e)
            logger.exception(f"Review failed for {ref}")
            self.mark_failed(ref, reason)
            await self._status(
                ref, f"{tag} Review failed: {_truncate(reason, STATUS_REASON_CHARS)}"
            )
            return ReviewOutcome.FAILED

        self.mark_success(ref)
        await self._status(ref, f"{tag} Done. Score={result.score}/10")
        logger.info(f"Review finished for {ref} (score={result.score})")
        return ReviewOutcome.SUCCESS

    async def _status(self, ref: ChangeRequestRef, message: str) -> None:
        try:
            await self.publisher.publish_status(ref.project_id, ref.mr_iid, message)
        except Exception as e:
            logger.warning(f"Status note for {ref} failed: {e}")

    # === GUARDED TRANSITIONS ===

    def _load_status(
        self, session: Session, project_id: int, mr_iid: int
    ) -> ReviewStatus | None:
        stmt = select(ReviewStatus).where(
            ReviewStatus.project_id == project_id,
            ReviewStatus.mr_iid == mr_iid,
        )
        return session.execute(stmt).scalar_one_or_none()

    def try_mark_running(self, ref: ChangeRequestRef) -> bool:
        """Claim the run for ``ref.head_sha``; False means someone else has it.

        Rejects when the commit is already reviewed or already being reviewed.
        A lost race on insert or update is a rejection too.
        """
        session = self.session_factory()
        try:
            status = self._load_status(session, ref.project_id, ref.mr_iid)
            if status is None:
                status = ReviewStatus(
                    project_id=ref.project_id,
                    mr_iid=ref.mr_iid,
                    status=RunState.PENDING,
                    attempts=0,
                )
                session.add(status)
            elif status.is_done_for(ref.head_sha):
                logger.info(f"{ref} already reviewed; skipping")
                return False
            elif status.is_running_for(ref.head_sha):
                logger.info(f"{ref} already running; skipping")
                return False

            status.mark_running(ref.head_sha)
            session.commit()
            logger.debug(f"{ref} claimed (attempt {status.attempts})")
            return True
        except (StaleDataError, IntegrityError) as e:
            session.rollback()
            logger.info(f"{ref} lost the claim race: {type(e).__name__}")
            return False
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"{ref} could not be claimed: {e}")
            return False
        finally:
            session.close()

    def _finish(
        self, ref: ChangeRequestRef, apply: Callable[[ReviewStatus], None]
    ) -> bool:
        session = self.session_factory()
        try:
            status = self._load_status(session, ref.project_id, ref.mr_iid)
            if status is None or not status.is_running_for(ref.head_sha):
                logger.warning(
                    f"{ref} is no longer running for this commit; "
                    f"leaving status {status!r} untouched"
                )
                return False
            apply(status)
            session.commit()
            return True
        except StaleDataError:
            session.rollback()
            logger.warning(f"{ref} status changed concurrently; terminal update dropped")
            return False
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"{ref} terminal status not recorded: {e}")
            return False
        finally:
            session.close()

    def mark_success(self, ref: ChangeRequestRef) -> bool:
        return self._finish(ref, lambda status: status.mark_success(ref.head_sha))

    def mark_failed(self, ref: ChangeRequestRef, error: str) -> bool:
        return self._finish(ref, lambda status: status.mark_failed(ref.head_sha, error))


def build_review_coordinator(
    gitlab: GitLabClient, config: Settings = settings
) -> ReviewRunCoordinator:
    """Wire the production collaborators around an open GitLab client."""
    from review_bot.services.ai_gateway import get_ai_gateway
    from review_bot.services.rag_context import build_rag_context_assembler
    from review_bot.services.rag_service import PineconeVectorSearch

    assembler = build_rag_context_assembler(PineconeVectorSearch(config), config)
    analyzer = ReviewAnalyzer(config, get_ai_gateway(), assembler)
    publisher = ReviewPublisher(config, gitlab)
    return ReviewRunCoordinator(
        config, gitlab=gitlab, analyzer=analyzer, publisher=publisher
    )


async def execute_review(project_id: int, mr_iid: int) -> ReviewOutcome:
    """Run one review with a fresh GitLab client (worker entry point)."""
    async with GitLabClient(settings) as gitlab:
        coordinator = build_review_coordinator(gitlab)
        return await coordinator.run_review(project_id, mr_iid)
