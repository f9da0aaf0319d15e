"""Publication of reviews, inline comments and status notes to GitLab."""

import asyncio
import logging

from review_bot.config.settings import Settings
from review_bot.models.gitlab_types import DiffFile
from review_bot.models.outputs import ReviewResult
from review_bot.services.gitlab_client import GitLabClient
from review_bot.services.inline_comment_selector import (
    InlineCommentLimits,
    InlineCommentSelector,
    index_diffs_by_path,
)

logger = logging.getLogger(__name__)


class ReviewPublisher:
    """Posts review artifacts, honouring the dry-run and feature flags."""

    def __init__(
        self,
        config: Settings,
        gitlab: GitLabClient,
        selector: InlineCommentSelector | None = None,
    ) -> None:
        self.config = config
        self.gitlab = gitlab
        self.selector = selector or InlineCommentSelector()

    async def publish_review(
        self, project_id: int, mr_iid: int, result: ReviewResult
    ) -> None:
        """Post the summary note. Failures propagate."""
        markdown = result.format_summary_markdown()
        if self.config.dry_run:
            logger.info(
                f"[dry-run] Would post review summary to MR !{mr_iid} "
                f"({len(markdown)} chars)"
            )
            return
        await self.gitlab.post_summary_comment(project_id, mr_iid, markdown)
        logger.info(f"Posted review summary to MR !{mr_iid} (score={result.score})")

    async def publish_inline_comments(
        self,
        project_id: int,
        mr_iid: int,
        result: ReviewResult,
        diffs: list[DiffFile],
    ) -> int:
        """Post selected inline comments one by one; return how many landed.

        A failing comment is logged and skipped. Nothing here raises, so an
        already published summary always stands.
        """
        if not self.config.inline_enabled:
            logger.debug("Inline comments disabled")
            return 0
        if self.config.dry_run:
            logger.info(f"[dry-run] Skipping inline comments for MR !{mr_iid}")
            return 0
        if not diffs:
            return 0

        comments = self.selector.select(
            result.findings,
            index_diffs_by_path(diffs),
            InlineCommentLimits.from_settings(self.config),
        )
        if not comments:
            logger.info(f"No inline comments to publish for MR !{mr_iid}")
            return 0

        try:
            diff_refs = await self.gitlab.get_diff_refs(project_id, mr_iid)
        except Exception as e:
            logger.error(f"Cannot publish inline comments for MR !{mr_iid}: {e}")
            return 0

        delay = self.config.inline_publish_delay_ms / 1000
        posted = 0
        for index, comment in enumerate(comments):
            if index and delay > 0:
                await asyncio.sleep(delay)
            try:
                await self.gitlab.post_inline_comment(
                    project_id,
                    mr_iid,
                    diff_refs,
                    comment.old_path,
                    comment.new_path,
                    comment.line,
                    comment.body,
                )
                posted += 1
            except Exception as e:
                logger.warning(
                    f"Failed to post inline comment on {comment.new_path}:{comment.line} "
                    f"in MR !{mr_iid}: {e}"
                )

        logger.info(f"Posted {posted}/{len(comments)} inline comments to MR !{mr_iid}")
        return posted

    async def publish_status(self, project_id: int, mr_iid: int, message: str) -> None:
        """Post a short progress note. Never raises."""
        if not self.config.status_comments_enabled:
            return
        if self.config.dry_run:
            logger.info(f"[dry-run] Status for MR !{mr_iid}: {message}")
            return
        try:
            await self.gitlab.post_summary_comment(project_id, mr_iid, message)
        except Exception as e:
            logger.warning(f"Failed to post status note to MR !{mr_iid}: {e}")
