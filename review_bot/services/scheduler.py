"""Polling fallback that triggers reviews for recently updated merge requests."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from review_bot.config.settings import Settings
from review_bot.services.gitlab_client import GitLabClient
from review_bot.services.review_coordinator import ReviewRunCoordinator

logger = logging.getLogger(__name__)


class MergeRequestPoller:
    """Finds open merge requests updated within the look-back window.

    Every hit is passed to ``ReviewRunCoordinator.start``; commits that were
    already reviewed are skipped later by the guarded transition, so polling
    the same MR repeatedly is harmless.
    """

    def __init__(
        self,
        config: Settings,
        gitlab: GitLabClient,
        coordinator: ReviewRunCoordinator,
    ) -> None:
        self.config = config
        self.gitlab = gitlab
        self.coordinator = coordinator

    async def poll_once(self, now: datetime | None = None) -> int:
        """Trigger reviews for every configured project; return the count."""
        if not self.config.project_ids:
            logger.debug("No project ids configured for polling")
            return 0

        now = now or datetime.now(timezone.utc)
        updated_after = now - timedelta(minutes=self.config.scheduler_look_back_minutes)
        triggered = 0

        for project_id in self.config.project_ids:
            try:
                mrs = await self.gitlab.list_open_merge_requests_updated_after(
                    project_id,
                    updated_after,
                    per_page=self.config.scheduler_per_project_limit,
                )
                for mr in mrs:
                    await asyncio.to_thread(self.coordinator.start, project_id, mr.iid)
                    triggered += 1
            except Exception as e:
                logger.error(f"Polling project {project_id} failed: {e}")

        logger.info(f"Scheduler poll triggered {triggered} reviews")
        return triggered

    async def run_forever(self) -> None:
        logger.info(
            f"Scheduler started for projects {self.config.project_ids} "
            f"(every {self.config.scheduler_interval_seconds:.0f}s)"
        )
        while True:
            await self.poll_once()
            await asyncio.sleep(self.config.scheduler_interval_seconds)
