"""Redis-backed queue configuration for merge request review jobs."""

from __future__ import annotations

import asyncio
import logging
import uuid

from redis import Redis
from rq import Queue
from rq.exceptions import NoSuchJobError
from rq.job import Job

from review_bot.config.settings import settings
from review_bot.exceptions import ReviewQueueFullError

logger = logging.getLogger(__name__)

QUEUE_NAME = "merge-request-reviews"
JOB_TIMEOUT_SECONDS = settings.worker_job_timeout
MAX_QUEUE_DEPTH = settings.review_queue_max_depth
# Compared with ==, JobStatus is a str enum
PENDING_STATUSES = ("queued", "deferred", "scheduled")

# Single Redis connection used by the queue and the workers
if settings.redis_url:
    redis_connection = Redis.from_url(settings.redis_url, socket_timeout=5)
else:
    redis_connection = Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        password=settings.redis_password,
        socket_timeout=5,
    )
redis_conn = redis_connection  # alias for worker script imports

review_queue = Queue(QUEUE_NAME, connection=redis_connection)


def get_all_queues() -> list[Queue]:
    """Return all configured queues."""
    return [review_queue]


def _job_id(project_id: int, mr_iid: int) -> str:
    """Build a deterministic job id so pending triggers for one MR coalesce."""
    return f"review-project-{project_id}-mr-{mr_iid}"


def _job_ids(project_id: int, mr_iid: int) -> tuple[str, str]:
    """Primary slot plus one follow-up slot used while the primary is running."""
    base = _job_id(project_id, mr_iid)
    return base, f"{base}-next"


def _fetch_existing_job(job_id: str) -> Job | None:
    """Attempt to fetch an existing job by id without raising."""
    try:
        return Job.fetch(job_id, connection=redis_connection)
    except NoSuchJobError:
        return None


def run_review_job(project_id: int, mr_iid: int) -> str:
    """RQ job entrypoint that executes the async review run."""
    logger.info("Starting review job for %s!%s", project_id, mr_iid)
    # Deferred import keeps queue config lightweight for non-worker processes
    from review_bot.services.review_coordinator import execute_review

    outcome = asyncio.run(execute_review(project_id, mr_iid))
    logger.info(
        "Finished review job for %s!%s (outcome=%s)", project_id, mr_iid, outcome.value
    )
    return outcome.value


def enqueue_review(project_id: int, mr_iid: int) -> Job:
    """Enqueue a review job, coalescing with a still-queued job for the MR.

    A job that already started is not reused: the newer trigger gets its own
    job, and the guarded transition decides which commit actually runs.

    Raises:
        ReviewQueueFullError: The queue already holds ``MAX_QUEUE_DEPTH`` jobs
    """
    job_id = None
    for candidate in _job_ids(project_id, mr_iid):
        existing_job = _fetch_existing_job(candidate)
        status = existing_job.get_status(refresh=True) if existing_job else None
        if status in PENDING_STATUSES:
            logger.info(
                "Review for %s!%s already queued (status=%s)",
                project_id,
                mr_iid,
                status,
            )
            return existing_job
        if status != "started":
            job_id = candidate
            break
    if job_id is None:
        job_id = f"{_job_id(project_id, mr_iid)}-{uuid.uuid4().hex[:8]}"

    depth = review_queue.count
    if depth >= MAX_QUEUE_DEPTH:
        logger.warning(
            "Review queue full (%s/%s); rejecting %s!%s",
            depth,
            MAX_QUEUE_DEPTH,
            project_id,
            mr_iid,
        )
        raise ReviewQueueFullError(
            f"Review queue is full ({depth}/{MAX_QUEUE_DEPTH})"
        )

    logger.info(
        "Enqueuing review job for %s!%s on queue '%s'",
        project_id,
        mr_iid,
        review_queue.name,
    )
    return review_queue.enqueue(
        run_review_job,
        project_id,
        mr_iid,
        job_id=job_id,
        job_timeout=JOB_TIMEOUT_SECONDS,
    )
