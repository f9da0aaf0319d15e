"""RQ worker entrypoint for processing merge request review jobs."""

from __future__ import annotations

import logging
import os
import sys
import uuid

from redis.exceptions import ConnectionError
from rq import SimpleWorker, Worker
from rq.worker_pool import WorkerPool

from review_bot.config.settings import settings
from review_bot.database.db import init_db
from review_bot.queue.config import get_all_queues, redis_conn
from review_bot.utils.logging import setup_observability

logger = logging.getLogger(__name__)


def health_check() -> bool:
    """Return True if Redis is reachable."""
    try:
        return bool(redis_conn.ping())
    except Exception:
        logger.exception("Worker health check failed (Redis unreachable)")
        return False


def cleanup_stale_workers() -> None:
    """Remove stale worker registrations from Redis."""
    try:
        workers = Worker.all(connection=redis_conn)
        for worker in workers:
            if worker.name.startswith(settings.worker_name) and worker.state in (
                "dead",
                "failed",
            ):
                logger.info(
                    "Cleaning up stale worker: %s (state=%s)", worker.name, worker.state
                )
                worker.register_death()
    except Exception:
        logger.exception("Failed to cleanup stale workers")


def get_unique_worker_name() -> str:
    """Generate a unique worker name using hostname and UUID."""
    hostname = os.getenv("HOSTNAME", "local")
    short_uuid = str(uuid.uuid4())[:8]
    return f"{settings.worker_name}-{hostname}-{short_uuid}"


def start_worker(run: bool = True) -> SimpleWorker:
    """Create and optionally start a single in-process worker.

    ``SimpleWorker`` runs jobs without forking, so the AI circuit breaker of
    this process keeps its state across jobs.
    """
    setup_observability()
    init_db()
    cleanup_stale_workers()

    queues = get_all_queues()
    if not queues:
        logger.error("No queues configured; aborting worker startup")
        sys.exit(1)

    worker_name = get_unique_worker_name()
    logger.info(
        "Starting worker '%s' for queues: %s",
        worker_name,
        ", ".join(q.name for q in queues),
    )
    worker = SimpleWorker(
        queues=queues,
        connection=redis_conn,
        name=worker_name,
        worker_ttl=settings.worker_job_timeout + 60,
    )

    if run:
        try:
            worker.work(logging_level=getattr(logging, settings.log_level))
        except ConnectionError:
            logger.exception("Failed to start worker: Redis connection error")
            sys.exit(1)
        except Exception:
            logger.exception("Worker terminated due to unexpected error")
            sys.exit(1)
        else:
            logger.info("Worker '%s' exited cleanly", worker_name)

    return worker


def start_worker_pool(run: bool = True) -> WorkerPool:
    """Start ``worker_pool_size`` non-forking workers under one pool."""
    setup_observability()
    init_db()
    cleanup_stale_workers()

    queues = get_all_queues()
    logger.info(
        "Starting worker pool of %s for queues: %s",
        settings.worker_pool_size,
        ", ".join(q.name for q in queues),
    )
    pool = WorkerPool(
        queues,
        connection=redis_conn,
        num_workers=settings.worker_pool_size,
        worker_class=SimpleWorker,
    )

    if run:
        try:
            pool.start(logging_level=settings.log_level)
        except ConnectionError:
            logger.exception("Failed to start worker pool: Redis connection error")
            sys.exit(1)

    return pool


if __name__ == "__main__":
    if settings.worker_pool_size > 1:
        start_worker_pool(run=True)
    else:
        start_worker(run=True)
