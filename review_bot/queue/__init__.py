"""Queue package for background review processing."""

from .config import enqueue_review, redis_connection, review_queue, run_review_job

__all__ = [
    "enqueue_review",
    "redis_connection",
    "review_queue",
    "run_review_job",
]
