"""Logging and observability setup using Pydantic Logfire.

Every record carries a ``review`` field: the tag of the review run in
progress (``[run_id project!iid]``) or ``-`` outside of one. A run binds it
with ``review_log_context`` so that lines logged by the analyzer, the RAG
assembler and the publisher can be traced back to that run.
"""

import contextlib
import contextvars
import logging
import sys
from collections.abc import Iterator

from review_bot.config.settings import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(review)s %(message)s"
NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "openai", "pinecone")

_review_tag: contextvars.ContextVar[str] = contextvars.ContextVar(
    "review_tag", default="-"
)


class ReviewContextFilter(logging.Filter):
    """Stamps records with the review run bound in the current context."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.review = _review_tag.get()
        return True


@contextlib.contextmanager
def review_log_context(run_id: str, project_id: int, mr_iid: int) -> Iterator[str]:
    """Bind a review run to every record logged inside the block."""
    tag = f"[{run_id} {project_id}!{mr_iid}]"
    token = _review_tag.set(tag)
    try:
        yield tag
    finally:
        _review_tag.reset(token)


def setup_logging(level: str | None = None) -> None:
    """Configure stdout logging at ``level`` (default from settings)."""
    log_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ReviewContextFilter())
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.basicConfig(level=log_level, handlers=[handler], force=True)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)


def setup_observability() -> None:
    """Setup logging and, when a token is configured, Logfire tracing.

    Logfire instruments the pydantic-ai review agent and the httpx clients
    used for GitLab and OpenAI calls.
    """
    setup_logging()

    logger = logging.getLogger(__name__)

    if not settings.logfire_token:
        logger.info("Logfire token not configured, skipping observability setup")
        return

    try:
        import logfire

        logfire.configure(
            token=settings.logfire_token,
            service_name="gitlab-review-bot",
            environment=settings.environment,
        )
        logfire.instrument_pydantic_ai()
        logfire.instrument_httpx()
        logger.info(f"Logfire observability enabled for {settings.environment}")
    except ImportError:
        logger.warning(
            "Logfire package not installed. "
            "Install with: pip install 'gitlab-review-bot[observability]'"
        )
    except Exception as e:
        logger.error(f"Failed to setup Logfire observability: {e}")
