"""FastAPI application entry point."""

import asyncio
import contextlib
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from review_bot.api import webhooks
from review_bot.config.settings import settings
from review_bot.database.db import check_db_connection, init_db
from review_bot.services.gitlab_client import GitLabClient
from review_bot.services.scheduler import MergeRequestPoller
from review_bot.utils.logging import setup_observability

# Setup logging and observability
setup_observability()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup and shutdown events."""
    logger.info(f"Starting review bot in {settings.environment} environment")

    logger.info("Initializing database...")
    init_db()
    check_db_connection()

    poller_task: asyncio.Task | None = None
    gitlab: GitLabClient | None = None
    if settings.scheduler_enabled:
        gitlab = GitLabClient(settings)
        poller = MergeRequestPoller(settings, gitlab, webhooks.coordinator)
        poller_task = asyncio.create_task(poller.run_forever())

    yield

    if poller_task is not None:
        poller_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await poller_task
    if gitlab is not None:
        await gitlab.aclose()
    logger.info("Shutting down review bot")


app = FastAPI(
    title="GitLab Review Bot",
    description="AI code review for GitLab merge requests using Pydantic AI and OpenAI",
    version="0.1.0",
    lifespan=lifespan,
)

# Instrument FastAPI with Logfire if configured
if settings.logfire_token:
    import logfire

    logfire.instrument_fastapi(app)

app.include_router(webhooks.router)
