"""Pytest configuration and fixtures."""

import pytest
from fastapi.testclient import TestClient

from review_bot.config.settings import Settings
from review_bot.main import app
from review_bot.models.gitlab_types import DiffFile, MergeRequest

SAMPLE_DIFF = "@@ -1,3 +1,3 @@\n line1\n-line2\n+line2 changed\n line3\n"


@pytest.fixture
def client() -> TestClient:
    """Return a FastAPI TestClient."""
    return TestClient(app)


@pytest.fixture
def webhook_url() -> str:
    """Return the webhook URL for testing."""
    return "/webhook/gitlab"


@pytest.fixture
def test_settings() -> Settings:
    """Settings independent of the developer's environment and .env.local."""
    return Settings(
        _env_file=None,
        openai_api_key="sk-test",  # pragma: allowlist secret
        gitlab_token="glpat-test",  # pragma: allowlist secret
        gitlab_webhook_secret="hook-secret",  # pragma: allowlist secret
        gitlab_api_url="https://gitlab.example.com/api/v4",
        pinecone_api_key=None,
        database_url="sqlite:///:memory:",
        inline_publish_delay_ms=0,
        ai_retry_backoff_seconds=0,
    )


@pytest.fixture
def sample_diff() -> DiffFile:
    return DiffFile(old_path="src/app.py", new_path="src/app.py", diff_text=SAMPLE_DIFF)


@pytest.fixture
def open_mr() -> MergeRequest:
    return MergeRequest(
        iid=7,
        project_id=42,
        title="Add feature",
        description="Implements the feature",
        state="opened",
        sha="abc123def4567890",  # pragma: allowlist secret
    )
