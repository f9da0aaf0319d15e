"""Unit tests for review run coordination and the guarded status transitions."""

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from review_bot.exceptions import AiUnavailableError, GitLabClientError
from review_bot.models.gitlab_types import ChangeRequestRef
from review_bot.models.outputs import ReviewResult
from review_bot.models.review_status import Base, ReviewStatus, RunState
from review_bot.services.review_coordinator import (
    ReviewOutcome,
    ReviewRunCoordinator,
    describe_error,
)
from review_bot.utils.logging import ReviewContextFilter

SHA = "abc123def4567890"  # pragma: allowlist secret


@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite so that separate sessions really are separate connections."""
    engine = create_engine(f"sqlite:///{tmp_path / 'reviews.db'}")
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def gitlab(open_mr, sample_diff):
    mock = MagicMock()
    mock.get_merge_request = AsyncMock(return_value=open_mr)
    mock.get_diffs = AsyncMock(return_value=[sample_diff])
    return mock


@pytest.fixture
def analyzer():
    mock = MagicMock()
    mock.analyze = AsyncMock(return_value=ReviewResult(score=8, summary="Good"))
    return mock


@pytest.fixture
def publisher():
    mock = MagicMock()
    mock.publish_review = AsyncMock()
    mock.publish_inline_comments = AsyncMock(return_value=1)
    mock.publish_status = AsyncMock()
    return mock


@pytest.fixture
def coordinator(test_settings, session_factory, gitlab, analyzer, publisher):
    return ReviewRunCoordinator(
        test_settings,
        session_factory=session_factory,
        gitlab=gitlab,
        analyzer=analyzer,
        publisher=publisher,
    )


def load_row(session_factory, project_id=42, mr_iid=7):
    with session_factory() as session:
        return session.execute(
            select(ReviewStatus).where(
                ReviewStatus.project_id == project_id, ReviewStatus.mr_iid == mr_iid
            )
        ).scalar_one_or_none()


def insert_row(session_factory, **values):
    with session_factory() as session:
        row = ReviewStatus(project_id=42, mr_iid=7, attempts=1, **values)
        session.add(row)
        session.commit()


def status_messages(publisher):
    return [call.args[2] for call in publisher.publish_status.await_args_list]


@pytest.mark.asyncio
async def test_successful_run_records_success(coordinator, session_factory, publisher):
    outcome = await coordinator.run_review(42, 7)

    assert outcome == ReviewOutcome.SUCCESS
    row = load_row(session_factory)
    assert row.status == RunState.SUCCESS
    assert row.head_sha == SHA
    assert row.attempts == 1
    assert row.last_error is None
    assert row.finished_at is not None

    messages = status_messages(publisher)
    assert messages[0].endswith("Review started. SHA=abc123de")
    assert messages[1].endswith("Analyzing changes in 1 files…")
    assert messages[2].endswith("Publishing review (score=8)…")
    assert messages[3].endswith("Done. Score=8/10")
    # Every note of one run carries the same run tag
    assert len({m.split(" ", 1)[0] for m in messages}) == 1


@pytest.mark.asyncio
async def test_summary_is_published_before_inline_comments(coordinator, publisher):
    order = []
    publisher.publish_review.side_effect = lambda *a: order.append("summary")
    publisher.publish_inline_comments.side_effect = lambda *a: order.append("inline")

    await coordinator.run_review(42, 7)

    assert order == ["summary", "inline"]


@pytest.mark.asyncio
async def test_same_commit_is_reviewed_once(coordinator, analyzer):
    first = await coordinator.run_review(42, 7)
    second = await coordinator.run_review(42, 7)

    assert (first, second) == (ReviewOutcome.SUCCESS, ReviewOutcome.SKIPPED)
    assert analyzer.analyze.await_count == 1


@pytest.mark.asyncio
async def test_new_commit_is_reviewed_again(coordinator, gitlab, open_mr, session_factory):
    await coordinator.run_review(42, 7)
    gitlab.get_merge_request.return_value = open_mr.model_copy(update={"sha": "ffff0000"})

    outcome = await coordinator.run_review(42, 7)

    assert outcome == ReviewOutcome.SUCCESS
    row = load_row(session_factory)
    assert row.head_sha == "ffff0000"
    assert row.attempts == 2


@pytest.mark.asyncio
async def test_running_commit_is_skipped(coordinator, session_factory, analyzer):
    insert_row(session_factory, head_sha=SHA, status=RunState.RUNNING)

    outcome = await coordinator.run_review(42, 7)

    assert outcome == ReviewOutcome.SKIPPED
    analyzer.analyze.assert_not_awaited()


@pytest.mark.asyncio
async def test_failed_commit_may_be_retried(coordinator, session_factory):
    insert_row(session_factory, head_sha=SHA, status=RunState.FAILED, last_error="x")

    outcome = await coordinator.run_review(42, 7)

    assert outcome == ReviewOutcome.SUCCESS
    row = load_row(session_factory)
    assert row.attempts == 2
    assert row.last_error is None


@pytest.mark.asyncio
async def test_ai_failure_is_recorded_and_nothing_published(
    coordinator, analyzer, publisher, session_factory
):
    analyzer.analyze.side_effect = AiUnavailableError("AI service unavailable: open")

    outcome = await coordinator.run_review(42, 7)

    assert outcome == ReviewOutcome.FAILED
    publisher.publish_review.assert_not_awaited()
    row = load_row(session_factory)
    assert row.status == RunState.FAILED
    assert row.last_error == "AI_UNAVAILABLE: AI service unavailable: open"
    assert status_messages(publisher)[-1].endswith(
        "AI review unavailable, review not published. "
        "Reason: AI_UNAVAILABLE: AI service unavailable: open"
    )


@pytest.mark.asyncio
async def test_publish_failure_is_recorded(coordinator, publisher, session_factory):
    publisher.publish_review.side_effect = GitLabClientError("500 on notes", 500)

    outcome = await coordinator.run_review(42, 7)

    assert outcome == ReviewOutcome.FAILED
    row = load_row(session_factory)
    assert row.status == RunState.FAILED
    assert row.last_error == "GITLAB_ERROR: 500 on notes"
    assert status_messages(publisher)[-1].endswith(
        "Review failed: GITLAB_ERROR: 500 on notes"
    )


@pytest.mark.asyncio
async def test_long_errors_are_truncated(coordinator, analyzer, publisher, session_factory):
    analyzer.analyze.side_effect = RuntimeError("e" * 5000)

    await coordinator.run_review(42, 7)

    row = load_row(session_factory)
    assert len(row.last_error) == 2000
    assert row.last_error.endswith("…")
    # "[tag] Review failed: " + 300 chars + ellipsis
    assert len(status_messages(publisher)[-1].split("Review failed: ", 1)[1]) == 301


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "update",
    [{"state": "merged"}, {"draft": True}, {"work_in_progress": True}, {"sha": "  "}],
)
async def test_unreviewable_merge_requests_are_skipped(
    coordinator, gitlab, open_mr, session_factory, update
):
    gitlab.get_merge_request.return_value = open_mr.model_copy(update=update)

    outcome = await coordinator.run_review(42, 7)

    assert outcome == ReviewOutcome.SKIPPED
    assert load_row(session_factory) is None


@pytest.mark.asyncio
async def test_missing_merge_request_is_skipped(coordinator, gitlab):
    gitlab.get_merge_request.return_value = None

    assert await coordinator.run_review(42, 7) == ReviewOutcome.SKIPPED


@pytest.mark.asyncio
async def test_fetch_failure_fails_without_touching_status(
    coordinator, gitlab, session_factory, publisher
):
    gitlab.get_merge_request.side_effect = GitLabClientError("timeout")

    outcome = await coordinator.run_review(42, 7)

    assert outcome == ReviewOutcome.FAILED
    assert load_row(session_factory) is None
    publisher.publish_status.assert_not_awaited()


def test_concurrent_insert_loses_the_claim(coordinator, session_factory, monkeypatch):
    insert_row(session_factory, head_sha="0ld", status=RunState.SUCCESS)
    # Simulate reading before the competing insert became visible
    monkeypatch.setattr(coordinator, "_load_status", lambda *args: None)

    claimed = coordinator.try_mark_running(
        ChangeRequestRef(project_id=42, mr_iid=7, head_sha=SHA)
    )

    assert claimed is False
    assert load_row(session_factory).head_sha == "0ld"


def test_concurrent_update_loses_the_claim(coordinator, session_factory, monkeypatch):
    insert_row(session_factory, head_sha="0ld", status=RunState.SUCCESS)
    original = ReviewRunCoordinator._load_status

    def load_then_race(session, project_id, mr_iid):
        row = original(coordinator, session, project_id, mr_iid)
        with session_factory() as rival:
            competing = original(coordinator, rival, project_id, mr_iid)
            competing.mark_running("r1va1")
            rival.commit()
        return row

    monkeypatch.setattr(coordinator, "_load_status", load_then_race)

    claimed = coordinator.try_mark_running(
        ChangeRequestRef(project_id=42, mr_iid=7, head_sha=SHA)
    )

    assert claimed is False
    row = load_row(session_factory)
    assert row.head_sha == "r1va1"
    assert row.attempts == 2


def test_terminal_update_requires_running_same_commit(coordinator, session_factory):
    ref = ChangeRequestRef(project_id=42, mr_iid=7, head_sha=SHA)
    assert coordinator.mark_success(ref) is False

    insert_row(session_factory, head_sha="other", status=RunState.RUNNING)

    assert coordinator.mark_failed(ref, "late") is False
    row = load_row(session_factory)
    assert row.status == RunState.RUNNING
    assert row.head_sha == "other"


def test_start_enqueues_or_ignores(test_settings, session_factory):
    enqueue = MagicMock(return_value="job")
    coordinator = ReviewRunCoordinator(
        test_settings, session_factory=session_factory, enqueue=enqueue
    )

    assert coordinator.start(42, 7) == "job"
    enqueue.assert_called_once_with(42, 7)

    disabled = ReviewRunCoordinator(
        test_settings.model_copy(update={"review_enabled": False}),
        session_factory=session_factory,
        enqueue=enqueue,
    )
    assert disabled.start(42, 7) is None
    assert enqueue.call_count == 1


def test_describe_error():
    assert describe_error(GitLabClientError("boom")) == "GITLAB_ERROR: boom"
    assert describe_error(ValueError("bad")) == "ValueError: bad"
    assert describe_error(KeyError()) == "KeyError: KeyError"


def drop_status_table(session_factory):
    Base.metadata.drop_all(session_factory.kw["bind"])


@pytest.mark.asyncio
async def test_unusable_database_skips_the_run(
    test_settings, gitlab, analyzer, publisher, tmp_path
):
    engine = create_engine(f"sqlite:///{tmp_path / 'no-tables.db'}")
    coordinator = ReviewRunCoordinator(
        test_settings,
        session_factory=sessionmaker(bind=engine),
        gitlab=gitlab,
        analyzer=analyzer,
        publisher=publisher,
    )

    outcome = await coordinator.run_review(42, 7)

    assert outcome == ReviewOutcome.SKIPPED
    analyzer.analyze.assert_not_awaited()
    publisher.publish_status.assert_not_awaited()
    engine.dispose()


@pytest.mark.asyncio
async def test_database_error_on_success_keeps_the_outcome(
    coordinator, analyzer, publisher, session_factory
):
    def analyze_then_lose_database(*args):
        drop_status_table(session_factory)
        return ReviewResult(score=8, summary="Good")

    analyzer.analyze.side_effect = analyze_then_lose_database

    outcome = await coordinator.run_review(42, 7)

    assert outcome == ReviewOutcome.SUCCESS
    publisher.publish_review.assert_awaited_once()
    assert status_messages(publisher)[-1].endswith("Done. Score=8/10")


@pytest.mark.asyncio
async def test_database_error_on_failure_still_posts_status(
    coordinator, analyzer, publisher, session_factory
):
    def fail_and_lose_database(*args):
        drop_status_table(session_factory)
        raise RuntimeError("model exploded")

    analyzer.analyze.side_effect = fail_and_lose_database

    outcome = await coordinator.run_review(42, 7)

    assert outcome == ReviewOutcome.FAILED
    assert status_messages(publisher)[-1].endswith(
        "Review failed: RuntimeError: model exploded"
    )


@pytest.mark.asyncio
async def test_log_lines_of_a_run_carry_its_tag(coordinator, analyzer, publisher):
    stamped = []

    def analyze_and_log(*args):
        record = logging.LogRecord("review_bot", logging.INFO, __file__, 1, "x", None, None)
        ReviewContextFilter().filter(record)
        stamped.append(record.review)
        return ReviewResult(score=8, summary="Good")

    analyzer.analyze.side_effect = analyze_and_log

    await coordinator.run_review(42, 7)

    run_id = status_messages(publisher)[0].split(" ", 1)[0].strip("[]")
    assert stamped == [f"[{run_id} 42!7]"]
