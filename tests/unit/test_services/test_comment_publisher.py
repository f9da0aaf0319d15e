"""Unit tests for review publication."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from review_bot.exceptions import GitLabClientError
from review_bot.models.gitlab_types import DiffRefs
from review_bot.models.outputs import Category, Finding, ReviewResult, Severity
from review_bot.services.comment_publisher import ReviewPublisher

REFS = DiffRefs(base_sha="b", start_sha="s", head_sha="h")


@pytest.fixture
def gitlab():
    mock = MagicMock()
    mock.post_summary_comment = AsyncMock()
    mock.post_inline_comment = AsyncMock()
    mock.get_diff_refs = AsyncMock(return_value=REFS)
    return mock


def review(*lines, severity=Severity.WARNING):
    return ReviewResult(
        score=6,
        summary="Needs work",
        findings=[
            Finding(
                file_name="src/app.py",
                line_number=line,
                severity=severity,
                category=Category.ERROR_HANDLING,
                message=f"issue on {line}",
            )
            for line in lines
        ],
    )


@pytest.mark.asyncio
async def test_publish_review_posts_markdown(test_settings, gitlab):
    result = review(2)

    await ReviewPublisher(test_settings, gitlab).publish_review(42, 7, result)

    gitlab.post_summary_comment.assert_awaited_once_with(
        42, 7, result.format_summary_markdown()
    )


@pytest.mark.asyncio
async def test_publish_review_failure_propagates(test_settings, gitlab):
    gitlab.post_summary_comment.side_effect = GitLabClientError("boom", status_code=500)

    with pytest.raises(GitLabClientError):
        await ReviewPublisher(test_settings, gitlab).publish_review(42, 7, review())


@pytest.mark.asyncio
async def test_inline_comments_are_posted_with_diff_refs(test_settings, gitlab, sample_diff):
    posted = await ReviewPublisher(test_settings, gitlab).publish_inline_comments(
        42, 7, review(1, 2), [sample_diff]
    )

    assert posted == 2
    first = gitlab.post_inline_comment.await_args_list[0].args
    assert first[:6] == (42, 7, REFS, "src/app.py", "src/app.py", 1)
    assert "issue on 1" in first[6]


@pytest.mark.asyncio
async def test_one_failing_inline_comment_does_not_stop_the_rest(
    test_settings, gitlab, sample_diff
):
    gitlab.post_inline_comment.side_effect = [
        GitLabClientError("line gone", status_code=400),
        None,
        None,
    ]

    posted = await ReviewPublisher(test_settings, gitlab).publish_inline_comments(
        42, 7, review(1, 2, 3), [sample_diff]
    )

    assert posted == 2
    assert gitlab.post_inline_comment.await_count == 3


@pytest.mark.asyncio
async def test_missing_diff_refs_skips_inline_comments(test_settings, gitlab, sample_diff):
    gitlab.get_diff_refs.side_effect = GitLabClientError("No diff refs")

    posted = await ReviewPublisher(test_settings, gitlab).publish_inline_comments(
        42, 7, review(1), [sample_diff]
    )

    assert posted == 0
    gitlab.post_inline_comment.assert_not_awaited()


@pytest.mark.asyncio
async def test_nothing_selected_skips_diff_refs_lookup(test_settings, gitlab, sample_diff):
    posted = await ReviewPublisher(test_settings, gitlab).publish_inline_comments(
        42, 7, review(1, severity=Severity.INFO), [sample_diff]
    )

    assert posted == 0
    gitlab.get_diff_refs.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize("flag", [{"inline_enabled": False}, {"dry_run": True}])
async def test_inline_flags_suppress_posting(test_settings, gitlab, sample_diff, flag):
    config = test_settings.model_copy(update=flag)

    posted = await ReviewPublisher(config, gitlab).publish_inline_comments(
        42, 7, review(1), [sample_diff]
    )

    assert posted == 0
    gitlab.post_inline_comment.assert_not_awaited()


@pytest.mark.asyncio
async def test_dry_run_posts_nothing(test_settings, gitlab, sample_diff):
    config = test_settings.model_copy(update={"dry_run": True})
    publisher = ReviewPublisher(config, gitlab)

    await publisher.publish_review(42, 7, review(1))
    await publisher.publish_inline_comments(42, 7, review(1), [sample_diff])
    await publisher.publish_status(42, 7, "Analyzing")

    gitlab.post_summary_comment.assert_not_awaited()
    gitlab.post_inline_comment.assert_not_awaited()


@pytest.mark.asyncio
async def test_inline_delay_between_posts(test_settings, gitlab, sample_diff, monkeypatch):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    monkeypatch.setattr("review_bot.services.comment_publisher.asyncio.sleep", fake_sleep)
    config = test_settings.model_copy(update={"inline_publish_delay_ms": 250})

    await ReviewPublisher(config, gitlab).publish_inline_comments(
        42, 7, review(1, 2, 3), [sample_diff]
    )

    assert sleeps == [0.25, 0.25]


@pytest.mark.asyncio
async def test_publish_status_never_raises(test_settings, gitlab):
    gitlab.post_summary_comment.side_effect = GitLabClientError("down", status_code=503)

    await ReviewPublisher(test_settings, gitlab).publish_status(42, 7, "Analyzing")

    gitlab.post_summary_comment.assert_awaited_once()


@pytest.mark.asyncio
async def test_publish_status_disabled(test_settings, gitlab):
    config = test_settings.model_copy(update={"status_comments_enabled": False})

    await ReviewPublisher(config, gitlab).publish_status(42, 7, "Analyzing")

    gitlab.post_summary_comment.assert_not_awaited()
