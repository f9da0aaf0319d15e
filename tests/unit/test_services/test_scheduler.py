"""Unit tests for the merge request poller."""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from review_bot.exceptions import GitLabClientError
from review_bot.models.gitlab_types import MergeRequest
from review_bot.services.scheduler import MergeRequestPoller

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def mr(iid, project_id):
    return MergeRequest(iid=iid, project_id=project_id, state="opened", sha="abc")


@pytest.fixture
def coordinator():
    return MagicMock()


@pytest.mark.asyncio
async def test_poll_triggers_every_updated_merge_request(test_settings, coordinator):
    config = test_settings.model_copy(update={"project_ids": [1, 2]})
    gitlab = MagicMock()
    gitlab.list_open_merge_requests_updated_after = AsyncMock(
        side_effect=[[mr(10, 1), mr(11, 1)], [mr(20, 2)]]
    )

    triggered = await MergeRequestPoller(config, gitlab, coordinator).poll_once(NOW)

    assert triggered == 3
    assert [c.args for c in coordinator.start.call_args_list] == [(1, 10), (1, 11), (2, 20)]
    first = gitlab.list_open_merge_requests_updated_after.call_args_list[0]
    assert first.args == (1, NOW - timedelta(minutes=30))
    assert first.kwargs == {"per_page": 10}


@pytest.mark.asyncio
async def test_failing_project_does_not_stop_the_poll(test_settings, coordinator):
    config = test_settings.model_copy(update={"project_ids": [1, 2]})
    gitlab = MagicMock()
    gitlab.list_open_merge_requests_updated_after = AsyncMock(
        side_effect=[GitLabClientError("403", status_code=403), [mr(20, 2)]]
    )

    triggered = await MergeRequestPoller(config, gitlab, coordinator).poll_once(NOW)

    assert triggered == 1
    coordinator.start.assert_called_once_with(2, 20)


@pytest.mark.asyncio
async def test_enqueue_runs_off_the_event_loop_thread(test_settings, coordinator):
    config = test_settings.model_copy(update={"project_ids": [1]})
    gitlab = MagicMock()
    gitlab.list_open_merge_requests_updated_after = AsyncMock(return_value=[mr(10, 1)])
    threads = []
    coordinator.start.side_effect = lambda *args: threads.append(threading.get_ident())

    await MergeRequestPoller(config, gitlab, coordinator).poll_once(NOW)

    assert len(threads) == 1
    assert threads[0] != threading.get_ident()


@pytest.mark.asyncio
async def test_no_projects_configured(test_settings, coordinator):
    gitlab = MagicMock()
    gitlab.list_open_merge_requests_updated_after = AsyncMock()

    triggered = await MergeRequestPoller(test_settings, gitlab, coordinator).poll_once()

    assert triggered == 0
    gitlab.list_open_merge_requests_updated_after.assert_not_awaited()


def test_project_ids_parse_from_comma_separated_env(monkeypatch):
    from review_bot.config.settings import Settings

    monkeypatch.setenv("PROJECT_IDS", "12, 34,")

    assert Settings(_env_file=None).project_ids == [12, 34]
