import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import ACCOUNT_A
from tmtracker.http import UpstreamAuthError, UpstreamError
from tmtracker.records import get_unannounced_time_records
from tmtracker.storage import find_map
from tmtracker.task_queue import TaskQueue
from tmtracker.watchers import Scheduler, run_campaign_cycle, run_weekly_shorts_cycle, run_with_auth_retry


pytestmark = pytest.mark.asyncio


def _announcer():
    announcer = MagicMock()
    announcer.announce_time_records = AsyncMock(return_value=0)
    announcer.announce_rank_records = AsyncMock(return_value=0)
    return announcer


def _campaign_api(times):
    api = MagicMock()
    api.fetch_current_campaign = AsyncMock(return_value={
        "name": "Spring 2024",
        "leaderboardGroupUid": "season-uid",
        "playlist": [{"mapUid": "uid-1"}, {"mapUid": "uid-2"}],
    })
    api.fetch_map_info = AsyncMock(return_value=[
        {"uid": "uid-1", "mapId": "mid-1", "name": "Spring 2024 - 01", "thumbnailUrl": "https://img/1.jpg"},
        {"uid": "uid-2", "mapId": "mid-2", "name": "Spring 2024 - 02"},
    ])
    api.fetch_player_records = AsyncMock(side_effect=lambda map_id, account_ids, season_id=None: [
        {"accountId": ACCOUNT_A, "recordScore": {"time": times[map_id]}}
    ])
    return api


# --- Auth retry ------------------------------------------------------------

async def test_auth_failure_retries_with_fresh_tokens():
    tokens = MagicMock()
    cycle = AsyncMock(side_effect=[UpstreamAuthError("expired", status=401), 3])

    assert await run_with_auth_retry("campaign check", cycle, tokens, attempts=2) == 3
    assert cycle.await_count == 2
    tokens.invalidate.assert_called_once()


async def test_auth_retry_is_bounded():
    tokens = MagicMock()
    cycle = AsyncMock(side_effect=UpstreamAuthError("bad credentials", status=401))

    assert await run_with_auth_retry("campaign check", cycle, tokens, attempts=3) is None
    assert cycle.await_count == 3
    assert tokens.invalidate.call_count == 3


async def test_non_auth_errors_propagate():
    tokens = MagicMock()
    cycle = AsyncMock(side_effect=UpstreamError("maintenance", status=503))

    with pytest.raises(UpstreamError):
        await run_with_auth_retry("campaign check", cycle, tokens, attempts=2)
    tokens.invalidate.assert_not_called()


# --- Campaign cycle --------------------------------------------------------

async def test_campaign_cycle_without_players_does_nothing(db):
    api = _campaign_api({})
    announcer = _announcer()

    assert await run_campaign_cycle(db, api, announcer) == 0
    api.fetch_current_campaign.assert_not_awaited()


async def test_campaign_cycle_detects_and_announces_improvements(db, add_player):
    await add_player(-1001, 7, ACCOUNT_A)
    times = {"mid-1": 45000, "mid-2": 52000}
    api = _campaign_api(times)
    announcer = _announcer()

    assert await run_campaign_cycle(db, api, announcer) == 2
    assert await run_campaign_cycle(db, api, announcer) == 0
    times["mid-2"] = 51500
    assert await run_campaign_cycle(db, api, announcer) == 1

    assert announcer.announce_time_records.await_count == 3
    pending = await get_unannounced_time_records(db)
    assert {(p["map_uid"], p["time_ms"]) for p in pending} == {("uid-1", 45000), ("uid-2", 51500)}
    assert (await find_map(db, "01"))["thumbnail_url"] == "https://img/1.jpg"


async def test_campaign_cycle_skips_failing_maps(db, add_player):
    await add_player(-1001, 7, ACCOUNT_A)
    api = _campaign_api({"mid-2": 52000})
    api.fetch_player_records.side_effect = [UpstreamError("timeout"), [{"accountId": ACCOUNT_A, "recordScore": {"time": 52000}}]]
    announcer = _announcer()

    assert await run_campaign_cycle(db, api, announcer) == 1
    announcer.announce_time_records.assert_awaited_once()


async def test_campaign_cycle_aborts_on_auth_failure(db, add_player):
    await add_player(-1001, 7, ACCOUNT_A)
    api = _campaign_api({})
    api.fetch_player_records.side_effect = UpstreamAuthError("expired", status=401)
    announcer = _announcer()

    with pytest.raises(UpstreamAuthError):
        await run_campaign_cycle(db, api, announcer)
    announcer.announce_time_records.assert_not_awaited()


# --- Weekly shorts cycle ---------------------------------------------------

async def test_weekly_cycle_searches_up_to_lowest_threshold(db, add_tenant, add_player):
    await add_tenant(-1001, min_world_position=800)
    await add_tenant(-1002)
    await add_player(-1001, 7, ACCOUNT_A, registered_at="2024-01-01T00:00:00.000+00:00")
    api = MagicMock()
    api.fetch_current_weekly_short = AsyncMock(return_value={
        "seasonUid": "weekly-season", "week": 12, "playlist": [{"mapUid": "w-1", "position": 0}],
    })
    api.fetch_map_info = AsyncMock(return_value=[{"uid": "w-1", "mapId": "wm-1", "name": "$f00Shorty"}])
    api.fetch_player_records = AsyncMock(return_value=[{"accountId": ACCOUNT_A, "timestamp": "2024-02-01T12:00:00Z"}])
    api.find_player_positions = AsyncMock(return_value={ACCOUNT_A: {"position": 42}})
    announcer = _announcer()

    assert await run_weekly_shorts_cycle(db, api, announcer, default_max_position=10000) == 1

    api.fetch_player_records.assert_awaited_once_with("wm-1", [ACCOUNT_A], season_id="weekly-season")
    api.find_player_positions.assert_awaited_once_with("weekly-season", "w-1", [ACCOUNT_A], 800)
    assert (await find_map(db, "Shorty", "weekly_shorts"))["name"] == "1 - Shorty"
    announcer.announce_rank_records.assert_awaited_once()


# --- Scheduler -------------------------------------------------------------

async def test_scheduler_runs_jobs_on_the_queue():
    queue = TaskQueue("background", 1, 10)
    scheduler = Scheduler(queue)
    runs = []

    async def job():
        runs.append(asyncio.get_running_loop().time())

    scheduler.schedule("campaign", 0.05, job, initial_delay=0)
    await asyncio.sleep(0.13)
    scheduler.stop()
    await queue.join()

    assert len(runs) >= 2
    assert scheduler.jobs == {}


async def test_reschedule_changes_the_interval():
    queue = TaskQueue("background", 1, 10)
    scheduler = Scheduler(queue)
    job = AsyncMock()

    scheduler.schedule("weekly_shorts", 3600, job)
    scheduler.reschedule("weekly_shorts", 0.02)
    await asyncio.sleep(0.07)
    scheduler.stop()
    await queue.join()

    assert scheduler.interval("weekly_shorts") is None
    assert job.await_count >= 1
    with pytest.raises(KeyError):
        scheduler.reschedule("unknown", 10)


async def test_submit_drops_tick_when_queue_is_full():
    scheduler = Scheduler(TaskQueue("background", 1, max_backlog=0))

    assert scheduler.submit("campaign", AsyncMock()) is None


async def test_scheduled_job_failure_does_not_stop_schedule():
    queue = TaskQueue("background", 1, 10)
    scheduler = Scheduler(queue)
    job = AsyncMock(side_effect=UpstreamError("maintenance"))

    scheduler.schedule("campaign", 0.02, job)
    await asyncio.sleep(0.09)
    scheduler.stop()
    await queue.join()

    assert job.await_count >= 2
