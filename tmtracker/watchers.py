from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import aiosqlite

from .announcer import Announcer
from .api import TrackmaniaApi
from .config import config, logger
from .formatting import weekly_short_map_name
from .http import UpstreamAuthError, UpstreamError
from .oauth import DisplayNameClient
from .players import canonical_players, list_players, refresh_display_names
from .ranks import process_map_rank_records
from .records import record_time_ms, update_time_record
from .storage import (
    CATEGORY_CAMPAIGN,
    CATEGORY_WEEKLY_SHORTS,
    Database,
    list_tenants,
    lowest_min_position,
    store_map,
)
from .task_queue import QueueFullError, TaskQueue
from .tokens import TokenCache


Job = Callable[[], Awaitable[Any]]


async def run_campaign_cycle(
    db: Database,
    api: TrackmaniaApi,
    announcer: Announcer,
    names: Optional[DisplayNameClient] = None,
) -> int:
    """Poll personal bests on the current official campaign and announce improvements."""
    players = canonical_players(await list_players(db))
    if not players:
        logger.info("No players registered, skipping campaign check")
        return 0

    campaign = await api.fetch_current_campaign()
    season_uid = campaign.get("leaderboardGroupUid")
    map_uids = [m["mapUid"] for m in campaign.get("playlist") or []]
    map_list = await api.fetch_map_info(map_uids)
    account_ids = list(players)
    touched = set()
    changes = 0

    for map_info in map_list:
        map_uid = map_info.get("uid")
        try:
            map_id = map_info.get("mapId")
            if not map_uid or not map_id:
                logger.warning(f"No mapId found for map {map_uid}, skipping")
                continue
            map_name = map_info.get("name") or map_uid
            map_row_id = await store_map(
                db, map_uid, map_id, map_name, CATEGORY_CAMPAIGN,
                season_uid=season_uid, thumbnail_url=map_info.get("thumbnailUrl"),
            )

            records = await api.fetch_player_records(map_id, account_ids)
            for record in records:
                account_id = record.get("accountId")
                time_ms = record_time_ms(record)
                if not account_id or time_ms is None:
                    logger.warning(f"Couldn't find time in record for {account_id} on {map_uid}")
                    continue
                player = players.get(account_id)
                if not player:
                    logger.warning(f"Unknown player with accountId {account_id}")
                    continue
                try:
                    result = await update_time_record(db, player.id, map_row_id, time_ms)
                except aiosqlite.IntegrityError as e:
                    logger.warning(f"Could not store record for {account_id} on {map_uid}: {e}")
                    continue
                if result.changed:
                    changes += 1
                    touched.add(account_id)
                    logger.info(f"{result.outcome.value.capitalize()} record for {account_id} on {map_name}: {time_ms}ms (previous: {result.previous_time_ms})")
        except UpstreamAuthError:
            raise
        except (UpstreamError, QueueFullError) as e:
            logger.error(f"Skipping campaign map {map_uid} this cycle: {e}")
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Unexpected data for campaign map {map_uid}: {e!r}")

    if touched and names and names.enabled:
        try:
            await refresh_display_names(db, names, touched)
        except (UpstreamError, QueueFullError) as e:
            logger.warning(f"Failed to refresh display names: {e}")

    logger.info(f"Campaign check found {changes} new record(s)")
    await announcer.announce_time_records()
    return changes


async def run_weekly_shorts_cycle(
    db: Database,
    api: TrackmaniaApi,
    announcer: Announcer,
    default_max_position: int = config.WEEKLY_SHORTS_MAX_POSITION,
) -> int:
    """Poll season runs on the current weekly shorts and announce position changes."""
    players = canonical_players(await list_players(db))
    if not players:
        logger.info("No players registered, skipping weekly shorts check")
        return 0

    campaign = await api.fetch_current_weekly_short()
    season_uid = campaign["seasonUid"]
    playlist = campaign.get("playlist") or []
    map_list = await api.fetch_map_info([m["mapUid"] for m in playlist])
    positions_by_uid = {m["mapUid"]: m.get("position") for m in playlist}

    tenants = await list_tenants(db)
    cutoff = lowest_min_position(tenants, default_max_position)
    logger.info(f"Using minimum position threshold: {cutoff}")
    account_ids = list(players)
    changes = 0

    for map_info in map_list:
        map_uid = map_info.get("uid")
        try:
            map_id = map_info.get("mapId")
            if not map_uid or not map_id:
                logger.warning(f"No mapId found for map {map_uid}, skipping")
                continue
            playlist_position = positions_by_uid.get(map_uid)
            raw_name = map_info.get("name") or f"Week {campaign.get('week')} - Map {(playlist_position or 0) + 1}"
            map_row_id = await store_map(
                db, map_uid, map_id, weekly_short_map_name(raw_name, playlist_position),
                CATEGORY_WEEKLY_SHORTS, season_uid=season_uid, position=playlist_position,
                thumbnail_url=map_info.get("thumbnailUrl"),
            )
            records = await api.fetch_player_records(map_id, account_ids, season_id=season_uid)
            updates = await process_map_rank_records(
                db, api, map_row_id, map_uid, season_uid, records, players, tenants, cutoff
            )
            changes += len(updates)
        except UpstreamAuthError:
            raise
        except (UpstreamError, QueueFullError) as e:
            logger.error(f"Skipping weekly shorts map {map_uid} this cycle: {e}")
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Unexpected data for weekly shorts map {map_uid}: {e!r}")

    logger.info(f"Weekly shorts check found {changes} update(s)")
    await announcer.announce_rank_records()
    return changes


async def run_with_auth_retry(
    name: str,
    cycle: Job,
    tokens: TokenCache,
    attempts: int = config.AUTH_RETRY_ATTEMPTS,
) -> Any:
    """Run a cycle, invalidating tokens and starting over on auth failure, at most ``attempts`` times."""
    for attempt in range(1, attempts + 1):
        try:
            logger.info(f"🔄 Starting {name} (attempt {attempt}/{attempts})")
            result = await cycle()
            logger.info(f"✅ {name} completed")
            return result
        except UpstreamAuthError as e:
            tokens.invalidate()
            if attempt < attempts:
                logger.warning(f"🔐 {name} hit an auth failure, refreshing tokens and retrying: {e}")
            else:
                logger.error(f"❌ {name} aborted after {attempts} auth failures: {e}")
    return None


@dataclass
class ScheduledJob:
    name: str
    interval: float
    job: Job
    task: Optional[asyncio.Task] = None


class Scheduler:
    """Named periodic triggers whose work runs on the background queue."""

    def __init__(self, queue: TaskQueue):
        self.queue = queue
        self.jobs: Dict[str, ScheduledJob] = {}

    def submit(self, name: str, job: Job) -> Optional[asyncio.Future]:
        try:
            future = self.queue.enqueue(job, name)
        except QueueFullError:
            logger.warning(f"Background queue full, dropping {name} tick")
            return None
        future.add_done_callback(lambda f: self._log_outcome(name, f))
        return future

    @staticmethod
    def _log_outcome(name: str, future: asyncio.Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error:
            logger.error(f"Error in scheduled task '{name}': {error}")

    def schedule(self, name: str, interval: float, job: Job, initial_delay: Optional[float] = None) -> None:
        """Run ``job`` every ``interval`` seconds, plus once after ``initial_delay`` if given."""
        self.cancel(name)
        scheduled = ScheduledJob(name, interval, job)
        scheduled.task = asyncio.create_task(self._run(scheduled, initial_delay))
        self.jobs[name] = scheduled
        logger.info(f"Scheduling task '{name}' to run every {interval:.0f}s")

    def reschedule(self, name: str, interval: float) -> None:
        scheduled = self.jobs.get(name)
        if not scheduled:
            raise KeyError(name)
        self.schedule(name, interval, scheduled.job)

    def interval(self, name: str) -> Optional[float]:
        scheduled = self.jobs.get(name)
        return scheduled.interval if scheduled else None

    def cancel(self, name: str) -> None:
        scheduled = self.jobs.pop(name, None)
        if scheduled and scheduled.task:
            scheduled.task.cancel()
            logger.debug(f"Cleared scheduled task: {name}")

    def stop(self) -> None:
        for name in list(self.jobs):
            self.cancel(name)

    async def _run(self, scheduled: ScheduledJob, initial_delay: Optional[float]) -> None:
        try:
            if initial_delay is not None:
                await asyncio.sleep(initial_delay)
                self.submit(scheduled.name, scheduled.job)
            while True:
                await asyncio.sleep(scheduled.interval)
                self.submit(scheduled.name, scheduled.job)
        except asyncio.CancelledError:
            logger.debug(f"Scheduled task '{scheduled.name}' cancelled")
            raise
