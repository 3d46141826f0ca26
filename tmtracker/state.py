from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import aiohttp

from .announcer import Announcer
from .api import TrackmaniaApi
from .config import SEARCH_INTERVAL_RANGE, config, logger
from .http import UpstreamHttp, make_session
from .oauth import DisplayNameClient
from .players import refresh_display_names
from .storage import Database, get_global_setting, set_global_setting
from .task_queue import TaskQueue
from .tokens import TokenCache
from .watchers import Scheduler, run_campaign_cycle, run_weekly_shorts_cycle, run_with_auth_retry


CAMPAIGN_JOB = "campaign"
WEEKLY_SHORTS_JOB = "weekly_shorts"
DISPLAY_NAMES_JOB = "display_names"

INTERVAL_SETTINGS = {
    CAMPAIGN_JOB: "campaign_check_minutes",
    WEEKLY_SHORTS_JOB: "weekly_shorts_check_minutes",
}


@dataclass
class TrackerState:
    """Every long-lived component, built once at startup and handed to handlers."""

    db: Database
    session: Optional[aiohttp.ClientSession]
    tokens: TokenCache
    api: TrackmaniaApi
    names: DisplayNameClient
    announcer: Announcer
    api_queue: TaskQueue
    command_queue: TaskQueue
    background_queue: TaskQueue
    scheduler: Scheduler

    @classmethod
    async def create(cls, bot, db_path: str = config.DB_PATH) -> "TrackerState":
        db = await Database(db_path).connect()
        session = make_session()
        api_queue = TaskQueue("api", config.API_QUEUE_CONCURRENCY, config.API_QUEUE_BACKLOG)
        command_queue = TaskQueue("commands", config.COMMAND_QUEUE_CONCURRENCY, config.COMMAND_QUEUE_BACKLOG)
        background_queue = TaskQueue("background", config.BACKGROUND_QUEUE_CONCURRENCY, config.BACKGROUND_QUEUE_BACKLOG)

        http = UpstreamHttp(session, api_queue)
        tokens = TokenCache(http)
        api = TrackmaniaApi(http, tokens)
        names = DisplayNameClient(http)
        return cls(
            db=db,
            session=session,
            tokens=tokens,
            api=api,
            names=names,
            announcer=Announcer(db, bot, api, names),
            api_queue=api_queue,
            command_queue=command_queue,
            background_queue=background_queue,
            scheduler=Scheduler(background_queue),
        )

    async def check_campaign(self):
        return await run_with_auth_retry(
            "campaign check",
            lambda: run_campaign_cycle(self.db, self.api, self.announcer, self.names),
            self.tokens,
        )

    async def check_weekly_shorts(self):
        return await run_with_auth_retry(
            "weekly shorts check",
            lambda: run_weekly_shorts_cycle(self.db, self.api, self.announcer),
            self.tokens,
        )

    async def update_display_names(self):
        names = await refresh_display_names(self.db, self.names)
        logger.info(f"Display name update completed: {len(names)} names updated")

    def trigger_checks(self) -> bool:
        """Queue both polling cycles now (manual poll). False if either was rejected."""
        campaign = self.scheduler.submit(CAMPAIGN_JOB, self.check_campaign)
        weekly = self.scheduler.submit(WEEKLY_SHORTS_JOB, self.check_weekly_shorts)
        return campaign is not None and weekly is not None

    async def get_interval_minutes(self, job: str) -> int:
        default = config.CAMPAIGN_CHECK_MINUTES if job == CAMPAIGN_JOB else config.WEEKLY_SHORTS_CHECK_MINUTES
        value = await get_global_setting(self.db, INTERVAL_SETTINGS[job])
        try:
            minutes = int(value) if value is not None else default
        except ValueError:
            logger.warning(f"Ignoring invalid stored interval for {job}: {value!r}")
            minutes = default
        low, high = SEARCH_INTERVAL_RANGE
        return minutes if low <= minutes <= high else default

    async def set_interval_minutes(self, job: str, minutes: int) -> None:
        await set_global_setting(self.db, INTERVAL_SETTINGS[job], minutes)
        if job in self.scheduler.jobs:
            self.scheduler.reschedule(job, minutes * 60)
        logger.info(f"{job} interval set to {minutes} minutes")

    async def start_schedules(self) -> None:
        delay = config.INITIAL_CHECK_DELAY_SECS
        self.scheduler.schedule(
            CAMPAIGN_JOB, await self.get_interval_minutes(CAMPAIGN_JOB) * 60, self.check_campaign, initial_delay=delay
        )
        self.scheduler.schedule(
            WEEKLY_SHORTS_JOB,
            await self.get_interval_minutes(WEEKLY_SHORTS_JOB) * 60,
            self.check_weekly_shorts,
            initial_delay=delay * 2,
        )
        if self.names.enabled:
            self.scheduler.schedule(
                DISPLAY_NAMES_JOB,
                config.DISPLAY_NAME_REFRESH_HOURS * 3600,
                self.update_display_names,
                initial_delay=delay,
            )

    async def close(self) -> None:
        self.scheduler.stop()
        await self.background_queue.close()
        await self.command_queue.close()
        await self.api_queue.close()
        if self.session:
            await self.session.close()
        await self.db.close()
        logger.info("Tracker state closed")
