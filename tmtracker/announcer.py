from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from telegram.error import TelegramError

from .api import TrackmaniaApi
from .config import config, logger
from .formatting import Notification, build_rank_notification, build_time_notification, render_html
from .http import UpstreamAuthError, UpstreamError
from .oauth import DisplayNameClient
from .players import refresh_display_names
from .ranks import (
    get_suppressed_record_ids,
    get_unannounced_rank_records,
    mark_rank_records_announced,
    mark_status,
)
from .records import get_unannounced_time_records, mark_time_records_announced
from .storage import CATEGORY_CAMPAIGN, CATEGORY_WEEKLY_SHORTS, Database, Tenant, list_tenants
from .task_queue import QueueFullError


@dataclass
class DeliveryResult:
    delivered: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def complete(self) -> bool:
        """Whether the record can be marked announced.

        False only when every attempted send failed, so the next cycle retries it.
        """
        return self.delivered > 0 or self.failed == 0


def resolve_channel(tenant: Tenant, category: str) -> Optional[int]:
    """Configured channel for the category, else the records channel, else the group chat itself."""
    if category == CATEGORY_WEEKLY_SHORTS and tenant.weekly_shorts_channel_id:
        return tenant.weekly_shorts_channel_id
    if tenant.records_channel_id:
        return tenant.records_channel_id
    return tenant.id or None


class Announcer:
    """Sends unannounced records to every chat that may see them, then marks them announced."""

    def __init__(
        self,
        db: Database,
        bot,
        api: TrackmaniaApi,
        names: Optional[DisplayNameClient] = None,
        delay: float = config.ANNOUNCE_DELAY_SECS,
    ):
        self.db = db
        self.bot = bot
        self.api = api
        self.names = names
        self.delay = delay

    async def send(self, chat_id: int, notification: Notification) -> bool:
        text = render_html(notification)
        try:
            if notification.thumbnail_url:
                await self.bot.send_photo(
                    chat_id=chat_id, photo=notification.thumbnail_url, caption=text, parse_mode="HTML"
                )
            else:
                await self.bot.send_message(chat_id, text, parse_mode="HTML")
            return True
        except TelegramError as e:
            logger.error(f"❌ Failed to send announcement to chat {chat_id}: {e}")
            return False

    async def _deliver(
        self,
        record_id: int,
        category: str,
        tenants: Iterable[Tenant],
        build: Callable[[Tenant], Notification],
    ) -> DeliveryResult:
        result = DeliveryResult()
        for tenant in tenants:
            channel = resolve_channel(tenant, category)
            if channel is None:
                logger.warning(f"No announcement channel for chat {tenant.id}, skipping record {record_id}")
                result.skipped += 1
                continue
            if await self.send(channel, build(tenant)):
                result.delivered += 1
                logger.info(f"📣 Announced {category} record {record_id} to chat {tenant.id} (channel {channel})")
            else:
                result.failed += 1
            await asyncio.sleep(self.delay)
        return result

    async def _fill_display_names(self, records: List[Dict[str, Any]]) -> None:
        if not self.names or not self.names.enabled:
            return
        missing = {r["account_id"] for r in records if not r.get("username") or r["username"] == r["account_id"]}
        if not missing:
            return
        try:
            names = await refresh_display_names(self.db, self.names, missing)
        except (UpstreamError, QueueFullError) as e:
            logger.warning(f"Failed to fetch display names for announcements: {e}")
            return
        for record in records:
            if record["account_id"] in names:
                record["username"] = names[record["account_id"]]

    async def announce_time_records(self) -> int:
        records = await get_unannounced_time_records(self.db)
        if not records:
            return 0
        logger.info(f"Announcing {len(records)} campaign record(s)")
        await self._fill_display_names(records)
        tenants = [t for t in await list_tenants(self.db) if t.campaign_announcements_enabled]

        announced = 0
        for record in records:
            world_position = None
            if tenants:
                try:
                    world_position = await self.api.fetch_record_position(record["map_uid"], record["time_ms"])
                except UpstreamAuthError:
                    raise
                except (UpstreamError, QueueFullError) as e:
                    logger.warning(f"Could not fetch world position for record {record['record_id']}: {e}")

            visible = [
                t for t in tenants
                if world_position is None or world_position <= t.min_world_position
            ]
            result = await self._deliver(
                record["record_id"],
                CATEGORY_CAMPAIGN,
                visible,
                lambda tenant: build_time_notification(record, tenant.language, world_position),
            )
            if result.complete:
                await mark_time_records_announced(self.db, [record["record_id"]])
                announced += 1
            else:
                logger.warning(f"Campaign record {record['record_id']} not delivered anywhere, will retry")
        return announced

    async def announce_rank_records(self) -> int:
        records = await get_unannounced_rank_records(self.db)
        if not records:
            return 0
        logger.info(f"Announcing {len(records)} weekly shorts record(s)")
        await self._fill_display_names(records)
        tenants = await list_tenants(self.db)
        suppressed = {t.id: await get_suppressed_record_ids(self.db, t.id) for t in tenants}

        announced = 0
        for record in records:
            record_id = record["record_id"]
            position = record["position"]
            visible: List[Tenant] = []
            for tenant in tenants:
                if record_id in suppressed[tenant.id]:
                    continue
                if (
                    not tenant.weekly_shorts_announcements_enabled
                    or position is None
                    or position > tenant.min_world_position
                ):
                    await mark_status(self.db, record_id, [tenant.id], ineligible=True)
                    continue
                visible.append(tenant)

            result = await self._deliver(
                record_id,
                CATEGORY_WEEKLY_SHORTS,
                visible,
                lambda tenant: build_rank_notification(record, tenant.language),
            )
            if result.complete:
                await mark_rank_records_announced(self.db, [record_id])
                announced += 1
            else:
                logger.warning(f"Weekly shorts record {record_id} not delivered anywhere, will retry")
        return announced
