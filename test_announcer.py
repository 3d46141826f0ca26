from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import ACCOUNT_A, FakeBot
from tmtracker.announcer import Announcer, DeliveryResult, resolve_channel
from tmtracker.http import UpstreamAuthError, UpstreamError
from tmtracker.ranks import apply_rank_update, get_unannounced_rank_records, process_map_rank_records
from tmtracker.players import canonical_players, list_players
from tmtracker.records import get_unannounced_time_records, update_time_record
from tmtracker.storage import CATEGORY_CAMPAIGN, CATEGORY_WEEKLY_SHORTS, Tenant, list_tenants


pytestmark = pytest.mark.asyncio


def _announcer(db, bot, world_position=None):
    api = MagicMock()
    api.fetch_record_position = AsyncMock(return_value=world_position)
    return Announcer(db, bot, api, names=None, delay=0)


async def _rank_record(db, add_tenant, add_player, add_map, position, tenant_settings=None):
    tenant_settings = tenant_settings or {}
    for tenant_id in (-1001, -1002):
        await add_tenant(tenant_id, **tenant_settings.get(tenant_id, {}))
    player = await add_player(-1001, 7, ACCOUNT_A, username="Speedy")
    map_id = await add_map("weekly-1", "1 - Shorty", CATEGORY_WEEKLY_SHORTS)
    return await apply_rank_update(db, player.id, map_id, 2000, position, await list_tenants(db), 10000)


async def test_delivery_result_completion():
    assert DeliveryResult().complete
    assert DeliveryResult(delivered=1, failed=2).complete
    assert not DeliveryResult(failed=1).complete


async def test_channel_resolution():
    plain = Tenant(id=-1001)
    records = Tenant(id=-1001, records_channel_id=-2001)
    both = Tenant(id=-1001, records_channel_id=-2001, weekly_shorts_channel_id=-3001)

    assert resolve_channel(plain, CATEGORY_CAMPAIGN) == -1001
    assert resolve_channel(records, CATEGORY_WEEKLY_SHORTS) == -2001
    assert resolve_channel(both, CATEGORY_WEEKLY_SHORTS) == -3001
    assert resolve_channel(both, CATEGORY_CAMPAIGN) == -2001
    assert resolve_channel(Tenant(id=0), CATEGORY_CAMPAIGN) is None


async def test_rank_record_is_broadcast_to_every_chat(db, bot, add_tenant, add_player, add_map):
    await _rank_record(db, add_tenant, add_player, add_map, 50)

    announced = await _announcer(db, bot).announce_rank_records()

    assert announced == 1
    assert sorted(bot.chats) == [-1002, -1001]
    assert "Speedy" in bot.sent[0][1]
    assert "#50" in bot.sent[0][1]
    assert await get_unannounced_rank_records(db) == []


async def test_each_chat_applies_its_own_threshold(db, bot, add_tenant, add_player, add_map):
    await _rank_record(
        db, add_tenant, add_player, add_map, 50,
        tenant_settings={-1002: {"min_world_position": 10}},
    )

    await _announcer(db, bot).announce_rank_records()

    assert bot.chats == [-1001]
    assert await get_unannounced_rank_records(db) == []


async def test_disabled_chat_gets_nothing(db, bot, add_tenant, add_player, add_map):
    await _rank_record(
        db, add_tenant, add_player, add_map, 50,
        tenant_settings={-1001: {"weekly_shorts_announcements_enabled": False}},
    )

    await _announcer(db, bot).announce_rank_records()

    assert bot.chats == [-1002]


async def test_configured_channel_receives_weekly_records(db, bot, add_tenant, add_player, add_map):
    await _rank_record(
        db, add_tenant, add_player, add_map, 50,
        tenant_settings={-1001: {"weekly_shorts_channel_id": -3001}},
    )

    await _announcer(db, bot).announce_rank_records()

    assert sorted(bot.chats) == [-3001, -1002]


async def test_each_record_is_announced_at_most_once(db, bot, add_tenant, add_player, add_map):
    await _rank_record(db, add_tenant, add_player, add_map, 50)
    announcer = _announcer(db, bot)

    await announcer.announce_rank_records()
    await db.execute("DELETE FROM announcement_status")
    await announcer.announce_rank_records()

    assert len(bot.sent) == 2
    assert await get_unannounced_rank_records(db) == []


async def test_stale_run_after_announcement_is_ignored(db, bot, add_tenant, add_player, add_map):
    tenants = [await add_tenant(-1001, min_world_position=5000)]
    await add_player(-1001, 7, ACCOUNT_A, registered_at="2024-01-01T00:00:00.000+00:00")
    players = canonical_players(await list_players(db))
    map_id = await add_map("weekly-1", "1 - Shorty", CATEGORY_WEEKLY_SHORTS)
    api = MagicMock()
    announcer = _announcer(db, bot)

    api.find_player_positions = AsyncMock(return_value={ACCOUNT_A: {"position": 4200}})
    await process_map_rank_records(
        db, api, map_id, "weekly-1", "season-1",
        [{"accountId": ACCOUNT_A, "timestamp": "2024-02-02T00:00:00Z"}], players, tenants, 5000,
    )
    await announcer.announce_rank_records()

    api.find_player_positions = AsyncMock(return_value={ACCOUNT_A: {"position": 10}})
    updates = await process_map_rank_records(
        db, api, map_id, "weekly-1", "season-1",
        [{"accountId": ACCOUNT_A, "timestamp": "2024-02-01T00:00:00Z"}], players, tenants, 5000,
    )
    await announcer.announce_rank_records()

    assert updates == []
    api.find_player_positions.assert_not_awaited()
    assert bot.chats == [-1001]
    assert "#4200" in bot.sent[0][1]


async def test_total_delivery_failure_is_retried(db, add_tenant, add_player, add_map):
    await _rank_record(db, add_tenant, add_player, add_map, 50)
    unreachable = FakeBot(failing={-1001, -1002})

    assert await _announcer(db, unreachable).announce_rank_records() == 0
    assert len(await get_unannounced_rank_records(db)) == 1

    recovered = FakeBot()
    assert await _announcer(db, recovered).announce_rank_records() == 1
    assert sorted(recovered.chats) == [-1002, -1001]


async def test_partial_delivery_still_completes(db, add_tenant, add_player, add_map):
    await _rank_record(db, add_tenant, add_player, add_map, 50)
    flaky = FakeBot(failing={-1002})

    assert await _announcer(db, flaky).announce_rank_records() == 1
    assert flaky.chats == [-1001]
    assert await get_unannounced_rank_records(db) == []


async def test_pre_registration_placeholder_is_never_announced(db, bot, add_tenant, add_player, add_map):
    await add_tenant(-1001)
    await add_player(-1001, 7, ACCOUNT_A, registered_at="2024-01-01T00:00:00.000+00:00")
    map_id = await add_map("weekly-1", "1 - Shorty", CATEGORY_WEEKLY_SHORTS)
    api = MagicMock()
    api.find_player_positions = AsyncMock(return_value={})
    await process_map_rank_records(
        db, api, map_id, "weekly-1", "season-1",
        [{"accountId": ACCOUNT_A, "timestamp": "2023-06-01T00:00:00Z"}],
        canonical_players(await list_players(db)), await list_tenants(db), 5000,
    )

    await _announcer(db, bot).announce_rank_records()

    assert bot.sent == []
    assert await get_unannounced_rank_records(db) == []


async def test_chat_created_after_the_run_still_respects_threshold(db, bot, add_tenant, add_player, add_map):
    await _rank_record(db, add_tenant, add_player, add_map, 500)
    await add_tenant(-1003, min_world_position=100)

    await _announcer(db, bot).announce_rank_records()

    assert sorted(bot.chats) == [-1002, -1001]


# --- Campaign records ------------------------------------------------------

async def _time_record(db, add_tenant, add_player, add_map, tenant_settings=None):
    tenant_settings = tenant_settings or {}
    for tenant_id in (-1001, -1002):
        await add_tenant(tenant_id, **tenant_settings.get(tenant_id, {}))
    player = await add_player(-1001, 7, ACCOUNT_A, username="Speedy")
    map_id = await add_map("campaign-1", "Spring 2024 - 01")
    await update_time_record(db, player.id, map_id, 45123)
    await update_time_record(db, player.id, map_id, 44900)


async def test_time_record_is_broadcast_with_world_position(db, bot, add_tenant, add_player, add_map):
    await _time_record(db, add_tenant, add_player, add_map)

    announced = await _announcer(db, bot, world_position=1234).announce_time_records()

    assert announced == 1
    assert sorted(bot.chats) == [-1002, -1001]
    text = bot.sent[0][1]
    assert "0:44.900" not in text
    assert "44.900" in text
    assert "(-0.223)" in text
    assert "#1234" in text
    assert await get_unannounced_time_records(db) == []


async def test_time_record_respects_chat_threshold(db, bot, add_tenant, add_player, add_map):
    await _time_record(
        db, add_tenant, add_player, add_map,
        tenant_settings={-1002: {"min_world_position": 1000}},
    )

    await _announcer(db, bot, world_position=1234).announce_time_records()

    assert bot.chats == [-1001]


async def test_unknown_world_position_is_shown_everywhere(db, bot, add_tenant, add_player, add_map):
    await _time_record(
        db, add_tenant, add_player, add_map,
        tenant_settings={-1002: {"min_world_position": 1000}},
    )
    announcer = _announcer(db, bot)
    announcer.api.fetch_record_position.side_effect = UpstreamError("leaderboard unavailable", status=503)

    await announcer.announce_time_records()

    assert sorted(bot.chats) == [-1002, -1001]


async def test_campaign_disabled_chat_is_skipped(db, bot, add_tenant, add_player, add_map):
    await _time_record(
        db, add_tenant, add_player, add_map,
        tenant_settings={-1002: {"campaign_announcements_enabled": False}},
    )

    await _announcer(db, bot, world_position=10).announce_time_records()

    assert bot.chats == [-1001]


async def test_display_name_auth_failure_does_not_block_announcements(db, bot, add_tenant, add_player, add_map):
    await add_tenant(-1001)
    player = await add_player(-1001, 7, ACCOUNT_A)
    map_id = await add_map("campaign-1", "Spring 2024 - 01")
    await update_time_record(db, player.id, map_id, 45123)
    names = MagicMock(enabled=True)
    names.get_display_names = AsyncMock(side_effect=UpstreamAuthError("bad oauth creds", status=401))
    announcer = _announcer(db, bot, world_position=10)
    announcer.names = names

    assert await announcer.announce_time_records() == 1
    assert bot.chats == [-1001]
    assert await get_unannounced_time_records(db) == []
