from __future__ import annotations

import re
from functools import wraps
from typing import Awaitable, Callable, List, Optional, Tuple

import aiosqlite
from telegram import Update
from telegram.ext import ContextTypes

from .auth import guard_admin, guard_group, guard_operator, is_operator
from .config import COUNTRY_NAMES, MIN_POSITION_RANGE, SEARCH_INTERVAL_RANGE, SUPPORTED_LANGUAGES, logger
from .formatting import escape_html, clean_map_name, fmt_leaderboard, fmt_recent_records
from .http import UpstreamAuthError, UpstreamError
from .i18n import t
from .players import get_player, register_player, unregister_player
from .records import get_recent_time_records
from .state import CAMPAIGN_JOB, WEEKLY_SHORTS_JOB, TrackerState
from .storage import Tenant, find_map, get_tenant, update_tenant
from .task_queue import QueueFullError


ACCOUNT_ID = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")

# (command, help key) grouped by who may run them
MEMBER_COMMANDS = [
    ("help", "cmd.help"),
    ("register", "cmd.register"),
    ("unregister", "cmd.unregister"),
    ("records", "cmd.records"),
    ("leaderboard", "cmd.leaderboard"),
]
ADMIN_COMMANDS = [
    ("setchannel", "cmd.setchannel"),
    ("setminposition", "cmd.setminposition"),
    ("toggle", "cmd.toggle"),
    ("language", "cmd.language"),
    ("setcountry", "cmd.setcountry"),
]
OPERATOR_COMMANDS = [
    ("checknow", "cmd.checknow"),
    ("setinterval", "cmd.setinterval"),
]

CATEGORY_ARGS = {"campaign": CAMPAIGN_JOB, "weekly": WEEKLY_SHORTS_JOB}
SWITCH_ARGS = {"on": True, "off": False}

CommandHandlerFunc = Callable[[Update, ContextTypes.DEFAULT_TYPE, TrackerState, Tenant], Awaitable[None]]


def get_state(context: ContextTypes.DEFAULT_TYPE) -> TrackerState:
    return context.bot_data["tracker"]


async def reply(update: Update, text: str) -> None:
    await update.effective_message.reply_text(text, parse_mode="HTML")


async def _chat_language(state: TrackerState, chat_id: int) -> str:
    try:
        return (await get_tenant(state.db, chat_id)).language
    except aiosqlite.Error as e:
        logger.warning(f"Could not load settings for chat {chat_id}: {e}")
        return "en"


def queued_command(handler: CommandHandlerFunc):
    """Run a command handler on the command queue, replying when it is full or fails."""
    @wraps(handler)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE):
        state = get_state(context)
        chat_id = update.effective_chat.id if update.effective_chat else 0

        async def run():
            language = "en"
            try:
                tenant = await get_tenant(state.db, chat_id)
                language = tenant.language
                await handler(update, context, state, tenant)
            except UpstreamAuthError as e:
                state.tokens.invalidate()
                logger.error(f"🔐 Auth failure in /{handler.__name__}: {e}")
                await reply(update, t(language, "error.generic"))
            except Exception as e:
                logger.exception(f"❌ Error handling /{handler.__name__} in chat {chat_id}: {e}")
                await reply(update, t(language, "error.generic"))

        try:
            future = state.command_queue.enqueue(run, f"command {handler.__name__} for chat {chat_id}")
        except QueueFullError:
            logger.warning(f"Command queue full, rejecting {handler.__name__} from chat {chat_id}")
            await reply(update, t(await _chat_language(state, chat_id), "error.queue_full"))
            return
        await future

    return wrapper


def _category(value: str) -> Optional[str]:
    return CATEGORY_ARGS.get(value.lower())


def _category_label(language: str, job: str) -> str:
    return t(language, "category.campaign" if job == CAMPAIGN_JOB else "category.weekly")


def _parse_int(value: str, bounds: Tuple[int, int]) -> Optional[int]:
    try:
        number = int(value)
    except ValueError:
        return None
    low, high = bounds
    return number if low <= number <= high else None


def _command_lines(language: str, commands: List[Tuple[str, str]]) -> List[str]:
    return [f"/{name} - {t(language, key)}" for name, key in commands]


@queued_command
async def help_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE, state: TrackerState, tenant: Tenant):
    language = tenant.language
    lines = [t(language, "help.title"), "", t(language, "help.members")]
    lines += _command_lines(language, MEMBER_COMMANDS)
    lines += ["", t(language, "help.admins")]
    lines += _command_lines(language, ADMIN_COMMANDS)
    if is_operator(update):
        lines += ["", t(language, "help.operator")]
        lines += _command_lines(language, OPERATOR_COMMANDS)
    await reply(update, "\n".join(lines))


start_cmd = help_cmd


@queued_command
async def register_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE, state: TrackerState, tenant: Tenant):
    language = tenant.language
    if not await guard_group(update, context, language):
        return
    if not context.args or not ACCOUNT_ID.match(context.args[0].strip()):
        await reply(update, t(language, "register.usage"))
        return

    account_id = context.args[0].strip().lower()
    username = None
    if state.names.enabled:
        try:
            names = await state.names.get_display_names([account_id])
            username = names.get(account_id)
        except (UpstreamError, QueueFullError) as e:
            logger.warning(f"Could not resolve display name for {account_id}: {e}")

    _, created = await register_player(
        state.db, update.effective_chat.id, update.effective_user.id, account_id, username
    )
    await reply(update, t(language, "register.success" if created else "register.updated"))


@queued_command
async def unregister_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE, state: TrackerState, tenant: Tenant):
    language = tenant.language
    if not await guard_group(update, context, language):
        return
    removed = await unregister_player(state.db, update.effective_chat.id, update.effective_user.id)
    await reply(update, t(language, "unregister.success" if removed else "unregister.not_registered"))


@queued_command
async def records_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE, state: TrackerState, tenant: Tenant):
    language = tenant.language
    if not await guard_group(update, context, language):
        return
    player = await get_player(state.db, update.effective_chat.id, update.effective_user.id)
    if not player:
        await reply(update, t(language, "records.not_registered"))
        return

    records = await get_recent_time_records(state.db, player.id)
    if not records:
        await reply(update, t(language, "records.none"))
        return
    title = t(language, "records.title", username=escape_html(player.display_name))
    await reply(update, fmt_recent_records(title, records))


@queued_command
async def leaderboard_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE, state: TrackerState, tenant: Tenant):
    language = tenant.language
    if not await guard_group(update, context, language):
        return
    country = COUNTRY_NAMES.get(tenant.country, tenant.country)

    if context.args:
        search = " ".join(context.args)
        map_row = await find_map(state.db, search)
        if not map_row:
            await reply(update, t(language, "leaderboard.no_map", map_name=escape_html(search)))
            return
        entries = await state.api.fetch_country_leaderboard(tenant.country, map_row["map_uid"])
        title = t(language, "leaderboard.title", country=country, map_name=escape_html(map_row["name"]))
        points = False
    else:
        campaign = await state.api.fetch_current_campaign()
        entries = await state.api.fetch_country_leaderboard(
            tenant.country, group_uid=campaign["leaderboardGroupUid"]
        )
        season = clean_map_name(campaign.get("name")) or ""
        title = t(language, "leaderboard.season_title", country=country, season=escape_html(season))
        points = True

    if not entries:
        await reply(update, t(language, "leaderboard.empty", country=country))
        return
    names = await state.names.get_display_names([e["accountId"] for e in entries if e.get("accountId")])
    await reply(update, fmt_leaderboard(title, entries, names, points=points))


@queued_command
async def setchannel_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE, state: TrackerState, tenant: Tenant):
    language = tenant.language
    if not await guard_admin(update, context, language):
        return
    job = _category(context.args[0]) if context.args else None
    channel = update.effective_chat.id
    if len(context.args or []) > 1:
        try:
            channel = int(context.args[1])
        except ValueError:
            job = None
    if not job:
        await reply(update, t(language, "setchannel.usage"))
        return

    setting = "records_channel_id" if job == CAMPAIGN_JOB else "weekly_shorts_channel_id"
    await update_tenant(state.db, update.effective_chat.id, **{setting: channel})
    await reply(update, t(language, "setchannel.changed", category=_category_label(language, job), channel=channel))


@queued_command
async def setminposition_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE, state: TrackerState, tenant: Tenant):
    language = tenant.language
    if not await guard_admin(update, context, language):
        return
    position = _parse_int(context.args[0], MIN_POSITION_RANGE) if context.args else None
    if position is None:
        await reply(update, t(language, "setminposition.usage"))
        return
    await update_tenant(state.db, update.effective_chat.id, min_world_position=position)
    await reply(update, t(language, "setminposition.changed", position=position))


@queued_command
async def toggle_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE, state: TrackerState, tenant: Tenant):
    language = tenant.language
    if not await guard_admin(update, context, language):
        return
    args = context.args or []
    job = _category(args[0]) if len(args) == 2 else None
    enabled = SWITCH_ARGS.get(args[1].lower()) if job else None
    if enabled is None:
        await reply(update, t(language, "toggle.usage"))
        return

    setting = "campaign_announcements_enabled" if job == CAMPAIGN_JOB else "weekly_shorts_announcements_enabled"
    label = _category_label(language, job)
    status = t(language, "status.enabled" if enabled else "status.disabled")
    if getattr(tenant, setting) == enabled:
        await reply(update, t(language, "toggle.already", category=label, status=status))
        return
    await update_tenant(state.db, update.effective_chat.id, **{setting: enabled})
    await reply(update, t(language, "toggle.changed", category=label, status=status))


@queued_command
async def language_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE, state: TrackerState, tenant: Tenant):
    if not await guard_admin(update, context, tenant.language):
        return
    language = context.args[0].lower() if context.args else None
    if language not in SUPPORTED_LANGUAGES:
        await reply(update, t(tenant.language, "language.usage"))
        return
    await update_tenant(state.db, update.effective_chat.id, language=language)
    await reply(update, t(language, "language.changed"))


@queued_command
async def setcountry_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE, state: TrackerState, tenant: Tenant):
    language = tenant.language
    if not await guard_admin(update, context, language):
        return
    country = context.args[0].upper() if context.args else None
    if country not in COUNTRY_NAMES:
        await reply(update, t(language, "setcountry.usage", countries=", ".join(COUNTRY_NAMES)))
        return
    await update_tenant(state.db, update.effective_chat.id, country=country)
    await reply(update, t(language, "setcountry.changed", country=COUNTRY_NAMES[country]))


@queued_command
async def checknow_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE, state: TrackerState, tenant: Tenant):
    if not await guard_operator(update, context, tenant.language):
        return
    if not state.trigger_checks():
        await reply(update, t(tenant.language, "error.queue_full"))
        return
    await reply(update, t(tenant.language, "checknow.queued"))


@queued_command
async def setinterval_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE, state: TrackerState, tenant: Tenant):
    language = tenant.language
    if not await guard_operator(update, context, language):
        return
    args = context.args or []
    job = _category(args[0]) if len(args) == 2 else None
    minutes = _parse_int(args[1], SEARCH_INTERVAL_RANGE) if job else None
    if minutes is None:
        await reply(update, t(language, "setinterval.usage"))
        return
    await state.set_interval_minutes(job, minutes)
    await reply(update, t(language, "setinterval.changed", category=_category_label(language, job), minutes=minutes))
