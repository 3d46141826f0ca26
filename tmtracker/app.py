from __future__ import annotations

from telegram import BotCommand, BotCommandScopeAllPrivateChats
from telegram.error import TelegramError
from telegram.ext import Application, CommandHandler
from telegram.request import HTTPXRequest

from .commands import (
    ADMIN_COMMANDS,
    MEMBER_COMMANDS,
    OPERATOR_COMMANDS,
    checknow_cmd,
    help_cmd,
    language_cmd,
    leaderboard_cmd,
    records_cmd,
    register_cmd,
    setchannel_cmd,
    setcountry_cmd,
    setinterval_cmd,
    setminposition_cmd,
    start_cmd,
    toggle_cmd,
    unregister_cmd,
)
from .config import AUDIENCE_LIVE, BOT_TOKEN, config, logger
from .http import UpstreamError
from .i18n import t
from .state import TrackerState
from .task_queue import QueueFullError
from .tokens import TokenCache


HANDLERS = {
    "start": start_cmd,
    "help": help_cmd,
    "register": register_cmd,
    "unregister": unregister_cmd,
    "records": records_cmd,
    "leaderboard": leaderboard_cmd,
    "setchannel": setchannel_cmd,
    "setminposition": setminposition_cmd,
    "toggle": toggle_cmd,
    "language": language_cmd,
    "setcountry": setcountry_cmd,
    "checknow": checknow_cmd,
    "setinterval": setinterval_cmd,
}


async def startup_health_check(tokens: TokenCache) -> bool:
    """Authenticate once against the live services before polling starts."""
    logger.info("🏥 Running startup health check...")
    try:
        await tokens.get_token(AUDIENCE_LIVE)
        logger.info("✅ Upstream authentication successful")
        return True
    except (UpstreamError, QueueFullError) as e:
        if getattr(e, "status", None) in (401, 403):
            logger.error("❌ Authentication failed - check UBI_EMAIL and UBI_PASSWORD")
        else:
            logger.error(f"❌ Upstream health check failed: {e}")
        return False


def bot_commands(language: str = "en", operator: bool = False):
    commands = MEMBER_COMMANDS + ADMIN_COMMANDS
    if operator:
        commands = commands + OPERATOR_COMMANDS
    return [BotCommand(name, t(language, key)) for name, key in commands]


def main():
    config.validate_config()

    # Configure request with longer timeout to prevent startup failures
    request = HTTPXRequest(
        connection_pool_size=8,
        connect_timeout=30.0,
        read_timeout=30.0,
        write_timeout=30.0,
        pool_timeout=30.0,
    )

    app = Application.builder().token(BOT_TOKEN).request(request).concurrent_updates(True).build()

    async def post_init(application: Application) -> None:
        state = await TrackerState.create(application.bot)
        application.bot_data["tracker"] = state

        try:
            logger.info("🔧 Setting up bot commands...")
            await application.bot.set_my_commands(bot_commands())
            await application.bot.set_my_commands(
                bot_commands(operator=True), scope=BotCommandScopeAllPrivateChats()
            )
            logger.info("✅ Bot commands configured successfully")
        except TelegramError as e:
            logger.error(f"❌ Failed to set bot commands: {e}")
            logger.warning("⚠️ Bot will continue but commands may not be visible in Telegram")

        if not await startup_health_check(state.tokens):
            logger.warning("⚠️ Starting anyway, scheduled checks will retry authentication")
        await state.start_schedules()

    async def post_shutdown(application: Application) -> None:
        state = application.bot_data.pop("tracker", None)
        if state:
            await state.close()

    app.post_init = post_init
    app.post_shutdown = post_shutdown

    for name, handler in HANDLERS.items():
        app.add_handler(CommandHandler(name, handler))

    app.run_polling(drop_pending_updates=True)
