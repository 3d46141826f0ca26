from __future__ import annotations

from telegram import ChatMember, Update
from telegram.error import TelegramError
from telegram.ext import ContextTypes

from .config import ALLOWED_USER_ID, logger
from .i18n import t


GROUP_CHAT_TYPES = ("group", "supergroup")


def is_group_chat(update: Update) -> bool:
    return bool(update.effective_chat and update.effective_chat.type in GROUP_CHAT_TYPES)


def is_operator(update: Update) -> bool:
    return bool(update.effective_user and ALLOWED_USER_ID and update.effective_user.id == ALLOWED_USER_ID)


async def _member_status(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not update.effective_chat or not update.effective_user:
        return None
    try:
        member = await context.bot.get_chat_member(update.effective_chat.id, update.effective_user.id)
    except TelegramError as e:
        logger.warning(f"Could not look up member {update.effective_user.id} in chat {update.effective_chat.id}: {e}")
        return None
    return member.status


async def is_group_member(update: Update, context: ContextTypes.DEFAULT_TYPE) -> bool:
    status = await _member_status(update, context)
    return status in [ChatMember.MEMBER, ChatMember.ADMINISTRATOR, ChatMember.OWNER]


async def is_group_admin(update: Update, context: ContextTypes.DEFAULT_TYPE) -> bool:
    status = await _member_status(update, context)
    return status in [ChatMember.ADMINISTRATOR, ChatMember.OWNER]


async def guard_group(update: Update, context: ContextTypes.DEFAULT_TYPE, language: str = "en") -> bool:
    """Chat-scoped commands need a group chat and a member of it."""
    if not is_group_chat(update):
        await update.effective_message.reply_text(t(language, "error.group_only"))
        return False
    return await is_group_member(update, context)


async def guard_admin(update: Update, context: ContextTypes.DEFAULT_TYPE, language: str = "en") -> bool:
    if not is_group_chat(update):
        await update.effective_message.reply_text(t(language, "error.group_only"))
        return False
    if is_operator(update) or await is_group_admin(update, context):
        return True
    await update.effective_message.reply_text(t(language, "error.no_permission"))
    return False


async def guard_operator(update: Update, context: ContextTypes.DEFAULT_TYPE, language: str = "en") -> bool:
    if is_operator(update):
        return True
    await update.effective_message.reply_text(t(language, "error.not_authorized"))
    return False
