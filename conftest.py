import os

# Settings are read at import time; make the suite independent of any local .env
os.environ.setdefault("BOT_TOKEN", "123456:test-token")
os.environ.setdefault("ALLOWED_USER_ID", "42")
os.environ.setdefault("UBI_EMAIL", "tracker@example.com")
os.environ.setdefault("UBI_PASSWORD", "secret")

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from telegram import ChatMember
from telegram.error import TelegramError

from tmtracker.players import register_player
from tmtracker.state import TrackerState
from tmtracker.storage import CATEGORY_CAMPAIGN, Database, store_map, update_tenant
from tmtracker.task_queue import TaskQueue
from tmtracker.watchers import Scheduler


OPERATOR_ID = 42
ACCOUNT_A = "5b4d42f4-c2de-407d-b367-cbff3fe817bc"
ACCOUNT_B = "0b2d34a1-a2d0-4f0e-9c1c-5d1b40b01a11"


class FakeBot:
    """Records delivered messages; chats listed in ``failing`` raise like an unreachable chat."""

    def __init__(self, failing=()):
        self.sent = []
        self.failing = set(failing)

    def _deliver(self, chat_id, text):
        if chat_id in self.failing:
            raise TelegramError("Chat not found")
        self.sent.append((chat_id, text))

    async def send_message(self, chat_id, text, parse_mode=None):
        self._deliver(chat_id, text)

    async def send_photo(self, chat_id, photo, caption=None, parse_mode=None):
        self._deliver(chat_id, caption)

    @property
    def chats(self):
        return [chat_id for chat_id, _ in self.sent]


@pytest_asyncio.fixture
async def db():
    database = await Database(":memory:").connect()
    yield database
    await database.close()


@pytest.fixture
def bot():
    return FakeBot()


@pytest.fixture
def add_tenant(db):
    async def _add(tenant_id, **settings):
        return await update_tenant(db, tenant_id, **settings)
    return _add


@pytest.fixture
def add_player(db):
    async def _add(tenant_id, user_id, account_id, registered_at=None, username=None):
        player, _ = await register_player(db, tenant_id, user_id, account_id, username)
        if registered_at:
            await db.execute("UPDATE players SET registered_at = ? WHERE id = ?", (registered_at, player.id))
            player.registered_at = registered_at
        return player
    return _add


@pytest.fixture
def add_map(db):
    async def _add(map_uid="map-uid-1", name="Spring 2024 - 01", category=CATEGORY_CAMPAIGN, **kwargs):
        return await store_map(db, map_uid, f"id-{map_uid}", name, category, **kwargs)
    return _add


@pytest_asyncio.fixture
async def state(db, bot):
    background = TaskQueue("background", 1, 10)
    tracker = TrackerState(
        db=db,
        session=None,
        tokens=MagicMock(),
        api=MagicMock(),
        names=MagicMock(enabled=False),
        announcer=MagicMock(),
        api_queue=TaskQueue("api", 1, 10),
        command_queue=TaskQueue("commands", 2, 10),
        background_queue=background,
        scheduler=Scheduler(background),
    )
    yield tracker
    tracker.scheduler.stop()
    await background.close()


def make_update(chat_id=-1001, user_id=7, chat_type="supergroup"):
    update = MagicMock()
    update.effective_chat.id = chat_id
    update.effective_chat.type = chat_type
    update.effective_user.id = user_id
    update.effective_message.reply_text = AsyncMock()
    return update


def make_context(state, args=(), status=ChatMember.MEMBER):
    context = MagicMock()
    context.args = list(args)
    context.bot_data = {"tracker": state}
    context.bot.get_chat_member = AsyncMock(return_value=MagicMock(status=status))
    return context
