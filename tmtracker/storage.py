from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

import aiosqlite

from .config import DEFAULT_COUNTRY, config, logger


SCHEMA = """
CREATE TABLE IF NOT EXISTS tenants (
    id INTEGER PRIMARY KEY,
    language TEXT NOT NULL DEFAULT 'en',
    country TEXT NOT NULL DEFAULT 'CHI',
    records_channel_id INTEGER,
    weekly_shorts_channel_id INTEGER,
    min_world_position INTEGER NOT NULL DEFAULT 5000,
    campaign_announcements_enabled INTEGER NOT NULL DEFAULT 1,
    weekly_shorts_announcements_enabled INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS players (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id INTEGER NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
    user_id INTEGER NOT NULL,
    account_id TEXT NOT NULL,
    username TEXT,
    registered_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (tenant_id, user_id)
);
CREATE INDEX IF NOT EXISTS idx_players_account ON players(account_id);

CREATE TABLE IF NOT EXISTS maps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    map_uid TEXT NOT NULL UNIQUE,
    map_id TEXT NOT NULL,
    name TEXT NOT NULL,
    category TEXT NOT NULL,
    season_uid TEXT,
    position INTEGER,
    thumbnail_url TEXT,
    last_checked TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS time_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    player_id INTEGER NOT NULL REFERENCES players(id) ON DELETE CASCADE,
    map_id INTEGER NOT NULL REFERENCES maps(id) ON DELETE CASCADE,
    time_ms INTEGER NOT NULL,
    recorded_at TEXT NOT NULL,
    announced INTEGER NOT NULL DEFAULT 0,
    UNIQUE (player_id, map_id)
);

CREATE TABLE IF NOT EXISTS time_record_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    player_id INTEGER NOT NULL REFERENCES players(id) ON DELETE CASCADE,
    map_id INTEGER NOT NULL REFERENCES maps(id) ON DELETE CASCADE,
    time_ms INTEGER NOT NULL,
    previous_time_ms INTEGER,
    recorded_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS rank_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    player_id INTEGER NOT NULL REFERENCES players(id) ON DELETE CASCADE,
    map_id INTEGER NOT NULL REFERENCES maps(id) ON DELETE CASCADE,
    position INTEGER,
    run_timestamp INTEGER NOT NULL,
    recorded_at TEXT NOT NULL,
    announced INTEGER NOT NULL DEFAULT 0,
    UNIQUE (player_id, map_id)
);

CREATE TABLE IF NOT EXISTS rank_record_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    player_id INTEGER NOT NULL REFERENCES players(id) ON DELETE CASCADE,
    map_id INTEGER NOT NULL REFERENCES maps(id) ON DELETE CASCADE,
    position INTEGER,
    previous_position INTEGER,
    run_timestamp INTEGER NOT NULL,
    recorded_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS announcement_status (
    tenant_id INTEGER NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
    rank_record_id INTEGER NOT NULL REFERENCES rank_records(id) ON DELETE CASCADE,
    ineligible INTEGER NOT NULL DEFAULT 0,
    predates_registration INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (tenant_id, rank_record_id)
);

CREATE TABLE IF NOT EXISTS global_settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


class Database:
    """Single aiosqlite connection shared by the whole process.

    Statements outside ``transaction()`` autocommit. ``transaction()`` holds the
    write lock for its whole block so read-then-write sequences from different
    tasks never interleave.
    """

    def __init__(self, path: str = config.DB_PATH):
        self.path = path
        self.conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        self._tx_owner: Optional[asyncio.Task] = None

    async def connect(self) -> "Database":
        if self.path != ":memory:":
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
        self.conn = await aiosqlite.connect(self.path, isolation_level=None)
        self.conn.row_factory = aiosqlite.Row
        await self.conn.execute("PRAGMA foreign_keys = ON;")
        await self.conn.execute("PRAGMA busy_timeout = 5000;")
        await self.conn.execute("PRAGMA journal_mode = WAL;")
        await self.conn.executescript(SCHEMA)
        logger.info(f"✅ Database ready at {self.path}")
        return self

    async def close(self) -> None:
        if self.conn:
            await self.conn.close()
            self.conn = None
            logger.info("Database connection closed")

    async def __aenter__(self) -> "Database":
        return await self.connect()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def _in_own_transaction(self) -> bool:
        return self._tx_owner is not None and self._tx_owner is asyncio.current_task()

    @asynccontextmanager
    async def transaction(self):
        """BEGIN on enter, COMMIT on success, ROLLBACK on exception."""
        assert self.conn
        if self._in_own_transaction():
            yield self
            return
        async with self._write_lock:
            self._tx_owner = asyncio.current_task()
            try:
                await self.conn.execute("BEGIN IMMEDIATE")
                try:
                    yield self
                except BaseException:
                    await self.conn.execute("ROLLBACK")
                    raise
                await self.conn.execute("COMMIT")
            finally:
                self._tx_owner = None

    async def execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        """Run a write statement and return the last inserted row id."""
        assert self.conn
        if self._in_own_transaction():
            cur = await self.conn.execute(sql, tuple(params))
        else:
            async with self._write_lock:
                cur = await self.conn.execute(sql, tuple(params))
        lastrowid = cur.lastrowid
        await cur.close()
        return lastrowid

    async def executemany(self, sql: str, params_list: Iterable[Iterable[Any]]) -> None:
        assert self.conn
        rows = [tuple(p) for p in params_list]
        if not rows:
            return
        if self._in_own_transaction():
            await self.conn.executemany(sql, rows)
        else:
            async with self._write_lock:
                await self.conn.executemany(sql, rows)

    async def fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[aiosqlite.Row]:
        assert self.conn
        cur = await self.conn.execute(sql, tuple(params))
        row = await cur.fetchone()
        await cur.close()
        return row

    async def fetchall(self, sql: str, params: Iterable[Any] = ()) -> List[aiosqlite.Row]:
        assert self.conn
        cur = await self.conn.execute(sql, tuple(params))
        rows = await cur.fetchall()
        await cur.close()
        return list(rows)


# --- Tenants ---------------------------------------------------------------

@dataclass
class Tenant:
    id: int
    language: str = "en"
    country: str = DEFAULT_COUNTRY
    records_channel_id: Optional[int] = None
    weekly_shorts_channel_id: Optional[int] = None
    min_world_position: int = config.DEFAULT_MIN_POSITION
    campaign_announcements_enabled: bool = True
    weekly_shorts_announcements_enabled: bool = True

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "Tenant":
        return cls(
            id=row["id"],
            language=row["language"],
            country=row["country"],
            records_channel_id=row["records_channel_id"],
            weekly_shorts_channel_id=row["weekly_shorts_channel_id"],
            min_world_position=row["min_world_position"],
            campaign_announcements_enabled=bool(row["campaign_announcements_enabled"]),
            weekly_shorts_announcements_enabled=bool(row["weekly_shorts_announcements_enabled"]),
        )


TENANT_SETTINGS = {f.name for f in fields(Tenant)} - {"id"}


async def get_tenant(db: Database, tenant_id: int) -> Tenant:
    """Stored settings for a chat, or defaults when it was never configured."""
    row = await db.fetchone("SELECT * FROM tenants WHERE id = ?", (tenant_id,))
    return Tenant.from_row(row) if row else Tenant(id=tenant_id)


async def ensure_tenant(db: Database, tenant_id: int) -> None:
    now = utc_now_iso()
    await db.execute(
        """INSERT OR IGNORE INTO tenants (id, min_world_position, created_at, updated_at)
           VALUES (?, ?, ?, ?)""",
        (tenant_id, config.DEFAULT_MIN_POSITION, now, now),
    )


async def update_tenant(db: Database, tenant_id: int, **settings: Any) -> Tenant:
    unknown = set(settings) - TENANT_SETTINGS
    if unknown:
        raise ValueError(f"Unknown tenant settings: {', '.join(sorted(unknown))}")

    async with db.transaction():
        await ensure_tenant(db, tenant_id)
        if settings:
            columns = ", ".join(f"{name} = ?" for name in settings)
            values = [int(v) if isinstance(v, bool) else v for v in settings.values()]
            await db.execute(
                f"UPDATE tenants SET {columns}, updated_at = ? WHERE id = ?",
                (*values, utc_now_iso(), tenant_id),
            )
    logger.info(f"Updated settings for chat {tenant_id}: {settings}")
    return await get_tenant(db, tenant_id)


async def list_tenants(db: Database) -> List[Tenant]:
    rows = await db.fetchall("SELECT * FROM tenants ORDER BY id")
    return [Tenant.from_row(r) for r in rows]


def lowest_min_position(tenants: List[Tenant], default: int) -> int:
    """Most restrictive visibility threshold across tenants, capped at ``default``."""
    return min([default] + [t.min_world_position for t in tenants])


# --- Global settings -------------------------------------------------------

async def get_global_setting(db: Database, key: str, default: Optional[str] = None) -> Optional[str]:
    row = await db.fetchone("SELECT value FROM global_settings WHERE key = ?", (key,))
    return row["value"] if row else default


async def set_global_setting(db: Database, key: str, value: Any) -> None:
    await db.execute(
        """INSERT INTO global_settings (key, value, updated_at) VALUES (?, ?, ?)
           ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
        (key, str(value), utc_now_iso()),
    )


# --- Maps ------------------------------------------------------------------

CATEGORY_CAMPAIGN = "campaign"
CATEGORY_WEEKLY_SHORTS = "weekly_shorts"


async def store_map(
    db: Database,
    map_uid: str,
    map_id: str,
    name: str,
    category: str,
    season_uid: Optional[str] = None,
    position: Optional[int] = None,
    thumbnail_url: Optional[str] = None,
) -> int:
    """Insert or refresh a map reference and return its row id."""
    await db.execute(
        """INSERT INTO maps (map_uid, map_id, name, category, season_uid, position, thumbnail_url, last_checked)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(map_uid) DO UPDATE SET
               map_id = excluded.map_id,
               name = excluded.name,
               category = excluded.category,
               season_uid = excluded.season_uid,
               position = excluded.position,
               thumbnail_url = excluded.thumbnail_url,
               last_checked = excluded.last_checked""",
        (map_uid, map_id, name, category, season_uid, position, thumbnail_url, utc_now_iso()),
    )
    row = await db.fetchone("SELECT id FROM maps WHERE map_uid = ?", (map_uid,))
    return row["id"]


async def find_map(db: Database, name: str, category: str = CATEGORY_CAMPAIGN) -> Optional[aiosqlite.Row]:
    """Most recently checked map of ``category`` whose name contains ``name``."""
    return await db.fetchone(
        """SELECT * FROM maps WHERE category = ? AND name LIKE ?
           ORDER BY last_checked DESC, id DESC LIMIT 1""",
        (category, f"%{name.strip()}%"),
    )
