from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from .config import logger
from .oauth import DisplayNameClient
from .storage import Database, ensure_tenant, utc_now_iso


def iso_to_epoch_ms(value: str) -> int:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed) into epoch milliseconds."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


@dataclass
class Player:
    id: int
    tenant_id: int
    user_id: int
    account_id: str
    username: Optional[str]
    registered_at: str

    @property
    def registered_at_ms(self) -> int:
        return iso_to_epoch_ms(self.registered_at)

    @property
    def display_name(self) -> str:
        return self.username or self.account_id

    @classmethod
    def from_row(cls, row) -> "Player":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            user_id=row["user_id"],
            account_id=row["account_id"],
            username=row["username"],
            registered_at=row["registered_at"],
        )


async def get_player(db: Database, tenant_id: int, user_id: int) -> Optional[Player]:
    row = await db.fetchone(
        "SELECT * FROM players WHERE tenant_id = ? AND user_id = ?", (tenant_id, user_id)
    )
    return Player.from_row(row) if row else None


async def list_players(db: Database) -> List[Player]:
    rows = await db.fetchall("SELECT * FROM players ORDER BY registered_at, id")
    return [Player.from_row(r) for r in rows]


async def register_player(
    db: Database,
    tenant_id: int,
    user_id: int,
    account_id: str,
    username: Optional[str] = None,
) -> Tuple[Player, bool]:
    """Bind a chat member to an upstream account.

    Returns the player and whether it was newly created. Switching to another
    account starts over: the old binding and its records are dropped.
    """
    account_id = account_id.strip()
    async with db.transaction():
        await ensure_tenant(db, tenant_id)
        existing = await get_player(db, tenant_id, user_id)
        now = utc_now_iso()

        if existing and existing.account_id == account_id:
            if username:
                await db.execute(
                    "UPDATE players SET username = ?, updated_at = ? WHERE id = ?",
                    (username, now, existing.id),
                )
            created = False
        else:
            if existing:
                await db.execute("DELETE FROM players WHERE id = ?", (existing.id,))
                logger.info(f"Player {user_id} in chat {tenant_id} switched account {existing.account_id} -> {account_id}")
            await db.execute(
                """INSERT INTO players (tenant_id, user_id, account_id, username, registered_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (tenant_id, user_id, account_id, username, now, now),
            )
            created = existing is None

    player = await get_player(db, tenant_id, user_id)
    logger.info(f"Registered account {account_id} for user {user_id} in chat {tenant_id}")
    return player, created


async def unregister_player(db: Database, tenant_id: int, user_id: int) -> bool:
    async with db.transaction():
        existing = await get_player(db, tenant_id, user_id)
        if not existing:
            return False
        await db.execute("DELETE FROM players WHERE id = ?", (existing.id,))
    logger.info(f"Unregistered user {user_id} from chat {tenant_id}")
    return True


def canonical_players(players: Iterable[Player]) -> Dict[str, Player]:
    """One tracked player per upstream account: the earliest registration wins.

    Records are owned by this binding and broadcast to every chat, so an account
    registered in several chats is still announced once per chat.
    """
    result: Dict[str, Player] = {}
    for player in sorted(players, key=lambda p: (p.registered_at_ms, p.id)):
        result.setdefault(player.account_id, player)
    return result


async def save_display_names(db: Database, names: Dict[str, str]) -> None:
    if not names:
        return
    now = utc_now_iso()
    await db.executemany(
        "UPDATE players SET username = ?, updated_at = ? WHERE account_id = ?",
        [(name, now, account_id) for account_id, name in names.items()],
    )


async def refresh_display_names(
    db: Database, names_client: DisplayNameClient, account_ids: Optional[Iterable[str]] = None
) -> Dict[str, str]:
    """Fetch current display names (all players when ``account_ids`` is None) and store them."""
    if not names_client.enabled:
        return {}
    if account_ids is None:
        rows = await db.fetchall("SELECT DISTINCT account_id FROM players")
        ids = [r["account_id"] for r in rows]
        use_cache = False
    else:
        ids = list(account_ids)
        use_cache = True
    if not ids:
        return {}
    names = await names_client.get_display_names(ids, use_cache=use_cache)
    await save_display_names(db, names)
    logger.info(f"Updated display names for {len(names)}/{len(ids)} accounts")
    return names
