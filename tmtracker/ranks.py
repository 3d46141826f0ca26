from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set

import aiosqlite

from .api import TrackmaniaApi
from .config import logger
from .players import Player, iso_to_epoch_ms
from .storage import Database, Tenant, utc_now_iso


@dataclass
class RankUpdate:
    record_id: int
    player_id: int
    position: Optional[int]
    previous_position: Optional[int]
    run_timestamp: int


async def get_rank_record(db: Database, player_id: int, map_id: int) -> Optional[aiosqlite.Row]:
    return await db.fetchone(
        "SELECT id, position, run_timestamp, announced FROM rank_records WHERE player_id = ? AND map_id = ?",
        (player_id, map_id),
    )


def is_newer_run(current: Optional[aiosqlite.Row], run_timestamp: int) -> bool:
    return current is None or run_timestamp > current["run_timestamp"]


async def mark_status(
    db: Database,
    record_id: int,
    tenant_ids: Iterable[int],
    ineligible: bool = False,
    predates_registration: bool = False,
) -> None:
    """Set per-chat suppression flags for a record. Flags only ever get raised."""
    await db.executemany(
        """INSERT INTO announcement_status (tenant_id, rank_record_id, ineligible, predates_registration)
           VALUES (?, ?, ?, ?)
           ON CONFLICT(tenant_id, rank_record_id) DO UPDATE SET
               ineligible = MAX(ineligible, excluded.ineligible),
               predates_registration = MAX(predates_registration, excluded.predates_registration)""",
        [(tenant_id, record_id, int(ineligible), int(predates_registration)) for tenant_id in tenant_ids],
    )


async def _write_run(
    db: Database,
    current: Optional[aiosqlite.Row],
    player_id: int,
    map_id: int,
    run_timestamp: int,
    position: Optional[int],
) -> int:
    now = utc_now_iso()
    previous = current["position"] if current else None
    await db.execute(
        """INSERT INTO rank_record_history (player_id, map_id, position, previous_position, run_timestamp, recorded_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (player_id, map_id, position, previous, run_timestamp, now),
    )
    if current is None:
        return await db.execute(
            """INSERT INTO rank_records (player_id, map_id, position, run_timestamp, recorded_at, announced)
               VALUES (?, ?, ?, ?, ?, 0)""",
            (player_id, map_id, position, run_timestamp, now),
        )
    await db.execute(
        "UPDATE rank_records SET position = ?, run_timestamp = ?, recorded_at = ?, announced = 0 WHERE id = ?",
        (position, run_timestamp, now, current["id"]),
    )
    # Flags belong to the run they were computed for
    await db.execute("DELETE FROM announcement_status WHERE rank_record_id = ?", (current["id"],))
    return current["id"]


async def record_pre_registration_run(
    db: Database, player_id: int, map_id: int, run_timestamp: int, tenant_ids: Iterable[int]
) -> Optional[int]:
    """Store a run set before the player registered as a position-less placeholder.

    Every chat gets a predates-registration flag so it is never announced.
    Returns None when the run is not newer than what is stored.
    """
    async with db.transaction():
        current = await get_rank_record(db, player_id, map_id)
        if not is_newer_run(current, run_timestamp):
            return None
        record_id = await _write_run(db, current, player_id, map_id, run_timestamp, None)
        await mark_status(db, record_id, tenant_ids, predates_registration=True)
        return record_id


async def apply_rank_update(
    db: Database,
    player_id: int,
    map_id: int,
    run_timestamp: int,
    position: Optional[int],
    tenants: List[Tenant],
    cutoff: int,
) -> Optional[RankUpdate]:
    """Accept a run strictly newer than the stored one and flag chats that cannot see it.

    A position missing or beyond ``cutoff`` (the strictest chat limit, which
    bounds the leaderboard search) is ineligible everywhere. Chats with weekly shorts disabled are
    flagged too. Other chats are re-checked against their own limit at announce time.
    """
    async with db.transaction():
        current = await get_rank_record(db, player_id, map_id)
        if not is_newer_run(current, run_timestamp):
            return None
        previous = current["position"] if current else None
        record_id = await _write_run(db, current, player_id, map_id, run_timestamp, position)

        if position is None or position > cutoff:
            await mark_status(db, record_id, [t.id for t in tenants], ineligible=True)
        else:
            disabled = [t.id for t in tenants if not t.weekly_shorts_announcements_enabled]
            await mark_status(db, record_id, disabled, ineligible=True)

    return RankUpdate(record_id, player_id, position, previous, run_timestamp)


async def process_map_rank_records(
    db: Database,
    api: TrackmaniaApi,
    map_row_id: int,
    map_uid: str,
    season_uid: str,
    records: List[Dict[str, Any]],
    players: Dict[str, Player],
    tenants: List[Tenant],
    cutoff: int,
) -> List[RankUpdate]:
    """Run one map's fetched season records through the rank ledger."""
    tenant_ids = [t.id for t in tenants]
    candidates: Dict[str, int] = {}

    for record in records:
        if record.get("removed"):
            continue
        try:
            account_id = record["accountId"]
            run_timestamp = iso_to_epoch_ms(record["timestamp"])
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed weekly shorts record on {map_uid}: {e!r}")
            continue

        player = players.get(account_id)
        if not player:
            logger.warning(f"Unknown player with accountId {account_id}")
            continue

        current = await get_rank_record(db, player.id, map_row_id)
        if not is_newer_run(current, run_timestamp):
            logger.debug(f"Run for {account_id} on {map_uid} already stored - skipping")
            continue

        if run_timestamp < player.registered_at_ms:
            try:
                await record_pre_registration_run(db, player.id, map_row_id, run_timestamp, tenant_ids)
                logger.info(f"Stored pre-registration run for {account_id} on {map_uid} without position")
            except aiosqlite.IntegrityError as e:
                logger.warning(f"Could not store run for {account_id} on {map_uid}: {e}")
            continue

        candidates[account_id] = run_timestamp

    if not candidates:
        return []

    logger.info(f"Fetching positions for {len(candidates)} new run(s) on {map_uid} (cutoff {cutoff})")
    positions = await api.find_player_positions(season_uid, map_uid, list(candidates), cutoff)

    updates: List[RankUpdate] = []
    for account_id, run_timestamp in candidates.items():
        player = players[account_id]
        position = (positions.get(account_id) or {}).get("position")
        if position is None:
            logger.info(f"Position for {account_id} on {map_uid} not within top {cutoff}")
        try:
            update = await apply_rank_update(
                db, player.id, map_row_id, run_timestamp, position, tenants, cutoff
            )
        except aiosqlite.IntegrityError as e:
            logger.warning(f"Could not store run for {account_id} on {map_uid}: {e}")
            continue
        if update:
            logger.info(f"Rank update for {account_id} on {map_uid}: #{position} (previous #{update.previous_position})")
            updates.append(update)
    return updates


UNANNOUNCED_RANK_RECORDS_SQL = """
SELECT
    r.id AS record_id,
    r.position,
    r.run_timestamp,
    r.recorded_at,
    p.id AS player_id,
    p.tenant_id AS player_tenant_id,
    p.user_id,
    p.account_id,
    p.username,
    m.map_uid,
    m.name AS map_name,
    m.thumbnail_url,
    (SELECT h.previous_position FROM rank_record_history h
      WHERE h.player_id = r.player_id AND h.map_id = r.map_id
      ORDER BY h.id DESC LIMIT 1) AS previous_position
FROM rank_records r
JOIN players p ON r.player_id = p.id
JOIN maps m ON r.map_id = m.id
WHERE r.announced = 0
{tenant_filter}
ORDER BY r.recorded_at ASC, r.id ASC
"""

TENANT_FILTER_SQL = """
AND NOT EXISTS (
    SELECT 1 FROM announcement_status s
    WHERE s.rank_record_id = r.id AND s.tenant_id = ?
      AND (s.ineligible = 1 OR s.predates_registration = 1)
)
"""


async def get_unannounced_rank_records(db: Database, tenant_id: Optional[int] = None) -> List[Dict[str, Any]]:
    """Unannounced rank records, optionally only those not suppressed for ``tenant_id``."""
    if tenant_id is None:
        rows = await db.fetchall(UNANNOUNCED_RANK_RECORDS_SQL.format(tenant_filter=""))
    else:
        rows = await db.fetchall(UNANNOUNCED_RANK_RECORDS_SQL.format(tenant_filter=TENANT_FILTER_SQL), (tenant_id,))
    return [dict(r) for r in rows]


async def get_suppressed_record_ids(db: Database, tenant_id: int) -> Set[int]:
    rows = await db.fetchall(
        """SELECT rank_record_id FROM announcement_status
           WHERE tenant_id = ? AND (ineligible = 1 OR predates_registration = 1)""",
        (tenant_id,),
    )
    return {r["rank_record_id"] for r in rows}


async def mark_rank_records_announced(db: Database, record_ids: Iterable[int]) -> None:
    ids = list(record_ids)
    if not ids:
        return
    placeholders = ",".join("?" for _ in ids)
    async with db.transaction():
        await db.execute(f"UPDATE rank_records SET announced = 1 WHERE id IN ({placeholders})", ids)
        await db.execute(f"DELETE FROM announcement_status WHERE rank_record_id IN ({placeholders})", ids)
    logger.debug(f"Marked {len(ids)} rank record(s) as announced")
