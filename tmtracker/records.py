from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .config import logger
from .storage import Database, utc_now_iso


class TimeOutcome(Enum):
    FIRST = "first"
    IMPROVED = "improved"
    UNCHANGED = "unchanged"


@dataclass
class TimeRecordResult:
    outcome: TimeOutcome
    time_ms: int
    previous_time_ms: Optional[int] = None

    @property
    def delta_ms(self) -> Optional[int]:
        if self.previous_time_ms is None:
            return None
        return self.previous_time_ms - self.time_ms

    @property
    def changed(self) -> bool:
        return self.outcome is not TimeOutcome.UNCHANGED


def record_time_ms(record: Dict[str, Any]) -> Optional[int]:
    """Personal-best time from a map record payload, if present."""
    score = record.get("recordScore") or {}
    value = score.get("time") or record.get("time")
    return int(value) if value else None


async def update_time_record(db: Database, player_id: int, map_id: int, time_ms: int) -> TimeRecordResult:
    """Apply an observed personal best.

    A first observation and a strictly faster time each append a history row and
    leave the record unannounced. Anything else writes nothing.
    """
    async with db.transaction():
        current = await db.fetchone(
            "SELECT id, time_ms FROM time_records WHERE player_id = ? AND map_id = ?",
            (player_id, map_id),
        )
        now = utc_now_iso()

        if current is None:
            await db.execute(
                """INSERT INTO time_record_history (player_id, map_id, time_ms, previous_time_ms, recorded_at)
                   VALUES (?, ?, ?, NULL, ?)""",
                (player_id, map_id, time_ms, now),
            )
            await db.execute(
                """INSERT INTO time_records (player_id, map_id, time_ms, recorded_at, announced)
                   VALUES (?, ?, ?, ?, 0)""",
                (player_id, map_id, time_ms, now),
            )
            return TimeRecordResult(TimeOutcome.FIRST, time_ms)

        previous = current["time_ms"]
        if time_ms < previous:
            await db.execute(
                """INSERT INTO time_record_history (player_id, map_id, time_ms, previous_time_ms, recorded_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (player_id, map_id, time_ms, previous, now),
            )
            await db.execute(
                "UPDATE time_records SET time_ms = ?, recorded_at = ?, announced = 0 WHERE id = ?",
                (time_ms, now, current["id"]),
            )
            return TimeRecordResult(TimeOutcome.IMPROVED, time_ms, previous)

        return TimeRecordResult(TimeOutcome.UNCHANGED, previous)


UNANNOUNCED_TIME_RECORDS_SQL = """
SELECT
    r.id AS record_id,
    r.time_ms,
    r.recorded_at,
    p.id AS player_id,
    p.tenant_id AS player_tenant_id,
    p.user_id,
    p.account_id,
    p.username,
    m.map_uid,
    m.name AS map_name,
    m.thumbnail_url,
    (SELECT h.previous_time_ms FROM time_record_history h
      WHERE h.player_id = r.player_id AND h.map_id = r.map_id
      ORDER BY h.id DESC LIMIT 1) AS previous_time_ms
FROM time_records r
JOIN players p ON r.player_id = p.id
JOIN maps m ON r.map_id = m.id
WHERE r.announced = 0
ORDER BY r.recorded_at ASC, r.id ASC
"""


async def get_unannounced_time_records(db: Database) -> List[Dict[str, Any]]:
    rows = await db.fetchall(UNANNOUNCED_TIME_RECORDS_SQL)
    return [dict(r) for r in rows]


async def mark_time_records_announced(db: Database, record_ids: Iterable[int]) -> None:
    ids = list(record_ids)
    if not ids:
        return
    placeholders = ",".join("?" for _ in ids)
    await db.execute(f"UPDATE time_records SET announced = 1 WHERE id IN ({placeholders})", ids)
    logger.debug(f"Marked {len(ids)} time record(s) as announced")


async def get_recent_time_records(db: Database, player_id: int, limit: int = 10) -> List[Dict[str, Any]]:
    rows = await db.fetchall(
        """SELECT h.time_ms, h.previous_time_ms, h.recorded_at, m.name AS map_name
           FROM time_record_history h
           JOIN maps m ON h.map_id = m.id
           WHERE h.player_id = ?
           ORDER BY h.id DESC
           LIMIT ?""",
        (player_id, limit),
    )
    return [dict(r) for r in rows]
