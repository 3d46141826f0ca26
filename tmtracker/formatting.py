from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .i18n import t


FORMATTING_CODES = re.compile(r"(\$[0-9a-fA-F]{3})|(\$[wWtTzZiIoOsSgGnNmM])|(\$[hHlL](\[.*?\])?)")
WEEKLY_NAME = re.compile(r"^(\d+)\s*-\s*(.+)$")


def escape_html(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def clean_map_name(name: Optional[str]) -> Optional[str]:
    """Strip Trackmania colour and style codes ($fff, $o, $l[...], ...)."""
    if not name:
        return name
    return FORMATTING_CODES.sub("", name).strip()


def weekly_short_map_name(name: str, playlist_position: Optional[int]) -> str:
    cleaned = clean_map_name(name) or ""
    match = WEEKLY_NAME.match(cleaned)
    if match:
        return f"{int(match.group(1))} - {match.group(2).strip()}"
    if playlist_position is not None:
        return f"{playlist_position + 1} - {cleaned}"
    return cleaned


def format_time(time_ms: int) -> str:
    """``m:ss.mmm``, or ``s.mmm`` under a minute."""
    total_seconds, millis = divmod(int(time_ms), 1000)
    minutes, seconds = divmod(total_seconds, 60)
    if minutes:
        return f"{minutes}:{seconds:02d}.{millis:03d}"
    return f"{seconds}.{millis:03d}"


def format_improvement(delta_ms: int) -> str:
    return f"(-{format_time(delta_ms)})"


def format_position_change(position: int, previous: Optional[int]) -> str:
    if previous is None:
        return f"#{position}"
    change = previous - position
    if change > 0:
        return f"#{position} (-{change})"
    if change < 0:
        return f"#{position} (+{-change})"
    return f"#{position} (=)"


@dataclass
class Notification:
    title: str
    description: str
    fields: List[Tuple[str, str]] = field(default_factory=list)
    thumbnail_url: Optional[str] = None
    author: Optional[str] = None


def _thumbnail(url: Optional[str]) -> Optional[str]:
    return url if url and url.startswith("http") else None


def build_time_notification(record: Dict[str, Any], language: str, world_position: Optional[int] = None) -> Notification:
    previous = record.get("previous_time_ms")
    record_type = t(language, "record.personal_best" if previous else "record.first")
    username = record.get("username") or record.get("account_id") or "Player"

    time_value = f"<b>{format_time(record['time_ms'])}</b>"
    if previous:
        time_value += f" {format_improvement(previous - record['time_ms'])}"

    fields = [
        (t(language, "record.map"), f"<b>{escape_html(record.get('map_name') or record['map_uid'])}</b>"),
        (t(language, "record.time"), time_value),
    ]
    if previous:
        fields.append((t(language, "record.previous"), format_time(previous)))
    if world_position:
        fields.append((t(language, "record.world_position"), f"<b>#{world_position}</b>"))

    return Notification(
        title=t(language, "record.title"),
        description=t(language, "record.description", username=escape_html(username), record_type=record_type),
        fields=fields,
        thumbnail_url=_thumbnail(record.get("thumbnail_url")),
        author=t(language, "campaign.author"),
    )


def build_rank_notification(record: Dict[str, Any], language: str) -> Notification:
    username = record.get("username") or record.get("account_id") or "Player"
    previous = record.get("previous_position")

    fields = [
        (t(language, "record.map"), f"<b>{escape_html(record.get('map_name') or 'Unknown Map')}</b>"),
        (t(language, "record.world_position"), f"<b>{format_position_change(record['position'], previous)}</b>"),
    ]
    if previous is not None:
        fields.append((t(language, "record.previous"), f"#{previous}"))

    return Notification(
        title=t(language, "record.title"),
        description=t(
            language,
            "record.description",
            username=escape_html(username),
            record_type=t(language, "record.personal_best"),
        ),
        fields=fields,
        thumbnail_url=_thumbnail(record.get("thumbnail_url")),
        author=t(language, "weekly.author"),
    )


def render_html(notification: Notification) -> str:
    lines: List[str] = []
    if notification.author:
        lines.append(f"<i>{escape_html(notification.author)}</i>")
    lines.append(f"<b>{escape_html(notification.title)}</b>")
    lines.append(notification.description)
    if notification.fields:
        lines.append("")
        lines.extend(f"{name}: {value}" for name, value in notification.fields)
    return "\n".join(lines)


def fmt_leaderboard(title: str, entries: List[Dict[str, Any]], names: Dict[str, str], points: bool = False) -> str:
    def medal(n: int) -> str:
        return {1: "🥇", 2: "🥈", 3: "🥉"}.get(n, f"{n:>2}.")

    lines: List[str] = []
    for i, entry in enumerate(entries, 1):
        name = escape_html(names.get(entry.get("accountId"), entry.get("accountId", "?")))
        score = entry.get("score") or 0
        value = f"{score} pts" if points else format_time(score)
        lines.append(f"{medal(i)} <b>{name}</b> · <code>{value}</code> (#{entry.get('position')})")
    return f"{title}\n\n" + "\n".join(lines)


def fmt_recent_records(title: str, records: List[Dict[str, Any]]) -> str:
    lines = []
    for r in records:
        line = f"🗺️ <b>{escape_html(r.get('map_name') or '?')}</b> · <code>{format_time(r['time_ms'])}</code>"
        if r.get("previous_time_ms"):
            line += f" {format_improvement(r['previous_time_ms'] - r['time_ms'])}"
        lines.append(line)
    return f"{title}\n\n" + "\n".join(lines)
