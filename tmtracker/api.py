from __future__ import annotations

from functools import wraps
from typing import Any, Dict, Iterable, List, Optional

from cachetools import TTLCache

from .config import (
    AUDIENCE_CORE,
    AUDIENCE_LIVE,
    CORE_URL,
    LEADERBOARD_MAX_OFFSET,
    LEADERBOARD_PAGE_SIZE,
    LIVE_URL,
    REGIONS,
    logger,
)
from .http import UpstreamError, UpstreamHttp
from .tokens import TokenCache


def cached_api_call(cache_key_func):
    """Cache a TrackmaniaApi coroutine's result in the instance's TTL cache."""
    def decorator(func):
        @wraps(func)
        async def wrapper(self, *args, **kwargs):
            key = cache_key_func(*args, **kwargs)
            if key in self.cache:
                logger.debug(f"API cache hit for: {key}")
                return self.cache[key]
            result = await func(self, *args, **kwargs)
            self.cache[key] = result
            return result
        return wrapper
    return decorator


class TrackmaniaApi:
    """Upstream endpoints used by the trackers and the leaderboard command."""

    def __init__(self, http: UpstreamHttp, tokens: TokenCache, cache_ttl: float = 300):
        self.http = http
        self.tokens = tokens
        self.cache: TTLCache = TTLCache(maxsize=64, ttl=cache_ttl)

    async def _get(self, audience: str, url: str, params: Any = None) -> Any:
        headers = await self.tokens.auth_headers(audience)
        return await self.http.request("GET", url, headers=headers, params=params)

    async def fetch_current_campaign(self) -> Dict[str, Any]:
        data = await self._get(AUDIENCE_LIVE, f"{LIVE_URL}/api/campaign/official", {"offset": 0, "length": 1})
        campaigns = (data or {}).get("campaignList") or []
        if not campaigns:
            raise UpstreamError("No official campaign found")
        campaign = campaigns[0]
        logger.info(f"Using campaign: {campaign.get('name')}")
        return campaign

    async def fetch_current_weekly_short(self) -> Dict[str, Any]:
        data = await self._get(AUDIENCE_LIVE, f"{LIVE_URL}/api/campaign/weekly-shorts", {"offset": 0, "length": 1})
        campaigns = (data or {}).get("campaignList") or []
        if not campaigns:
            raise UpstreamError("No weekly short campaign found")
        campaign = campaigns[0]
        logger.info(f"Using weekly short: {campaign.get('name')}")
        return campaign

    @cached_api_call(lambda map_uids: f"maps:{','.join(map_uids)}")
    async def fetch_map_info(self, map_uids: List[str]) -> List[Dict[str, Any]]:
        logger.debug(f"Fetching info for {len(map_uids)} maps")
        data = await self._get(
            AUDIENCE_LIVE,
            f"{LIVE_URL}/api/token/map/get-multiple",
            {"mapUidList": ",".join(map_uids)},
        )
        return (data or {}).get("mapList") or []

    async def fetch_player_records(
        self, map_id: str, account_ids: Iterable[str], season_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        params = {"accountIdList": ",".join(account_ids), "mapId": map_id}
        if season_id:
            params["seasonId"] = season_id
        data = await self._get(AUDIENCE_CORE, f"{CORE_URL}/v2/mapRecords/", params)
        if isinstance(data, list):
            return data
        if isinstance(data, dict) and isinstance(data.get("records"), list):
            return data["records"]
        logger.warning(f"Could not find records in response for map {map_id}")
        return []

    async def fetch_record_position(self, map_uid: str, score: int) -> Optional[int]:
        """World position a score would hold on a map's personal-best leaderboard."""
        headers = await self.tokens.auth_headers(AUDIENCE_LIVE)
        headers["Content-Type"] = "application/json"
        data = await self.http.request(
            "POST",
            f"{LIVE_URL}/api/token/leaderboard/group/map",
            headers=headers,
            params={f"scores[{map_uid}]": score},
            json={"maps": [{"mapUid": map_uid, "groupUid": "Personal_Best"}]},
        )
        if isinstance(data, list) and data:
            for zone in data[0].get("zones") or []:
                if zone.get("zoneName") == "World" and zone.get("ranking"):
                    return zone["ranking"].get("position")
        logger.warning(f"Could not determine world position for time {score} on map {map_uid}")
        return None

    async def fetch_leaderboard_page(
        self,
        group_uid: str,
        map_uid: Optional[str] = None,
        offset: int = 0,
        length: int = LEADERBOARD_PAGE_SIZE,
    ) -> List[Dict[str, Any]]:
        path = f"group/{group_uid}/map/{map_uid}/top" if map_uid else f"group/{group_uid}/top"
        data = await self._get(
            AUDIENCE_LIVE,
            f"{LIVE_URL}/api/token/leaderboard/{path}",
            {"length": length, "onlyWorld": "true", "offset": offset},
        )
        tops = (data or {}).get("tops") or []
        if not tops:
            return []
        return tops[0].get("top") or []

    async def find_player_positions(
        self, group_uid: str, map_uid: str, account_ids: List[str], max_position: int
    ) -> Dict[str, Dict[str, Any]]:
        """Walk the map's top leaderboard until every account is found or ``max_position`` is passed."""
        wanted = set(account_ids)
        found: Dict[str, Dict[str, Any]] = {}
        offset = 0
        while len(found) < len(wanted) and offset < max_position:
            page = await self.fetch_leaderboard_page(group_uid, map_uid, offset)
            if not page:
                break
            for entry in page:
                account_id = entry.get("accountId")
                if account_id in wanted:
                    found[account_id] = {
                        "position": entry.get("position"),
                        "score": entry.get("score"),
                        "timestamp": entry.get("timestamp"),
                    }
            offset += LEADERBOARD_PAGE_SIZE
        logger.debug(f"Found positions for {len(found)}/{len(wanted)} players on {map_uid} (offset reached {offset})")
        return found

    async def fetch_country_leaderboard(
        self,
        country: str,
        map_uid: Optional[str] = None,
        group_uid: str = "Personal_Best",
        count: int = 10,
    ) -> List[Dict[str, Any]]:
        """Top ``count`` entries whose zone belongs to ``country``."""
        regions = REGIONS.get(country) or []
        if not regions:
            logger.warning(f"No regions configured for country code: {country}")
            return []

        entries: List[Dict[str, Any]] = []
        offset = 0
        while len(entries) < count and offset < LEADERBOARD_MAX_OFFSET:
            page = await self.fetch_leaderboard_page(group_uid, map_uid, offset)
            if not page:
                break
            entries.extend(e for e in page if e.get("zoneName") in regions)
            offset += LEADERBOARD_PAGE_SIZE

        entries.sort(key=lambda e: e.get("position") or 0)
        return entries[:count]
