from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, List, Optional

from cachetools import TTLCache

from .config import (
    DISPLAY_NAME_BATCH_DELAY_SECS,
    DISPLAY_NAME_BATCH_SIZE,
    PUBLIC_API_URL,
    config,
    logger,
)
from .http import UpstreamAuthError, UpstreamError, UpstreamHttp


class DisplayNameClient:
    """Resolves account ids to display names through the public OAuth API."""

    def __init__(
        self,
        http: UpstreamHttp,
        client_id: str = config.TM_OAUTH_CLIENT_ID,
        client_secret: str = config.TM_OAUTH_CLIENT_SECRET,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.http = http
        self.client_id = client_id
        self.client_secret = client_secret
        self.clock = clock
        self._access_token: Optional[str] = None
        self._expires_at = 0.0
        self.names: TTLCache = TTLCache(maxsize=4096, ttl=24 * 3600)

    @property
    def enabled(self) -> bool:
        return bool(self.client_id and self.client_secret)

    async def _get_access_token(self) -> str:
        if self._access_token and self.clock() < self._expires_at:
            return self._access_token

        data = await self.http.request(
            "POST",
            f"{PUBLIC_API_URL}/api/access_token",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )
        token = (data or {}).get("access_token")
        if not token:
            raise UpstreamError("OAuth response did not contain an access_token")
        self._access_token = token
        # Renew a minute before the server-side expiry
        self._expires_at = self.clock() + int(data.get("expires_in", 3600)) - 60
        logger.info("✅ Obtained OAuth access token")
        return token

    async def _fetch_batch(self, account_ids: List[str]) -> Dict[str, str]:
        token = await self._get_access_token()
        params = [("accountId[]", account_id) for account_id in account_ids]
        try:
            data = await self.http.request(
                "GET",
                f"{PUBLIC_API_URL}/api/display-names",
                headers={"Authorization": f"Bearer {token}"},
                params=params,
            )
        except UpstreamAuthError:
            self._access_token = None
            raise
        return dict(data or {})

    async def get_display_names(self, account_ids: List[str], use_cache: bool = True) -> Dict[str, str]:
        if not self.enabled or not account_ids:
            return {}

        result: Dict[str, str] = {}
        missing: List[str] = []
        for account_id in dict.fromkeys(account_ids):
            if use_cache and account_id in self.names:
                result[account_id] = self.names[account_id]
            else:
                missing.append(account_id)

        for i in range(0, len(missing), DISPLAY_NAME_BATCH_SIZE):
            if i:
                await asyncio.sleep(DISPLAY_NAME_BATCH_DELAY_SECS)
            batch = missing[i:i + DISPLAY_NAME_BATCH_SIZE]
            logger.debug(f"Fetching display names for {len(batch)} account(s)")
            names = await self._fetch_batch(batch)
            for account_id, name in names.items():
                self.names[account_id] = name
                result[account_id] = name

        return result
