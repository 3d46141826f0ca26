from __future__ import annotations

import asyncio
import base64
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .config import CORE_URL, UBI_APP_ID, UBI_SESSION_URL, config, logger
from .http import UpstreamError, UpstreamHttp


@dataclass
class AudienceToken:
    access_token: str
    refresh_token: Optional[str]
    expires_at: float


class TokenCache:
    """Nadeo access tokens per audience.

    Tokens expire a fixed TTL after issuance rather than at the server-provided
    expiry. ``invalidate()`` drops everything so the next call re-authenticates
    from the Ubisoft ticket.
    """

    def __init__(
        self,
        http: UpstreamHttp,
        email: str = config.UBI_EMAIL,
        password: str = config.UBI_PASSWORD,
        ttl: float = config.TOKEN_TTL_SECS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.http = http
        self.email = email
        self.password = password
        self.ttl = ttl
        self.clock = clock
        self._tokens: Dict[str, AudienceToken] = {}
        self._lock = asyncio.Lock()

    async def get_token(self, audience: str) -> str:
        async with self._lock:
            cached = self._tokens.get(audience)
            if cached and self.clock() < cached.expires_at:
                return cached.access_token

            if cached and cached.refresh_token:
                try:
                    token = await self._refresh(cached.refresh_token)
                    self._tokens[audience] = token
                    logger.info(f"🔄 Refreshed token for {audience}")
                    return token.access_token
                except UpstreamError as e:
                    logger.warning(f"Token refresh failed for {audience}, re-authenticating: {e}")

            token = await self._authenticate(audience)
            self._tokens[audience] = token
            logger.info(f"✅ Authenticated for {audience}")
            return token.access_token

    def invalidate(self) -> None:
        logger.info("Invalidating cached upstream tokens")
        self._tokens.clear()

    async def auth_headers(self, audience: str) -> Dict[str, str]:
        token = await self.get_token(audience)
        return {"Authorization": f"nadeo_v1 t={token}"}

    async def _ubisoft_ticket(self) -> str:
        credentials = base64.b64encode(f"{self.email}:{self.password}".encode()).decode()
        data = await self.http.request(
            "POST",
            UBI_SESSION_URL,
            headers={
                "Content-Type": "application/json",
                "Ubi-AppId": UBI_APP_ID,
                "Authorization": f"Basic {credentials}",
            },
        )
        ticket = (data or {}).get("ticket")
        if not ticket:
            raise UpstreamError("Ubisoft session response did not contain a ticket")
        return ticket

    async def _authenticate(self, audience: str) -> AudienceToken:
        ticket = await self._ubisoft_ticket()
        data = await self.http.request(
            "POST",
            f"{CORE_URL}/v2/authentication/token/ubiservices",
            headers={"Content-Type": "application/json", "Authorization": f"ubi_v1 t={ticket}"},
            json={"audience": audience},
        )
        return self._parse_token(data)

    async def _refresh(self, refresh_token: str) -> AudienceToken:
        data = await self.http.request(
            "POST",
            f"{CORE_URL}/v2/authentication/token/refresh",
            headers={"Content-Type": "application/json", "Authorization": f"nadeo_v1 t={refresh_token}"},
            json={"refreshToken": refresh_token},
        )
        return self._parse_token(data)

    def _parse_token(self, data) -> AudienceToken:
        access = (data or {}).get("accessToken")
        if not access:
            raise UpstreamError("Token response did not contain an accessToken")
        return AudienceToken(
            access_token=access,
            refresh_token=data.get("refreshToken"),
            expires_at=self.clock() + self.ttl,
        )
