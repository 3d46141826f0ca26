from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import aiohttp

from .config import config, logger
from .task_queue import TaskQueue


class UpstreamError(RuntimeError):
    """Non-success response (or network failure) from an upstream service."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class UpstreamAuthError(UpstreamError, PermissionError):
    """Upstream rejected our credentials (401/403)."""


def build_headers() -> Dict[str, str]:
    return {
        "accept": "application/json",
        "user-agent": config.USER_AGENT,
        "cache-control": "no-cache",
    }


def make_session() -> aiohttp.ClientSession:
    timeout = aiohttp.ClientTimeout(total=25)
    return aiohttp.ClientSession(
        timeout=timeout,
        headers=build_headers(),
        trust_env=True,
    )


class UpstreamHttp:
    """Serializes every upstream call through one queue with a minimum spacing between calls."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        queue: TaskQueue,
        min_interval: float = config.MIN_REQUEST_INTERVAL_SECS,
    ):
        self.session = session
        self.queue = queue
        self.min_interval = min_interval
        self._last_call: Optional[float] = None

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Any = None,
        json: Any = None,
        data: Any = None,
    ) -> Any:
        async def call() -> Any:
            await self._throttle()
            return await self._send(method, url, headers=headers, params=params, json=json, data=data)

        return await self.queue.enqueue(call, f"{method} {url}")

    async def _throttle(self) -> None:
        loop = asyncio.get_running_loop()
        if self._last_call is not None:
            wait = self._last_call + self.min_interval - loop.time()
            if wait > 0:
                logger.debug(f"Rate limiting: waiting {wait:.2f}s before next request")
                await asyncio.sleep(wait)
        self._last_call = loop.time()

    async def _send(self, method: str, url: str, **kwargs) -> Any:
        logger.debug(f"API request: {method} {url}")
        try:
            async with self.session.request(method, url, **kwargs) as r:
                if r.status in (401, 403):
                    txt = await r.text()
                    logger.warning(f"API auth failure for {url}: {r.status} :: {txt[:300]}")
                    raise UpstreamAuthError(f"Auth failed ({r.status}) for {url}", status=r.status, body=txt)
                if r.status >= 400:
                    txt = await r.text()
                    logger.error(f"API error for {url}: {r.status} :: {txt[:300]}")
                    raise UpstreamError(f"HTTP {r.status} for {url} :: {txt[:300]}", status=r.status, body=txt)
                logger.debug(f"API success: {url}")
                return await r.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"API request to {url} failed: {e!r}")
            raise UpstreamError(f"Request to {url} failed: {e!r}") from e
