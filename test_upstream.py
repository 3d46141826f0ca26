import asyncio

import aiohttp
import pytest

from tmtracker.config import AUDIENCE_CORE, AUDIENCE_LIVE, UBI_SESSION_URL
from tmtracker.http import UpstreamAuthError, UpstreamError, UpstreamHttp
from tmtracker.oauth import DisplayNameClient
from tmtracker.task_queue import TaskQueue
from tmtracker.tokens import TokenCache


pytestmark = pytest.mark.asyncio


class FakeResponse:
    def __init__(self, status=200, payload=None, text=""):
        self.status = status
        self.payload = payload
        self._text = text

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def text(self):
        return self._text

    async def json(self, content_type=None):
        return self.payload


class FakeSession:
    def __init__(self, responses=None, error=None):
        self.responses = list(responses or [])
        self.error = error
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((asyncio.get_running_loop().time(), method, url, kwargs))
        if self.error:
            raise self.error
        if self.responses:
            return self.responses.pop(0)
        return FakeResponse(payload={"ok": True})


def _http(session, min_interval=0.0):
    return UpstreamHttp(session, TaskQueue("api", 1, 10), min_interval=min_interval)


async def test_requests_are_spaced_by_min_interval():
    session = FakeSession()
    http = _http(session, min_interval=0.05)

    await asyncio.gather(*(http.request("GET", f"https://example.test/{i}") for i in range(3)))

    times = [call[0] for call in session.calls]
    assert [call[2] for call in session.calls] == [f"https://example.test/{i}" for i in range(3)]
    assert all(b - a >= 0.04 for a, b in zip(times, times[1:]))


async def test_success_returns_parsed_body():
    http = _http(FakeSession([FakeResponse(payload={"campaignList": []})]))
    assert await http.request("GET", "https://example.test/campaign") == {"campaignList": []}


@pytest.mark.parametrize("status", [401, 403])
async def test_auth_statuses_raise_auth_error(status):
    http = _http(FakeSession([FakeResponse(status=status, text="expired")]))

    with pytest.raises(UpstreamAuthError) as exc:
        await http.request("GET", "https://example.test/records")
    assert exc.value.status == status
    assert isinstance(exc.value, PermissionError)


async def test_other_error_statuses_raise_upstream_error():
    http = _http(FakeSession([FakeResponse(status=503, text="maintenance")]))

    with pytest.raises(UpstreamError) as exc:
        await http.request("GET", "https://example.test/records")
    assert not isinstance(exc.value, UpstreamAuthError)
    assert exc.value.status == 503
    assert exc.value.body == "maintenance"


async def test_network_failures_are_wrapped():
    http = _http(FakeSession(error=aiohttp.ClientConnectionError("connection reset")))

    with pytest.raises(UpstreamError) as exc:
        await http.request("GET", "https://example.test/records")
    assert exc.value.status is None


class FakeAuthHttp:
    """Answers the Ubisoft session, token and refresh endpoints."""

    def __init__(self, refresh_fails=False):
        self.refresh_fails = refresh_fails
        self.urls = []
        self.issued = 0

    async def request(self, method, url, *, headers=None, params=None, json=None, data=None):
        self.urls.append(url)
        if url == UBI_SESSION_URL:
            return {"ticket": "ubi-ticket"}
        if url.endswith("/token/ubiservices"):
            assert headers["Authorization"] == "ubi_v1 t=ubi-ticket"
            self.issued += 1
            return {"accessToken": f"{json['audience']}-{self.issued}", "refreshToken": f"refresh-{self.issued}"}
        if url.endswith("/token/refresh"):
            if self.refresh_fails:
                raise UpstreamAuthError("refresh rejected", status=401)
            self.issued += 1
            return {"accessToken": f"refreshed-{self.issued}", "refreshToken": f"refresh-{self.issued}"}
        raise AssertionError(f"unexpected url {url}")

    def count(self, suffix):
        return sum(1 for url in self.urls if url.endswith(suffix))


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


async def test_token_is_cached_per_audience():
    http = FakeAuthHttp()
    tokens = TokenCache(http, "user@example.com", "pw", ttl=3600, clock=FakeClock())

    first = await tokens.get_token(AUDIENCE_LIVE)
    again = await tokens.get_token(AUDIENCE_LIVE)
    core = await tokens.get_token(AUDIENCE_CORE)

    assert first == again == f"{AUDIENCE_LIVE}-1"
    assert core == f"{AUDIENCE_CORE}-2"
    assert http.count("/token/ubiservices") == 2
    assert await tokens.auth_headers(AUDIENCE_LIVE) == {"Authorization": f"nadeo_v1 t={first}"}


async def test_expired_token_is_refreshed():
    http = FakeAuthHttp()
    clock = FakeClock()
    tokens = TokenCache(http, "user@example.com", "pw", ttl=3600, clock=clock)

    await tokens.get_token(AUDIENCE_LIVE)
    clock.now = 3601

    assert await tokens.get_token(AUDIENCE_LIVE) == "refreshed-2"
    assert http.count("/token/refresh") == 1
    assert http.count("/token/ubiservices") == 1


async def test_failed_refresh_falls_back_to_full_authentication():
    http = FakeAuthHttp(refresh_fails=True)
    clock = FakeClock()
    tokens = TokenCache(http, "user@example.com", "pw", ttl=3600, clock=clock)

    await tokens.get_token(AUDIENCE_LIVE)
    clock.now = 3601

    assert await tokens.get_token(AUDIENCE_LIVE) == f"{AUDIENCE_LIVE}-2"
    assert http.count("/token/refresh") == 1
    assert http.count("/token/ubiservices") == 2


async def test_invalidate_forces_reauthentication():
    http = FakeAuthHttp()
    tokens = TokenCache(http, "user@example.com", "pw", ttl=3600, clock=FakeClock())

    await tokens.get_token(AUDIENCE_LIVE)
    tokens.invalidate()

    assert await tokens.get_token(AUDIENCE_LIVE) == f"{AUDIENCE_LIVE}-2"
    assert http.count("/token/refresh") == 0
    assert http.urls.count(UBI_SESSION_URL) == 2


async def test_token_response_without_access_token_is_an_error():
    class EmptyHttp(FakeAuthHttp):
        async def request(self, method, url, **kwargs):
            if url == UBI_SESSION_URL:
                return {"ticket": "t"}
            return {}

    tokens = TokenCache(EmptyHttp(), "user@example.com", "pw", clock=FakeClock())
    with pytest.raises(UpstreamError):
        await tokens.get_token(AUDIENCE_CORE)


async def test_display_name_token_is_dropped_after_auth_failure():
    class NamesHttp:
        def __init__(self):
            self.issued = 0
            self.reject = True

        async def request(self, method, url, *, headers=None, params=None, json=None, data=None):
            if url.endswith("/api/access_token"):
                self.issued += 1
                return {"access_token": f"oauth-{self.issued}", "expires_in": 3600}
            if self.reject:
                raise UpstreamAuthError("token revoked", status=401)
            assert headers["Authorization"] == f"Bearer oauth-{self.issued}"
            return {"acc-1": "Speedy"}

    http = NamesHttp()
    names = DisplayNameClient(http, "client", "secret", clock=FakeClock())

    with pytest.raises(UpstreamAuthError):
        await names.get_display_names(["acc-1"])
    http.reject = False

    assert await names.get_display_names(["acc-1"]) == {"acc-1": "Speedy"}
    assert http.issued == 2
