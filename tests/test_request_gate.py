"""
ClinicSession - Request Gate Tests

Tests for path classification, credential attachment and the
one-retry 401 recovery.
"""

import asyncio

import httpx
import pytest

from clinicsession.client.coordinator import REFRESH_PATH, RefreshCoordinator
from clinicsession.client.gate import RETRY_HEADER, RequestGate, requires_auth
from clinicsession.client.storage import SessionStore, SharedStorage
from clinicsession.config import ClientSettings
from clinicsession.errors import NetworkFailure, TerminalAuthFailure


BASE_URL = "http://clinicsession.test"
RESOURCE = "/api/patients/42"


async def no_sleep(seconds):
    await asyncio.sleep(0)


def token_body(n: int) -> dict:
    return {
        "access_token": f"access-{n}",
        "refresh_token": f"refresh-{n}",
        "token_type": "bearer",
        "expires_at": "2030-01-01T00:00:00",
        "expires_in": 900,
    }


class GateHarness:
    """Gate plus coordinator over a mocked API."""

    def __init__(self, resource_handler, refresh_status: int = 200, seeded: bool = True):
        self.requests = []
        self.expired = 0
        self.now = 1_700_000_000.0
        self.store = SessionStore(SharedStorage().area())
        self.store.device_id = "dev-test"

        async def handler(request: httpx.Request):
            self.requests.append(request)
            if request.url.path == REFRESH_PATH:
                if refresh_status != 200:
                    return httpx.Response(refresh_status)
                return httpx.Response(200, json=token_body(1))
            return resource_handler(request)

        settings = ClientSettings(base_url=BASE_URL)
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)
        self.coordinator = RefreshCoordinator(
            http,
            self.store,
            settings=settings,
            clock=lambda: self.now,
            sleep=no_sleep,
            on_session_expired=self._on_expired,
        )
        self.gate = RequestGate(http, self.coordinator, settings=settings)
        if seeded:
            self.store.save_tokens("access-0", "refresh-0", self.now + 900)

    def _on_expired(self):
        self.expired += 1

    def calls_to(self, path: str):
        return [r for r in self.requests if r.url.path == path]


def accept_only(token: str):
    def handler(request):
        if request.headers.get("Authorization") == f"Bearer {token}":
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(401)
    return handler


class TestPathClassification:

    @pytest.mark.parametrize("path", [
        "/api/auth/login",
        "/api/auth/register",
        "/api/auth/refresh",
        "/api/auth/2fa/verify",
        "/api/health",
        "/api/public/formulary",
        "/static/app.js",
    ])
    def test_public(self, path):
        assert requires_auth(path) is False

    @pytest.mark.parametrize("path", [
        "/api/auth/me",
        "/api/admin/users",
        "/api/user/settings",
        "/api/patients/42",
        "/api/auth/devices",
    ])
    def test_protected(self, path):
        assert requires_auth(path) is True


class TestRequestGate:

    @pytest.mark.asyncio
    async def test_attaches_current_token(self):
        h = GateHarness(accept_only("access-0"))

        response = await h.gate.get(RESOURCE)

        assert response.status_code == 200
        assert h.calls_to(REFRESH_PATH) == []
        assert RETRY_HEADER not in h.requests[0].headers

    @pytest.mark.asyncio
    async def test_public_path_has_no_credentials(self):
        h = GateHarness(lambda request: httpx.Response(200))

        await h.gate.get("/api/health")

        assert "Authorization" not in h.requests[0].headers

    @pytest.mark.asyncio
    async def test_401_refreshes_and_retries_once(self):
        """A stale token is replaced and the request resent with the retry marker."""
        h = GateHarness(accept_only("access-1"))

        response = await h.gate.post(RESOURCE, json={"note": "x"})

        assert response.status_code == 200
        resource_calls = h.calls_to(RESOURCE)
        assert len(resource_calls) == 2
        assert resource_calls[1].headers["Authorization"] == "Bearer access-1"
        assert resource_calls[1].headers[RETRY_HEADER] == "1"
        assert len(h.calls_to(REFRESH_PATH)) == 1

    @pytest.mark.asyncio
    async def test_second_401_is_terminal(self):
        """Never a third attempt; the session is dropped once."""
        h = GateHarness(lambda request: httpx.Response(401))

        with pytest.raises(TerminalAuthFailure):
            await h.gate.get(RESOURCE)

        assert len(h.calls_to(RESOURCE)) == 2
        assert len(h.calls_to(REFRESH_PATH)) == 1
        assert h.expired == 1
        assert h.store.has_session() is False

    @pytest.mark.asyncio
    async def test_failed_refresh_is_terminal(self):
        h = GateHarness(lambda request: httpx.Response(401), refresh_status=401)

        with pytest.raises(TerminalAuthFailure):
            await h.gate.get(RESOURCE)

        assert len(h.calls_to(RESOURCE)) == 1
        assert h.expired == 1

    @pytest.mark.asyncio
    async def test_caller_marked_retry_not_retried(self):
        h = GateHarness(lambda request: httpx.Response(401))

        with pytest.raises(TerminalAuthFailure):
            await h.gate.get(RESOURCE, headers={RETRY_HEADER: "1"})

        assert len(h.calls_to(RESOURCE)) == 1
        assert h.calls_to(REFRESH_PATH) == []

    @pytest.mark.asyncio
    async def test_no_session_is_terminal(self):
        h = GateHarness(accept_only("access-0"), seeded=False)

        with pytest.raises(TerminalAuthFailure):
            await h.gate.get(RESOURCE)

        assert h.requests == []

    @pytest.mark.asyncio
    async def test_non_auth_errors_pass_through(self):
        h = GateHarness(lambda request: httpx.Response(403))

        response = await h.gate.delete(RESOURCE)

        assert response.status_code == 403
        assert h.calls_to(REFRESH_PATH) == []

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        h = GateHarness(handler)

        with pytest.raises(NetworkFailure):
            await h.gate.put(RESOURCE, json={})

    @pytest.mark.asyncio
    async def test_request_counts_as_activity(self):
        h = GateHarness(accept_only("access-0"))
        h.coordinator.record_activity()
        h.now += 60

        await h.gate.get(RESOURCE)

        assert h.store.last_activity == h.now

    @pytest.mark.asyncio
    async def test_idle_session_is_terminal(self):
        """A request after the idle timeout drops the session without touching the network."""
        h = GateHarness(accept_only("access-0"))
        h.coordinator.record_activity()
        h.now += 30 * 60 + 1

        with pytest.raises(TerminalAuthFailure):
            await h.gate.get(RESOURCE)

        assert h.requests == []
        assert h.expired == 1
        assert h.store.has_session() is False
