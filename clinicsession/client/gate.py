"""
ClinicSession - Request Gate

Wraps outbound API calls:
- Classifies the path as public or protected
- Attaches a valid access token to protected calls
- On 401, forces one refresh and resends once, marked X-Auth-Retry
- A second 401, or a failed forced refresh, is terminal: the caller
  must send the user back to login. There is never a third attempt.
"""

import asyncio
from typing import Optional

import httpx

from clinicsession.client.coordinator import RefreshCoordinator
from clinicsession.config import ClientSettings
from clinicsession.errors import NetworkFailure, TerminalAuthFailure
from clinicsession.logging import get_logger


logger = get_logger(__name__)

RETRY_HEADER = "X-Auth-Retry"

# Checked first: never carry credentials
PUBLIC_PATHS = (
    "/api/auth/login",
    "/api/auth/register",
    "/api/auth/refresh",
    "/api/auth/2fa/verify",
    "/api/health",
    "/api/public/",
)

# Always protected, whatever the default rule says
PROTECTED_PATHS = (
    "/api/auth/me",
    "/api/admin/",
    "/api/user/",
)


def requires_auth(path: str) -> bool:
    """Decide whether a request path needs an access token."""
    if any(path.startswith(prefix) for prefix in PUBLIC_PATHS):
        return False
    if any(path.startswith(prefix) for prefix in PROTECTED_PATHS):
        return True
    return path.startswith("/api/")


class RequestGate:
    """
    Authenticated HTTP for client code.

    Args:
        http: AsyncClient whose base_url points at the ClinicSession API
        coordinator: Source of valid access tokens
        settings: Request timeout
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        coordinator: RefreshCoordinator,
        settings: Optional[ClientSettings] = None,
    ):
        self._http = http
        self._coordinator = coordinator
        self._settings = settings or ClientSettings()

    async def _send(self, method: str, url: str, headers: httpx.Headers, **kwargs) -> httpx.Response:
        timeout = self._settings.request_timeout_seconds
        kwargs.setdefault("timeout", timeout)
        try:
            return await asyncio.wait_for(
                self._http.request(method, url, headers=headers, **kwargs),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise NetworkFailure("Request timed out")
        except httpx.TimeoutException:
            raise NetworkFailure("Request timed out")
        except httpx.TransportError as e:
            raise NetworkFailure(f"Transport error: {e.__class__.__name__}")

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Send a request, authenticating it when the path requires it.

        Raises:
            TerminalAuthFailure: No session, session idle too long, or still
                401 after one refresh
            NetworkFailure: Transport error or timeout
        """
        headers = httpx.Headers(kwargs.pop("headers", None))
        path = httpx.URL(url).path

        if not requires_auth(path):
            return await self._send(method, url, headers, **kwargs)

        if not self._coordinator.record_activity():
            raise TerminalAuthFailure()

        token = await self._coordinator.get_valid_access_token()
        if token is None:
            raise TerminalAuthFailure()

        headers["Authorization"] = f"Bearer {token}"
        response = await self._send(method, url, headers, **kwargs)
        if response.status_code != 401:
            return response

        if headers.get(RETRY_HEADER):
            # Caller already marked this as the retry
            self._coordinator.expire_session()
            raise TerminalAuthFailure()

        logger.info("request_unauthorized_refreshing", path=path)
        token = await self._coordinator.get_valid_access_token(force_refresh=True)
        if token is None:
            raise TerminalAuthFailure()

        headers["Authorization"] = f"Bearer {token}"
        headers[RETRY_HEADER] = "1"
        response = await self._send(method, url, headers, **kwargs)
        if response.status_code == 401:
            logger.warning("request_unauthorized_after_refresh", path=path)
            self._coordinator.expire_session()
            raise TerminalAuthFailure()
        return response

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)
