"""
ClinicSession - Client Refresh Coordinator

Keeps the client holding a valid access token.

Single-flight:
- At most one refresh runs at a time; it is a shared asyncio task and
  every concurrent caller awaits that same task
- States: IDLE -> REFRESHING -> IDLE; only the caller that starts a
  refresh moves the state

Retry:
- Transport errors, timeouts, 5xx and malformed bodies are retried
  (tenacity) up to max_refresh_attempts with a fixed delay
- A 4xx from the server is terminal at once; a rotated token never
  becomes valid again
- On exhaustion or terminal rejection the session is cleared once

Supersession:
- set_session (login) and clear_session (logout) bump a generation
  counter; a refresh started under an older generation is ignored

Idle timeout:
- lastActivity is stamped on login and on every authenticated request
  (record_activity); background refreshes do not count as activity
- Once idle longer than idle_timeout_seconds the session is expired
"""

import asyncio
import time
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from clinicsession.client.device import get_or_create_device_id
from clinicsession.client.storage import SessionStore
from clinicsession.config import ClientSettings
from clinicsession.errors import (
    AccountLocked,
    AuthError,
    InvalidCredentials,
    NetworkFailure,
    TerminalAuthFailure,
)
from clinicsession.logging import get_logger


logger = get_logger(__name__)

LOGIN_PATH = "/api/auth/login"
VERIFY_2FA_PATH = "/api/auth/2fa/verify"
REFRESH_PATH = "/api/auth/refresh"
LOGOUT_PATH = "/api/auth/logout"


class RefreshState(str, Enum):
    IDLE = "IDLE"
    REFRESHING = "REFRESHING"


class RefreshCoordinator:
    """
    Single-flight, retry-bounded access token refresh.

    Args:
        http: AsyncClient whose base_url points at the ClinicSession API
        store: Session keys of this context
        settings: Lead time, retry cap, delays and timeouts
        clock: Returns epoch seconds
        sleep: Awaitable sleep (retry delay and activity monitor)
        on_session_expired: Called once each time a failed refresh drops the session
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        store: SessionStore,
        settings: Optional[ClientSettings] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_session_expired: Optional[Callable[[], None]] = None,
    ):
        self._http = http
        self._store = store
        self._settings = settings or ClientSettings()
        self._clock = clock
        self._sleep = sleep
        self._on_session_expired = on_session_expired

        self.state = RefreshState.IDLE
        self.refresh_attempts = 0
        self.last_refresh_at: Optional[float] = None
        self._inflight: Optional[asyncio.Task] = None
        self._generation = 0

    @property
    def device_id(self) -> str:
        return get_or_create_device_id(self._store)

    @property
    def refresh_in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    # ------------------------------------------------------------------
    # Token access
    # ------------------------------------------------------------------

    def _expiring(self, expires_at: Optional[float]) -> bool:
        if expires_at is None:
            return True
        return expires_at - self._clock() <= self._settings.refresh_lead_seconds

    async def get_valid_access_token(self, force_refresh: bool = False) -> Optional[str]:
        """
        Return an access token that is not about to expire.

        Refreshes when no access token is held, when it is within the
        refresh lead of expiry, or when force_refresh is set.

        Returns:
            The access token, or None when there is no usable session
        """
        if self.refresh_in_flight:
            return await asyncio.shield(self._inflight)

        stored = self._store.tokens()
        if not force_refresh and stored.access_token and not self._expiring(stored.expires_at):
            return stored.access_token
        if not stored.refresh_token:
            return None

        return await self._start_refresh()

    async def _start_refresh(self) -> Optional[str]:
        if not self.refresh_in_flight:
            self.state = RefreshState.REFRESHING
            task = asyncio.ensure_future(self._run_refresh(self._generation))
            task.add_done_callback(self._refresh_done)
            self._inflight = task
        return await asyncio.shield(self._inflight)

    def _refresh_done(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None
            self.state = RefreshState.IDLE

    async def _run_refresh(self, generation: int) -> Optional[str]:
        stored = self._store.tokens()
        device_id = self.device_id
        self.refresh_attempts = 0

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._settings.max_refresh_attempts),
            wait=wait_fixed(self._settings.retry_delay_seconds),
            retry=retry_if_exception_type(NetworkFailure),
            sleep=self._sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    self.refresh_attempts += 1
                    data = await self._post_refresh(stored.refresh_token, device_id)
        except (NetworkFailure, TerminalAuthFailure) as e:
            if generation != self._generation:
                logger.info("refresh_superseded", outcome="failed")
                return self._store.tokens().access_token
            logger.warning(
                "refresh_failed",
                attempts=self.refresh_attempts,
                error_code=e.code,
                error=e.message,
            )
            self.expire_session()
            return None

        if generation != self._generation:
            logger.info("refresh_superseded", outcome="succeeded")
            return self._store.tokens().access_token

        self.refresh_attempts = 0
        self._persist(data)
        self.last_refresh_at = self._clock()
        logger.info("refresh_succeeded", expires_in=data["expires_in"])
        return data["access_token"]

    # ------------------------------------------------------------------
    # Network
    # ------------------------------------------------------------------

    async def _post(self, path: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        try:
            return await asyncio.wait_for(
                self._http.post(
                    path,
                    json=payload,
                    headers=headers,
                    timeout=self._settings.request_timeout_seconds,
                ),
                timeout=self._settings.request_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise NetworkFailure("Request timed out")
        except httpx.TimeoutException:
            raise NetworkFailure("Request timed out")
        except httpx.TransportError as e:
            raise NetworkFailure(f"Transport error: {e.__class__.__name__}")

    async def _post_refresh(self, refresh_token: str, device_id: str) -> Dict[str, Any]:
        response = await self._post(
            REFRESH_PATH, {"refresh_token": refresh_token, "device_id": device_id}
        )
        if response.status_code >= 500:
            raise NetworkFailure(f"Server error {response.status_code}")
        if response.status_code >= 400:
            raise TerminalAuthFailure("Refresh token rejected")
        return self._parse_tokens(response)

    @staticmethod
    def _parse_tokens(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
            tokens = {
                "access_token": data["access_token"],
                "refresh_token": data["refresh_token"],
                "expires_in": int(data["expires_in"]),
            }
        except (ValueError, KeyError, TypeError):
            raise NetworkFailure("Malformed token response")
        if not tokens["access_token"] or not tokens["refresh_token"]:
            raise NetworkFailure("Malformed token response")
        return tokens

    @staticmethod
    def _raise_for_auth_response(response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        try:
            detail = response.json().get("detail")
        except ValueError:
            detail = None
        if response.status_code >= 500:
            raise NetworkFailure(f"Server error {response.status_code}")
        if response.status_code == 423:
            raise AccountLocked(detail)
        if response.status_code == 401:
            raise InvalidCredentials(detail)
        error = AuthError(detail if isinstance(detail, str) else None)
        error.status_code = response.status_code
        raise error

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def _persist(self, tokens: Dict[str, Any]) -> None:
        expires_at = self._clock() + tokens["expires_in"]
        self._store.save_tokens(tokens["access_token"], tokens["refresh_token"], expires_at)

    def set_session(self, tokens: Dict[str, Any]) -> None:
        """Install a freshly issued pair; any in-flight refresh is superseded."""
        self._generation += 1
        self.refresh_attempts = 0
        self._persist(self._parse_tokens_dict(tokens))
        self._store.touch(self._clock())

    def clear_session(self) -> None:
        """Drop the session; any in-flight refresh is superseded."""
        self._generation += 1
        self._store.clear_tokens()

    def expire_session(self) -> None:
        """Drop the session after a terminal failure and notify the owner."""
        self.clear_session()
        if self._on_session_expired is not None:
            self._on_session_expired()

    @staticmethod
    def _parse_tokens_dict(tokens: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "access_token": tokens["access_token"],
            "refresh_token": tokens["refresh_token"],
            "expires_in": int(tokens["expires_in"]),
        }

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        """
        Password login.

        Returns:
            Server response; when requires_two_factor is true the caller
            must pass temp_token and a code to verify_two_factor

        Raises:
            InvalidCredentials, AccountLocked, NetworkFailure
        """
        response = await self._post(
            LOGIN_PATH, {"email": email, "password": password, "device_id": self.device_id}
        )
        self._raise_for_auth_response(response)
        data = response.json()
        if not data.get("requires_two_factor") and data.get("tokens"):
            self.set_session(data["tokens"])
            logger.info("client_login_succeeded")
        return data

    async def verify_two_factor(self, temp_token: str, code: str) -> Dict[str, Any]:
        response = await self._post(
            VERIFY_2FA_PATH,
            {"temp_token": temp_token, "code": code, "device_id": self.device_id},
        )
        self._raise_for_auth_response(response)
        data = response.json()
        self.set_session(data["tokens"])
        logger.info("client_two_factor_succeeded")
        return data

    async def logout(self) -> None:
        """
        End the session on the server, then locally.

        The local session is cleared even when the server cannot be reached.
        """
        access_token = self._store.tokens().access_token
        if access_token:
            try:
                await self._post(LOGOUT_PATH, {}, headers={"Authorization": f"Bearer {access_token}"})
            except NetworkFailure as e:
                logger.warning("server_logout_failed", error=e.message)
        self.clear_session()

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _expire_if_idle(self) -> bool:
        timeout = self._settings.idle_timeout_seconds
        last_activity = self._store.last_activity
        if timeout <= 0 or last_activity is None or not self._store.has_session():
            return False
        idle = self._clock() - last_activity
        if idle <= timeout:
            return False
        logger.info("session_idle_timeout", idle_seconds=int(idle))
        self.expire_session()
        return True

    def record_activity(self) -> bool:
        """
        Note user activity on the current session.

        Returns:
            False if the session had already been idle too long; it is
            expired instead of renewed
        """
        if self._expire_if_idle():
            return False
        if self._store.has_session():
            self._store.touch(self._clock())
        return True

    async def check_expiry(self) -> bool:
        """
        One activity tick.

        Expires an idle session, otherwise refreshes a token that is
        about to expire.

        Returns:
            True if a refresh was started
        """
        if not self._store.has_session():
            return False
        if self._expire_if_idle():
            return False
        if self._store.last_activity is None:
            # Session installed by another context; start its idle window now
            self._store.touch(self._clock())
        if self.refresh_in_flight:
            return False
        if not self._expiring(self._store.tokens().expires_at):
            return False
        await self.get_valid_access_token()
        return True

    async def run_activity_monitor(self) -> None:
        """Run check_expiry every activity_check_seconds until cancelled."""
        while True:
            await self._sleep(self._settings.activity_check_seconds)
            await self.check_expiry()
