"""
ClinicSession - Client Session Storage

Origin-scoped key/value storage shared by several client contexts
(browser tabs, worker processes sharing one store).

- SharedStorage holds the values for one origin
- StorageArea is one context's view; its writes are visible to every
  area and notify the listeners of the *other* areas
- SessionStore reads and writes the session keys on one area
- SessionSignals is a per-context pub/sub bus for session changes
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional


ACCESS_TOKEN_KEY = "accessToken"
REFRESH_TOKEN_KEY = "refreshToken"
EXPIRES_AT_KEY = "expiresAt"
DEVICE_ID_KEY = "deviceId"
LAST_ACTIVITY_KEY = "lastActivity"

TOKEN_KEYS = (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, EXPIRES_AT_KEY)

TOKENS_UPDATED = "tokens_updated"
TOKENS_CLEARED = "tokens_cleared"


@dataclass(frozen=True)
class StorageEvent:
    """
    A change made by another context.

    key is None when the whole storage was cleared.
    """
    key: Optional[str]
    old_value: Optional[str]
    new_value: Optional[str]


StorageListener = Callable[[StorageEvent], None]


class SharedStorage:
    """Values for one origin plus the areas attached to it."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._areas: List["StorageArea"] = []

    def area(self) -> "StorageArea":
        """Attach a new context."""
        area = StorageArea(self)
        self._areas.append(area)
        return area

    def detach(self, area: "StorageArea") -> None:
        if area in self._areas:
            self._areas.remove(area)

    def _write(self, source: "StorageArea", key: Optional[str], value: Optional[str]) -> None:
        if key is None:
            if not self._data:
                return
            self._data.clear()
            event = StorageEvent(None, None, None)
        else:
            old_value = self._data.get(key)
            if old_value == value:
                return
            if value is None:
                del self._data[key]
            else:
                self._data[key] = value
            event = StorageEvent(key, old_value, value)

        for area in list(self._areas):
            if area is not source:
                area._dispatch(event)


class StorageArea:
    """One context's view of a SharedStorage."""

    def __init__(self, shared: SharedStorage):
        self._shared = shared
        self._listeners: List[StorageListener] = []

    def get_item(self, key: str) -> Optional[str]:
        return self._shared._data.get(key)

    def set_item(self, key: str, value: Any) -> None:
        self._shared._write(self, key, str(value))

    def remove_item(self, key: str) -> None:
        self._shared._write(self, key, None)

    def clear(self) -> None:
        self._shared._write(self, None, None)

    def add_listener(self, listener: StorageListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: StorageListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _dispatch(self, event: StorageEvent) -> None:
        for listener in list(self._listeners):
            listener(event)


class SessionSignals:
    """Per-context pub/sub for session changes."""

    def __init__(self):
        self._subscribers: Dict[str, List[Callable[..., None]]] = {}

    def subscribe(self, signal: str, callback: Callable[..., None]) -> None:
        self._subscribers.setdefault(signal, []).append(callback)

    def unsubscribe(self, signal: str, callback: Callable[..., None]) -> None:
        callbacks = self._subscribers.get(signal, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def publish(self, signal: str, **payload: Any) -> None:
        for callback in list(self._subscribers.get(signal, [])):
            callback(**payload)


@dataclass
class StoredTokens:
    access_token: Optional[str]
    refresh_token: Optional[str]
    expires_at: Optional[float]


class SessionStore:
    """
    Typed access to the session keys of one storage area.

    expiresAt and lastActivity are epoch seconds. A session exists only
    when access token, refresh token, expiry and device id are all present.
    """

    def __init__(self, area: StorageArea):
        self.area = area

    def tokens(self) -> StoredTokens:
        expires_at = self.area.get_item(EXPIRES_AT_KEY)
        try:
            expires = float(expires_at) if expires_at is not None else None
        except ValueError:
            expires = None
        return StoredTokens(
            access_token=self.area.get_item(ACCESS_TOKEN_KEY),
            refresh_token=self.area.get_item(REFRESH_TOKEN_KEY),
            expires_at=expires,
        )

    def save_tokens(self, access_token: str, refresh_token: str, expires_at: float) -> None:
        # Access token last: other contexts treat its arrival as "tokens updated"
        self.area.set_item(REFRESH_TOKEN_KEY, refresh_token)
        self.area.set_item(EXPIRES_AT_KEY, expires_at)
        self.area.set_item(ACCESS_TOKEN_KEY, access_token)

    def clear_tokens(self) -> None:
        # Device ID is kept across sessions
        for key in TOKEN_KEYS + (LAST_ACTIVITY_KEY,):
            self.area.remove_item(key)

    @property
    def device_id(self) -> Optional[str]:
        return self.area.get_item(DEVICE_ID_KEY)

    @device_id.setter
    def device_id(self, value: str) -> None:
        self.area.set_item(DEVICE_ID_KEY, value)

    def touch(self, now: float) -> None:
        self.area.set_item(LAST_ACTIVITY_KEY, now)

    @property
    def last_activity(self) -> Optional[float]:
        value = self.area.get_item(LAST_ACTIVITY_KEY)
        try:
            return float(value) if value is not None else None
        except ValueError:
            return None

    def has_session(self) -> bool:
        stored = self.tokens()
        return bool(
            stored.access_token
            and stored.refresh_token
            and stored.expires_at is not None
            and self.device_id
        )
