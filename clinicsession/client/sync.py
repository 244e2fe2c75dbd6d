"""
ClinicSession - Cross-Context Session Synchronizer

Mirrors token changes made in one context into the others. A new
access token written elsewhere publishes tokens_updated on this
context's signals; a removed one (logout, failed refresh elsewhere)
publishes tokens_cleared. No network calls are made here.
"""

from clinicsession.client.storage import (
    ACCESS_TOKEN_KEY,
    TOKENS_CLEARED,
    TOKENS_UPDATED,
    SessionSignals,
    StorageArea,
    StorageEvent,
)
from clinicsession.logging import get_logger


logger = get_logger(__name__)


class SessionSynchronizer:

    def __init__(self, area: StorageArea, signals: SessionSignals):
        self._area = area
        self._signals = signals
        self._started = False

    def start(self) -> None:
        if not self._started:
            self._area.add_listener(self._on_storage_event)
            self._started = True

    def stop(self) -> None:
        if self._started:
            self._area.remove_listener(self._on_storage_event)
            self._started = False

    def _on_storage_event(self, event: StorageEvent) -> None:
        if event.key is None:
            # Whole storage cleared
            logger.info("session_cleared_elsewhere")
            self._signals.publish(TOKENS_CLEARED)
            return
        if event.key != ACCESS_TOKEN_KEY:
            return

        if event.new_value:
            logger.info("session_updated_elsewhere")
            self._signals.publish(TOKENS_UPDATED, access_token=event.new_value)
        else:
            logger.info("session_cleared_elsewhere")
            self._signals.publish(TOKENS_CLEARED)
