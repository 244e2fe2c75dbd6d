"""
ClinicSession - Session Storage & Synchronization Tests

Tests for shared storage events, cross-context signals and the
client device identity.
"""

import re

from clinicsession.client.device import get_or_create_device_id
from clinicsession.client.storage import (
    ACCESS_TOKEN_KEY,
    TOKENS_CLEARED,
    TOKENS_UPDATED,
    SessionSignals,
    SessionStore,
    SharedStorage,
)
from clinicsession.client.sync import SessionSynchronizer


class Context:
    """One client context: a storage area, its signals and synchronizer."""

    def __init__(self, shared: SharedStorage):
        self.area = shared.area()
        self.store = SessionStore(self.area)
        self.signals = SessionSignals()
        self.received = []
        self.signals.subscribe(TOKENS_UPDATED, lambda **kw: self.received.append((TOKENS_UPDATED, kw)))
        self.signals.subscribe(TOKENS_CLEARED, lambda **kw: self.received.append((TOKENS_CLEARED, kw)))
        self.sync = SessionSynchronizer(self.area, self.signals)
        self.sync.start()


class TestSharedStorage:

    def test_writer_does_not_hear_itself(self):
        shared = SharedStorage()
        writer, reader = shared.area(), shared.area()
        heard = {"writer": [], "reader": []}
        writer.add_listener(heard["writer"].append)
        reader.add_listener(heard["reader"].append)

        writer.set_item("k", "v")

        assert heard["writer"] == []
        assert len(heard["reader"]) == 1
        assert heard["reader"][0].new_value == "v"
        assert reader.get_item("k") == "v"

    def test_unchanged_value_is_silent(self):
        shared = SharedStorage()
        writer, reader = shared.area(), shared.area()
        heard = []
        reader.add_listener(heard.append)

        writer.set_item("k", "v")
        writer.set_item("k", "v")

        assert len(heard) == 1

    def test_detached_area_hears_nothing(self):
        shared = SharedStorage()
        writer, reader = shared.area(), shared.area()
        heard = []
        reader.add_listener(heard.append)
        shared.detach(reader)

        writer.set_item("k", "v")

        assert heard == []


class TestSessionStore:

    def test_round_trip(self):
        store = SessionStore(SharedStorage().area())
        store.device_id = "dev-1"

        store.save_tokens("a", "r", 1234.5)

        tokens = store.tokens()
        assert (tokens.access_token, tokens.refresh_token, tokens.expires_at) == ("a", "r", 1234.5)
        assert store.has_session() is True

    def test_clear_keeps_device_id(self):
        store = SessionStore(SharedStorage().area())
        store.device_id = "dev-1"
        store.save_tokens("a", "r", 1234.5)
        store.touch(1000.0)

        store.clear_tokens()

        assert store.has_session() is False
        assert store.tokens().access_token is None
        assert store.last_activity is None
        assert store.device_id == "dev-1"

    def test_session_requires_device_id(self):
        store = SessionStore(SharedStorage().area())
        store.save_tokens("a", "r", 1234.5)

        assert store.has_session() is False


class TestSessionSynchronizer:

    def test_login_elsewhere_publishes_update(self):
        shared = SharedStorage()
        tab_a, tab_b = Context(shared), Context(shared)

        tab_a.store.save_tokens("access-1", "refresh-1", 1234.5)

        assert tab_b.received == [(TOKENS_UPDATED, {"access_token": "access-1"})]
        assert tab_a.received == []

    def test_logout_elsewhere_publishes_clear(self):
        shared = SharedStorage()
        tab_a, tab_b = Context(shared), Context(shared)
        tab_a.store.save_tokens("access-1", "refresh-1", 1234.5)
        tab_b.received.clear()

        tab_a.store.clear_tokens()

        assert tab_b.received == [(TOKENS_CLEARED, {})]

    def test_storage_wipe_publishes_clear(self):
        shared = SharedStorage()
        tab_a, tab_b = Context(shared), Context(shared)
        tab_a.store.save_tokens("access-1", "refresh-1", 1234.5)
        tab_b.received.clear()

        tab_a.area.clear()

        assert tab_b.received == [(TOKENS_CLEARED, {})]

    def test_other_keys_ignored(self):
        shared = SharedStorage()
        tab_a, tab_b = Context(shared), Context(shared)

        tab_a.store.device_id = "dev-1"
        tab_a.store.touch(1000.0)

        assert tab_b.received == []

    def test_stop_detaches(self):
        shared = SharedStorage()
        tab_a, tab_b = Context(shared), Context(shared)
        tab_b.sync.stop()

        tab_a.area.set_item(ACCESS_TOKEN_KEY, "access-9")

        assert tab_b.received == []

    def test_every_other_context_notified(self):
        shared = SharedStorage()
        tabs = [Context(shared) for _ in range(3)]

        tabs[0].store.save_tokens("access-1", "refresh-1", 1234.5)

        assert [len(t.received) for t in tabs] == [0, 1, 1]


class TestDeviceId:

    def test_generated_once(self):
        store = SessionStore(SharedStorage().area())

        first = get_or_create_device_id(store)
        second = get_or_create_device_id(store)

        assert first == second
        assert re.match(r"^dev_[0-9a-f]{32}_[0-9a-f]{16}$", first)
        assert len(first) <= 128

    def test_existing_id_kept(self):
        store = SessionStore(SharedStorage().area())
        store.device_id = "dev-existing"

        assert get_or_create_device_id(store) == "dev-existing"
