"""Tests for cross-tab session synchronization."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from soloai.session_sync import (
    BroadcastHub,
    BrowserEnvironment,
    ChannelState,
    SessionEvent,
    SessionEventType,
    SessionSyncChannel,
    SharedStorage,
    StorageEvent,
    Transport,
    TransportUnavailableError,
    sign_out_with_sync,
)

FIXED_TIME = 1_700_000_000.0


class Tab:
    """One browser tab: its own auth client, router and sync channel."""

    def __init__(self, hub, storage, is_browser=True, clear_delay=0.01):
        self.session_client = AsyncMock()
        self.session_client.get_session.return_value = {"user": {"id": "user_1"}}
        self.navigator = AsyncMock()
        self.storage = storage.connect() if storage else None
        self.channel = SessionSyncChannel(
            BrowserEnvironment(broadcast=hub, storage=self.storage, is_browser=is_browser),
            self.session_client,
            self.navigator,
            clear_delay=clear_delay,
        )
        self.channel.init()


@pytest.fixture
def storage():
    return SharedStorage()


class TestTransports:
    def test_broadcast_skips_sender(self):
        hub = BroadcastHub()
        a, b, other = hub.open("auth"), hub.open("auth"), hub.open("other")
        received = {"a": [], "b": [], "other": []}
        a.onmessage = received["a"].append
        b.onmessage = received["b"].append
        other.onmessage = received["other"].append

        delivered = a.post_message({"type": "SESSION_UPDATED"})

        assert delivered == 1
        assert received == {"a": [], "b": [{"type": "SESSION_UPDATED"}], "other": []}

    def test_closed_channel_receives_nothing(self):
        hub = BroadcastHub()
        a, b = hub.open("auth"), hub.open("auth")
        received = []
        b.onmessage = received.append
        b.close()

        assert a.post_message({"type": "SESSION_UPDATED"}) == 0
        assert received == []

    def test_unavailable_hub(self):
        with pytest.raises(TransportUnavailableError):
            BroadcastHub(available=False).open("auth")

    def test_storage_notifies_other_tabs_on_change_only(self, storage):
        writer, reader = storage.connect(), storage.connect()
        events, own_events = [], []
        reader.add_listener(events.append)
        writer.add_listener(own_events.append)

        writer.set_item("k", "v1")
        writer.set_item("k", "v1")
        writer.remove_item("k")

        assert events == [
            StorageEvent(key="k", old_value=None, new_value="v1"),
            StorageEvent(key="k", old_value="v1", new_value=None),
        ]
        assert own_events == []
        assert reader.get_item("k") is None


class TestSessionEvent:
    def test_json_round_trip(self):
        event = SessionEvent(SessionEventType.USER_LOGOUT, timestamp=123)
        assert SessionEvent.from_json(event.to_json()) == event

    @pytest.mark.parametrize("message", [None, "SESSION_UPDATED", {"type": "SESSION_EXPIRED"}, {}])
    def test_malformed_messages_rejected(self, message):
        with pytest.raises(ValueError):
            SessionEvent.from_message(message)


class TestChannelInit:
    @pytest.mark.asyncio
    async def test_prefers_broadcast(self, storage):
        tab = Tab(BroadcastHub(), storage)

        assert tab.channel.state == ChannelState.LISTENING
        assert tab.channel.transport == Transport.BROADCAST
        assert tab.storage.listener_count == 0

    @pytest.mark.asyncio
    async def test_falls_back_to_storage(self, storage):
        tab = Tab(BroadcastHub(available=False), storage)

        assert tab.channel.transport == Transport.STORAGE
        assert tab.storage.listener_count == 1

    @pytest.mark.asyncio
    async def test_no_broadcast_primitive_at_all(self, storage):
        tab = Tab(None, storage)

        assert tab.channel.transport == Transport.STORAGE

    @pytest.mark.asyncio
    async def test_server_side_is_noop(self, storage):
        hub = BroadcastHub()
        listener = Tab(hub, storage)
        server = Tab(hub, storage, is_browser=False)

        server.channel.broadcast(SessionEventType.USER_LOGOUT)
        await listener.channel.wait_idle()

        assert server.channel.state == ChannelState.UNINITIALIZED
        listener.navigator.goto.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("available", [True, False])
    async def test_closed_channel_cannot_be_reopened(self, storage, available):
        hub = BroadcastHub(available=available)
        sender, receiver = Tab(hub, storage), Tab(hub, storage)
        receiver.channel.close()

        receiver.channel.init()
        sender.channel.broadcast(SessionEventType.USER_LOGOUT)
        await receiver.channel.wait_idle()

        assert receiver.channel.state == ChannelState.CLOSED
        assert receiver.channel.transport is None
        assert receiver.storage.listener_count == 0
        receiver.navigator.goto.assert_not_called()


class TestBroadcastTransport:
    @pytest.mark.asyncio
    async def test_cleared_session_redirects_tab_with_valid_session(self, storage):
        hub = BroadcastHub()
        sender, receiver = Tab(hub, storage), Tab(hub, storage)

        sender.channel.broadcast(SessionEventType.SESSION_CLEARED)
        await receiver.channel.wait_idle()

        receiver.navigator.goto.assert_awaited_once_with("/login")
        # No session check before redirecting
        receiver.session_client.get_session.assert_not_called()
        sender.navigator.goto.assert_not_called()

    @pytest.mark.asyncio
    async def test_session_updated_refetches(self, storage):
        hub = BroadcastHub()
        sender, receivers = Tab(hub, storage), [Tab(hub, storage), Tab(hub, storage)]

        sender.channel.broadcast(SessionEventType.SESSION_UPDATED)
        for tab in receivers:
            await tab.channel.wait_idle()

        for tab in receivers:
            tab.session_client.get_session.assert_awaited_once()
            tab.navigator.goto.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_message_ignored(self, storage):
        hub = BroadcastHub()
        receiver = Tab(hub, storage)

        hub.open("auth_session_sync").post_message({"type": "SESSION_EXPIRED", "timestamp": 1})
        await receiver.channel.wait_idle()

        receiver.navigator.goto.assert_not_called()
        receiver.session_client.get_session.assert_not_called()

    @pytest.mark.asyncio
    async def test_closed_tab_stops_listening(self, storage):
        hub = BroadcastHub()
        sender, receiver = Tab(hub, storage), Tab(hub, storage)
        receiver.channel.close()

        sender.channel.broadcast(SessionEventType.USER_LOGOUT)

        assert receiver.channel.state == ChannelState.CLOSED
        receiver.navigator.goto.assert_not_called()

    @pytest.mark.asyncio
    async def test_failing_reaction_is_contained(self, storage):
        hub = BroadcastHub()
        sender, receiver = Tab(hub, storage), Tab(hub, storage)
        receiver.session_client.get_session.side_effect = ConnectionError("offline")

        sender.channel.broadcast(SessionEventType.SESSION_UPDATED)
        await receiver.channel.wait_idle()

        receiver.session_client.get_session.assert_awaited_once()


class TestStorageFallback:
    @pytest.mark.asyncio
    async def test_identical_events_both_delivered(self, storage):
        hub = BroadcastHub(available=False)
        sender, receiver = Tab(hub, storage), Tab(hub, storage)

        with patch("soloai.session_sync.events.time.time", return_value=FIXED_TIME):
            sender.channel.broadcast(SessionEventType.SESSION_UPDATED)
            sender.channel.broadcast(SessionEventType.SESSION_UPDATED)
        await receiver.channel.wait_idle()

        assert receiver.session_client.get_session.await_count == 2

    @pytest.mark.asyncio
    async def test_key_cleared_after_delay(self, storage):
        hub = BroadcastHub(available=False)
        sender, receiver = Tab(hub, storage), Tab(hub, storage)

        sender.channel.broadcast(SessionEventType.USER_LOGOUT)
        assert receiver.storage.get_item("auth_session_event") is not None

        await asyncio.sleep(0.05)
        await receiver.channel.wait_idle()

        assert receiver.storage.get_item("auth_session_event") is None
        # The removal itself is not an event
        receiver.navigator.goto.assert_awaited_once_with("/login")

    @pytest.mark.asyncio
    async def test_other_keys_ignored(self, storage):
        hub = BroadcastHub(available=False)
        receiver = Tab(hub, storage)

        storage.connect().set_item("theme", '{"type": "USER_LOGOUT", "timestamp": 1}')
        storage.connect().set_item("auth_session_event", "not json")
        await receiver.channel.wait_idle()

        receiver.navigator.goto.assert_not_called()

    @pytest.mark.asyncio
    async def test_close_removes_listener(self, storage):
        tab = Tab(BroadcastHub(available=False), storage)

        tab.channel.close()

        assert tab.storage.listener_count == 0


@pytest.mark.asyncio
async def test_sign_out_with_sync(storage):
    hub = BroadcastHub()
    sender, receiver = Tab(hub, storage), Tab(hub, storage)

    await sign_out_with_sync(sender.session_client, sender.channel)
    await receiver.channel.wait_idle()

    sender.session_client.sign_out.assert_awaited_once()
    receiver.navigator.goto.assert_awaited_once_with("/login")
