"""Cross-tab session synchronization.

Each tab owns one ``SessionSyncChannel``. Sign-out or a session change in
any tab is published to the others, which either re-fetch their session or
go to the login page. Delivery is best-effort: no acknowledgement, no retry
and no replay for tabs that are not listening.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol

from soloai.session_sync.events import SessionEvent, SessionEventType
from soloai.session_sync.transports import (
    BroadcastChannel,
    BroadcastHub,
    StorageArea,
    StorageEvent,
    TransportUnavailableError,
)

logger = logging.getLogger(__name__)

CHANNEL_NAME = "auth_session_sync"
STORAGE_KEY = "auth_session_event"
CLEAR_DELAY_SECONDS = 0.1
LOGIN_PATH = "/login"


class SessionClient(Protocol):
    async def get_session(self) -> Any: ...

    async def sign_out(self) -> Any: ...


class Navigator(Protocol):
    async def goto(self, path: str) -> None: ...


class ChannelState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LISTENING = "listening"
    CLOSED = "closed"


class Transport(str, Enum):
    BROADCAST = "broadcast"
    STORAGE = "storage"


@dataclass
class BrowserEnvironment:
    """
    What one tab's runtime provides.

    ``broadcast`` is None where there is no broadcast primitive;
    ``is_browser`` is False during server-side rendering, where the
    channel does nothing.
    """

    broadcast: Optional[BroadcastHub]
    storage: Optional[StorageArea]
    is_browser: bool = True


class SessionSyncChannel:
    """
    One tab's endpoint of the session sync protocol.

    The transport is chosen once in ``init()``: the broadcast channel when
    it can be opened, otherwise a listener on shared storage. Received
    ``SESSION_UPDATED`` events re-fetch the session; ``SESSION_CLEARED`` and
    ``USER_LOGOUT`` navigate to the login page without checking whether
    this tab's own session is still valid.

    Must be used from within a running event loop.

    Args:
        environment: The tab's runtime capabilities
        session_client: Auth client used to re-fetch the session
        navigator: Client-side router
        channel_name: Broadcast channel name
        storage_key: Storage key used by the fallback transport
        clear_delay: Seconds before the fallback key is removed again
        login_path: Where clearing events navigate to
    """

    def __init__(
        self,
        environment: BrowserEnvironment,
        session_client: SessionClient,
        navigator: Navigator,
        channel_name: str = CHANNEL_NAME,
        storage_key: str = STORAGE_KEY,
        clear_delay: float = CLEAR_DELAY_SECONDS,
        login_path: str = LOGIN_PATH,
    ):
        self._environment = environment
        self._session_client = session_client
        self._navigator = navigator
        self.channel_name = channel_name
        self.storage_key = storage_key
        self.clear_delay = clear_delay
        self.login_path = login_path

        self.state = ChannelState.UNINITIALIZED
        self.transport: Optional[Transport] = None
        self._channel: Optional[BroadcastChannel] = None
        self._tasks: set[asyncio.Task] = set()

    def init(self) -> None:
        """Select the transport and start listening. Safe to call twice.

        A closed channel stays closed.
        """
        if not self._environment.is_browser or self.state != ChannelState.UNINITIALIZED:
            return

        try:
            if self._environment.broadcast is None:
                raise TransportUnavailableError("BroadcastChannel is not supported")
            self._channel = self._environment.broadcast.open(self.channel_name)
            self._channel.onmessage = self._on_message
            self.transport = Transport.BROADCAST
        except TransportUnavailableError:
            storage = self._environment.storage
            if storage is None:
                logger.warning("No cross-tab transport available, session sync disabled")
                return
            storage.add_listener(self._on_storage_event)
            self.transport = Transport.STORAGE
            logger.debug("BroadcastChannel unavailable, using storage events")

        self.state = ChannelState.LISTENING

    def broadcast(self, event_type: SessionEventType) -> None:
        """Publish a session event to the other tabs."""
        if not self._environment.is_browser or self.state != ChannelState.LISTENING:
            return

        event = SessionEvent(type=SessionEventType(event_type))

        if self.transport == Transport.BROADCAST:
            self._channel.post_message(event.to_message())
            return

        storage = self._environment.storage
        # Storage only notifies on change, so clear first: an identical
        # event published twice must still be seen twice
        storage.remove_item(self.storage_key)
        storage.set_item(self.storage_key, event.to_json())
        asyncio.get_running_loop().call_later(
            self.clear_delay, storage.remove_item, self.storage_key
        )

    def close(self) -> None:
        """Stop listening and release the transport."""
        if self._channel is not None:
            self._channel.close()
            self._channel = None
        if self._environment.storage is not None:
            self._environment.storage.remove_listener(self._on_storage_event)
        for task in list(self._tasks):
            task.cancel()
        self.state = ChannelState.CLOSED
        self.transport = None

    async def wait_idle(self) -> None:
        """Wait for reactions to received events to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _on_message(self, data: Any) -> None:
        try:
            event = SessionEvent.from_message(data)
        except ValueError as e:
            logger.debug(f"Ignoring session message: {e}")
            return
        self._dispatch(event)

    def _on_storage_event(self, event: StorageEvent) -> None:
        if event.key != self.storage_key or not event.new_value:
            return
        try:
            session_event = SessionEvent.from_json(event.new_value)
        except ValueError as e:
            logger.debug(f"Ignoring session storage event: {e}")
            return
        self._dispatch(session_event)

    def _dispatch(self, event: SessionEvent) -> None:
        if event.type == SessionEventType.SESSION_UPDATED:
            action = self._session_client.get_session()
        else:
            action = self._navigator.goto(self.login_path)

        task = asyncio.get_running_loop().create_task(self._run(event, action))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, event: SessionEvent, action) -> None:
        try:
            await action
        except Exception as e:
            logger.warning(f"Handling {event.type.value} failed: {e}")


async def sign_out_with_sync(session_client: SessionClient, channel: SessionSyncChannel) -> None:
    """Sign out, then tell the other tabs."""
    await session_client.sign_out()
    channel.broadcast(SessionEventType.USER_LOGOUT)
