"""Same-origin transports used to carry session events between tabs.

``BroadcastHub`` models a named publish/subscribe medium; every tab opens
its own ``BroadcastChannel`` on it. ``SharedStorage`` models a key-value
store shared by all tabs where each tab holds a ``StorageArea`` and is told
about changes made by the others.
"""

import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any], None]


class TransportUnavailableError(Exception):
    """The environment does not provide the requested transport."""


class BroadcastHub:
    """
    Publish/subscribe medium shared by all same-origin tabs.

    Args:
        available: False models an environment without a broadcast primitive
    """

    def __init__(self, available: bool = True):
        self.available = available
        self._channels: dict[str, list["BroadcastChannel"]] = {}

    def open(self, name: str) -> "BroadcastChannel":
        """
        Open a channel by name.

        Raises:
            TransportUnavailableError: If broadcasting is not supported
        """
        if not self.available:
            raise TransportUnavailableError("BroadcastChannel is not supported")
        channel = BroadcastChannel(self, name)
        self._channels.setdefault(name, []).append(channel)
        return channel

    def _deliver(self, sender: "BroadcastChannel", message: Any) -> int:
        delivered = 0
        for channel in list(self._channels.get(sender.name, [])):
            if channel is sender or channel.closed:
                continue
            # Receivers get their own copy, as with structured cloning
            channel._receive(copy.deepcopy(message))
            delivered += 1
        return delivered

    def _detach(self, channel: "BroadcastChannel") -> None:
        channels = self._channels.get(channel.name, [])
        if channel in channels:
            channels.remove(channel)
        if not channels:
            self._channels.pop(channel.name, None)


class BroadcastChannel:
    """One tab's handle on a named broadcast channel."""

    def __init__(self, hub: BroadcastHub, name: str):
        self._hub = hub
        self.name = name
        self.closed = False
        self.onmessage: Optional[MessageHandler] = None

    def post_message(self, message: Any) -> int:
        """Send to every other open channel with the same name.

        Returns:
            Number of channels the message was delivered to
        """
        if self.closed:
            raise TransportUnavailableError(f"Channel {self.name!r} is closed")
        return self._hub._deliver(self, message)

    def _receive(self, message: Any) -> None:
        if self.onmessage is None:
            return
        self.onmessage(message)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.onmessage = None
        self._hub._detach(self)


@dataclass(frozen=True)
class StorageEvent:
    key: str
    old_value: Optional[str]
    new_value: Optional[str]


StorageListener = Callable[[StorageEvent], None]


class SharedStorage:
    """Key-value store shared by every tab of one origin."""

    def __init__(self):
        self._data: dict[str, str] = {}
        self._areas: list["StorageArea"] = []

    def connect(self) -> "StorageArea":
        """Attach a tab to the store."""
        area = StorageArea(self)
        self._areas.append(area)
        return area

    def _write(self, writer: "StorageArea", key: str, value: Optional[str]) -> None:
        old_value = self._data.get(key)
        if old_value == value:
            # Unchanged writes do not notify anyone
            return
        if value is None:
            del self._data[key]
        else:
            self._data[key] = value

        event = StorageEvent(key=key, old_value=old_value, new_value=value)
        for area in list(self._areas):
            if area is not writer:
                area._notify(event)


class StorageArea:
    """One tab's view of ``SharedStorage``; changes it makes reach the other tabs only."""

    def __init__(self, storage: SharedStorage):
        self._storage = storage
        self._listeners: list[StorageListener] = []

    def get_item(self, key: str) -> Optional[str]:
        return self._storage._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._storage._write(self, key, value)

    def remove_item(self, key: str) -> None:
        self._storage._write(self, key, None)

    def add_listener(self, listener: StorageListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: StorageListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _notify(self, event: StorageEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Storage listener failed for key {event.key!r}: {e}")
