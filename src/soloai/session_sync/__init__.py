"""Cross-tab session synchronization."""

from soloai.session_sync.channel import (
    BrowserEnvironment,
    ChannelState,
    SessionSyncChannel,
    Transport,
    sign_out_with_sync,
)
from soloai.session_sync.events import SessionEvent, SessionEventType
from soloai.session_sync.transports import (
    BroadcastChannel,
    BroadcastHub,
    SharedStorage,
    StorageArea,
    StorageEvent,
    TransportUnavailableError,
)

__all__ = [
    "BroadcastChannel",
    "BroadcastHub",
    "BrowserEnvironment",
    "ChannelState",
    "SessionEvent",
    "SessionEventType",
    "SessionSyncChannel",
    "SharedStorage",
    "StorageArea",
    "StorageEvent",
    "Transport",
    "TransportUnavailableError",
    "sign_out_with_sync",
]
