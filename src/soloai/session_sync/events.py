"""Session event vocabulary shared by all tabs."""

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SessionEventType(str, Enum):
    SESSION_UPDATED = "SESSION_UPDATED"
    SESSION_CLEARED = "SESSION_CLEARED"
    USER_LOGOUT = "USER_LOGOUT"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class SessionEvent:
    """One auth-state change. Lives only on the wire between tabs."""

    type: SessionEventType
    timestamp: int = field(default_factory=_now_ms)  # epoch milliseconds

    def to_message(self) -> dict:
        return {"type": self.type.value, "timestamp": self.timestamp}

    def to_json(self) -> str:
        return json.dumps(self.to_message())

    @classmethod
    def from_message(cls, data: Any) -> "SessionEvent":
        """
        Parse a received message.

        Raises:
            ValueError: On a malformed message or an unknown event type
        """
        if not isinstance(data, dict):
            raise ValueError(f"Session event must be an object, got {type(data).__name__}")
        try:
            event_type = SessionEventType(data.get("type"))
        except ValueError:
            raise ValueError(f"Unknown session event type: {data.get('type')!r}") from None
        timestamp = data.get("timestamp")
        if not isinstance(timestamp, int):
            timestamp = 0
        return cls(type=event_type, timestamp=timestamp)

    @classmethod
    def from_json(cls, raw: str) -> "SessionEvent":
        return cls.from_message(json.loads(raw))
