"""Push-channel session state."""

from enum import Enum


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    OFFLINE = "offline"         # Retry budget exhausted; surfaced to consumers
