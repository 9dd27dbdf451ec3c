"""debugbridge Core - event bus and error types."""

from .errors import BridgeError, ConfigError, LaunchError
from .events import Event, EventBus, EventType

__all__ = [
    "BridgeError",
    "ConfigError",
    "Event",
    "EventBus",
    "EventType",
    "LaunchError",
]
