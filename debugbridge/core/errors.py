from __future__ import annotations


class BridgeError(Exception):
    """Base class for debugbridge errors."""


class LaunchError(BridgeError):
    """The browser process could not be started; the supervisor is back to idle."""


class ConfigError(BridgeError, ValueError):
    pass
