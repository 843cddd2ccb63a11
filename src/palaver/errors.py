"""Application-level exception types for Palaver."""

from __future__ import annotations


class PalaverError(Exception):
    """Base exception for Palaver."""


class ConfigurationError(PalaverError):
    """Base exception for configuration and startup validation errors."""


class AppNotStartedError(PalaverError):
    """Raised when an operation needs the bot identity before the app has one."""


class SenderNotFoundError(ConfigurationError):
    """Raised when no registered plugin can send activities."""


class PluginNotFoundError(ConfigurationError):
    """Raised when a plugin lookup by name fails."""

    def __init__(self, name: str) -> None:
        super().__init__(f"plugin '{name}' not found")
        self.name = name


class RouteRegistrationError(PalaverError):
    """Raised when a route is registered after dispatch has started."""


class StreamError(PalaverError):
    """Base exception for stream aggregation errors."""


class StreamClosedError(StreamError):
    """Raised when a fragment is emitted into a closed stream."""


class SignInError(PalaverError):
    """Raised when the sign-in flow cannot proceed."""
