"""Palaver - route, stream and answer chat activities."""

from palaver.activities import (
    Activity,
    ActivityBase,
    MessageActivity,
    TypingActivity,
    parse_activity,
)
from palaver.app import App, AppBuilder, AppOptions
from palaver.config import Settings, get_settings
from palaver.context import Context
from palaver.events import EventType
from palaver.hookspecs import hookimpl
from palaver.stream import Stream
from palaver.types import Response

__version__ = "0.1.0"

__all__ = [
    "Activity",
    "ActivityBase",
    "App",
    "AppBuilder",
    "AppOptions",
    "Context",
    "EventType",
    "MessageActivity",
    "Response",
    "Settings",
    "Stream",
    "TypingActivity",
    "get_settings",
    "hookimpl",
    "parse_activity",
]
