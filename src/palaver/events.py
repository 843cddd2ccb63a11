"""Signal-based lifecycle event bus."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from blinker import Signal
from loguru import logger

from palaver.activities import ActivityBase
from palaver.auth import InboundToken, TokenResponse
from palaver.types import Extra, Response

if TYPE_CHECKING:
    from palaver.context import Context

type EventName = EventType | str
type EventHandler = Callable[[Any, Any], Awaitable[Any] | Any]
type Unsubscribe = Callable[[], None]


class EventType(str, Enum):
    """Built-in lifecycle events. Plugins add ``"<plugin>.<event>"`` names."""

    START = "start"
    ERROR = "error"
    SIGN_IN = "sign-in"
    ACTIVITY = "activity"
    ACTIVITY_SENT = "activity.sent"
    ACTIVITY_RESPONSE = "activity.response"

    @classmethod
    def parse(cls, name: str) -> EventType | None:
        try:
            return cls(name)
        except ValueError:
            return None


def normalize_event_name(event: EventName) -> str:
    """Normalize an event name to its canonical string form."""
    if isinstance(event, Enum):
        return str(event.value)
    return str(event)


@dataclass(frozen=True)
class StartEvent:
    app: Any


@dataclass(frozen=True)
class ErrorEvent:
    error: BaseException
    context: Context | None = None


@dataclass(frozen=True)
class ActivityEvent:
    activity: ActivityBase
    token: InboundToken
    extra: Extra = field(default_factory=dict)


@dataclass(frozen=True)
class ActivitySentEvent:
    activity: ActivityBase


@dataclass(frozen=True)
class ActivityResponseEvent:
    response: Response


@dataclass(frozen=True)
class SignInEvent:
    context: Context
    token: TokenResponse


class EventBus:
    """In-process publish/subscribe registry backed by blinker signals.

    Topics are keyed by the canonical event name. Handlers receive
    ``(source, payload)`` and may be plain functions or coroutines. A failing
    handler is logged and skipped; the remaining handlers still run.
    """

    def __init__(self) -> None:
        self._topics: dict[str, Signal] = {}

    def on(
        self,
        event: EventName,
        handler: EventHandler | None = None,
    ) -> Unsubscribe | Callable[[EventHandler], EventHandler]:
        """Subscribe to an event; usable directly or as a decorator."""

        name = normalize_event_name(event)
        if handler is None:

            def decorator(func: EventHandler) -> EventHandler:
                self._connect(name, func)
                return func

            return decorator
        return self._connect(name, handler)

    async def emit(self, source: Any, event: EventName, payload: Any = None) -> Any:
        """Publish one event and return the last non-None handler result."""

        signal = self._topics.get(normalize_event_name(event))
        if signal is None or not signal.receivers:
            return None
        result = None
        for _receiver, value in await signal.send_async(source, payload=payload):
            if value is not None:
                result = value
        return result

    def topics(self) -> dict[str, int]:
        return {name: len(signal.receivers) for name, signal in self._topics.items() if signal.receivers}

    def _connect(self, name: str, handler: EventHandler) -> Unsubscribe:
        signal = self._topics.setdefault(name, Signal(name))

        async def _receiver(sender: Any, *, payload: Any) -> Any:
            try:
                value = handler(sender, payload)
                if inspect.isawaitable(value):
                    value = await value
            except Exception:
                logger.opt(exception=True).warning(
                    "events.handler_failed event={} handler={}",
                    name,
                    getattr(handler, "__qualname__", repr(handler)),
                )
                return None
            return value

        signal.connect(_receiver, weak=False)
        return lambda: signal.disconnect(_receiver)
