"""Route table: selects the ordered handler list for an inbound activity."""

from __future__ import annotations

import inspect
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from palaver.activities import ActivityBase
from palaver.errors import RouteRegistrationError
from palaver.types import Handler

if TYPE_CHECKING:
    from palaver.context import Context

ANY_ACTIVITY = "activity"

type Predicate = Callable[[ActivityBase], bool]
type TextPattern = str | re.Pattern[str]


@dataclass(frozen=True)
class RouteMatcher:
    """Structural match on activity type, sub-discriminator and message text."""

    type: str = ANY_ACTIVITY
    name: str | None = None
    pattern: TextPattern | None = None

    def __call__(self, activity: ActivityBase) -> bool:
        if self.type != ANY_ACTIVITY and activity.type != self.type:
            return False
        if self.name is not None and getattr(activity, "name", None) != self.name:
            return False
        if self.pattern is not None:
            return _text_matches(self.pattern, getattr(activity, "text", None))
        return True

    def describe(self) -> str:
        parts = [self.type if self.name is None else f"{self.type}/{self.name}"]
        if self.pattern is not None:
            parts.append(self.pattern.pattern if isinstance(self.pattern, re.Pattern) else repr(self.pattern))
        return " ".join(parts)


@dataclass(frozen=True)
class Route:
    matcher: RouteMatcher | Predicate
    handler: Handler
    name: str

    def matches(self, activity: ActivityBase) -> bool:
        return bool(self.matcher(activity))

    async def invoke(self, context: Context) -> Any:
        value = self.handler(context)
        if inspect.isawaitable(value):
            value = await value
        return value


class Router:
    """Registration-ordered route table, read-only once frozen."""

    def __init__(self) -> None:
        self._routes: list[Route] = []
        self._frozen = False

    @property
    def routes(self) -> list[Route]:
        return list(self._routes)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, matcher: RouteMatcher | Predicate, handler: Handler, *, name: str | None = None) -> Route:
        if self._frozen:
            raise RouteRegistrationError("routes cannot be registered after activity processing has started")
        route = Route(matcher=matcher, handler=handler, name=name or _route_name(matcher, handler))
        self._routes.append(route)
        return route

    def freeze(self) -> None:
        self._frozen = True

    def select(self, activity: ActivityBase) -> list[Route]:
        """Return every matching route in registration order."""
        return [route for route in self._routes if route.matches(activity)]


class RouteChain:
    """Drives ``next()`` through the matched routes of one request.

    Each step runs the next handler. A non-None handler result replaces the
    running result, and every step returns the running result, so a handler
    that delegates with ``await ctx.next()`` and returns nothing still yields
    the downstream value.
    """

    def __init__(self, routes: Sequence[Route]) -> None:
        self._routes = list(routes)
        self._index = -1
        self._result: Any = None

    @property
    def invoked(self) -> int:
        return self._index + 1

    @property
    def result(self) -> Any:
        return self._result

    async def next(self, context: Context) -> Any:
        if self._index + 1 >= len(self._routes):
            return self._result
        self._index += 1
        value = await self._routes[self._index].invoke(context)
        if value is not None:
            self._result = value
        return self._result


def _text_matches(pattern: TextPattern, text: str | None) -> bool:
    if text is None:
        return False
    if isinstance(pattern, re.Pattern):
        return pattern.search(text) is not None
    return text.strip() == pattern


def _route_name(matcher: RouteMatcher | Predicate, handler: Handler) -> str:
    if isinstance(matcher, RouteMatcher):
        return f"{matcher.describe()} -> {getattr(handler, '__qualname__', 'handler')}"
    return getattr(handler, "__qualname__", "handler")
