"""Framework-neutral data aliases."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from palaver.context import Context

type Extra = dict[str, Any]
type Handler = Callable[[Context], Awaitable[Any] | Any]


class AppStatus(str, Enum):
    READY = "ready"
    STARTED = "started"
    STOPPED = "stopped"


@dataclass
class ResponseMeta:
    """Bookkeeping attached to every processed activity."""

    routes: int = 0
    elapse: int = 0


@dataclass
class Response:
    """Envelope returned to the transport for one inbound activity."""

    status: int = HTTPStatus.OK
    body: Any = None
    meta: ResponseMeta = field(default_factory=ResponseMeta)

    @property
    def ok(self) -> bool:
        return 200 <= int(self.status) < 300
