"""Runtime logging helpers."""

from __future__ import annotations

import os
import sys
from contextvars import ContextVar
from logging import Handler
from typing import Literal

import loguru
from loguru import logger
from rich import get_console
from rich.logging import RichHandler

LogProfile = Literal["default", "chat"]

_PROFILE_FORMATS: dict[LogProfile, str] = {
    "chat": "{extra[path]} | {message}",
    "default": "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<6} | {name}:{function}:{line} | {extra[path]} | {message}",
}
_CONFIGURED: tuple[LogProfile, str] | None = None
_activity_path: ContextVar[str] = ContextVar("activity_path", default="-")


def current_path() -> str:
    """Get the routing path of the activity being processed in this task."""
    return _activity_path.get()


def set_current_path(path: str) -> object:
    return _activity_path.set(path)


def reset_current_path(token: object) -> None:
    _activity_path.reset(token)  # type: ignore[arg-type]


def _build_chat_handler() -> Handler:
    return RichHandler(
        console=get_console(),
        show_level=True,
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=False,
    )


def configure_logging(*, profile: LogProfile = "default", level: str | None = None) -> None:
    """Configure process-level logging once per profile and level."""

    def inject_context(record: loguru.Record) -> None:
        record["extra"].setdefault("path", current_path())

    global _CONFIGURED
    resolved_level = (level or os.getenv("PALAVER_LOG_LEVEL", "INFO")).upper()
    if _CONFIGURED == (profile, resolved_level):
        return

    logger.remove()
    if profile == "chat":
        logger.add(
            _build_chat_handler(),
            level=resolved_level,
            format=_PROFILE_FORMATS[profile],
            backtrace=False,
            diagnose=False,
        )
    else:
        logger.add(
            sys.stderr,
            level=resolved_level,
            format=_PROFILE_FORMATS[profile],
            backtrace=False,
            diagnose=False,
        )
    logger.configure(patcher=inject_context)
    _CONFIGURED = (profile, resolved_level)
