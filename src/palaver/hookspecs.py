"""Pluggy hook namespace and plugin hook specifications."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pluggy

from palaver.events import ActivityEvent, ActivityResponseEvent, ActivitySentEvent
from palaver.protocols import Sender

if TYPE_CHECKING:
    from palaver.app import App
    from palaver.context import Context

PALAVER_HOOK_NAMESPACE = "palaver"
hookspec = pluggy.HookspecMarker(PALAVER_HOOK_NAMESPACE)
hookimpl = pluggy.HookimplMarker(PALAVER_HOOK_NAMESPACE)


class PalaverHookSpecs:
    """Hook contract for Palaver plugins."""

    @hookspec(firstresult=True)
    def provide_sender(self) -> Sender | None:
        """Provide a sender used for proactive (out-of-request) sends."""

    @hookspec
    def on_init(self, app: App) -> None:
        """Prepare the plugin; routes may be registered here."""

    @hookspec
    def on_start(self, app: App) -> None:
        """Start background work once every plugin is initialized."""

    @hookspec
    def on_activity(self, app: App, sender: Sender, event: ActivityEvent) -> None:
        """Observe every inbound activity before its handlers run."""

    @hookspec
    def on_activity_sent(self, sender: Any, event: ActivitySentEvent) -> None:
        """Observe every activity delivered to a channel."""

    @hookspec
    def on_activity_response(self, sender: Any, event: ActivityResponseEvent) -> None:
        """Observe the response produced for an inbound activity."""

    @hookspec
    def on_error(self, error: BaseException, context: Context | None) -> None:
        """Observe framework and handler errors."""

    @hookspec
    def register_cli_commands(self, app: Any) -> None:
        """Register CLI commands onto the root Typer application."""
