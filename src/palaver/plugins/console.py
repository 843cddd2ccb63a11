"""Console plugin: a terminal sender plus the builtin CLI commands."""

from __future__ import annotations

import asyncio
import itertools

import typer

from palaver.activities import (
    Account,
    ActivityBase,
    Conversation,
    ConversationReference,
    MessageActivity,
    StreamType,
    TypingActivity,
    as_message,
)
from palaver.app import App, AppOptions
from palaver.auth import InboundToken
from palaver.config import get_settings
from palaver.context import Context
from palaver.hookspecs import hookimpl
from palaver.types import Response

CONSOLE_CHANNEL = "console"


class ConsolePlugin:
    """Prints every outbound activity instead of posting it to a channel."""

    name = "console"

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.sent: list[ActivityBase] = []

    async def send(
        self,
        activity: ActivityBase,
        reference: ConversationReference,
        is_targeted: bool = False,
    ) -> ActivityBase:
        sent = activity.model_copy(deep=True)
        if sent.id is None:
            sent.id = f"{CONSOLE_CHANNEL}-{next(self._ids)}"
        sent.conversation = reference.conversation
        self.sent.append(sent)
        typer.echo(f"[{reference.conversation.id}] {_render(sent)}")
        return sent

    @hookimpl
    def provide_sender(self) -> ConsolePlugin:
        return self

    @hookimpl
    def on_error(self, error: BaseException) -> None:
        typer.echo(f"error: {error}", err=True)

    @hookimpl
    def register_cli_commands(self, app: typer.Typer) -> None:
        self._register_run(app)
        self._register_hooks(app)
        self._register_routes(app)

    @staticmethod
    def _register_run(app: typer.Typer) -> None:
        @app.command("run")
        def run(
            message: str = typer.Argument(..., help="Inbound message text"),
            stream: bool = typer.Option(False, "--stream/--no-stream", help="Stream the echo word by word"),
            conversation_id: str = typer.Option("local", "--conversation", "-c", help="Conversation id"),
            user_id: str = typer.Option("human", "--user", "-u", help="Sender account id"),
        ) -> None:
            """Run one inbound message through an echo bot."""

            palaver = build_echo_app(stream=stream)
            activity = MessageActivity(
                id="1",
                text=message,
                channel_id=CONSOLE_CHANNEL,
                from_=Account(id=user_id, name=user_id),
                recipient=Account(id="palaver", name="palaver", role="bot"),
                conversation=Conversation(id=conversation_id),
            )
            response = asyncio.run(_process_once(palaver, activity))
            typer.echo(f"status={int(response.status)} routes={response.meta.routes} elapse={response.meta.elapse}ms")
            if not response.ok:
                raise typer.Exit(code=1)

    @staticmethod
    def _register_hooks(app: typer.Typer) -> None:
        @app.command("hooks")
        def list_hooks() -> None:
            """Show hook implementation mapping."""

            report = build_echo_app().hook_report()
            if not report:
                typer.echo("(no hook implementations)")
                return
            for hook_name, plugins in report.items():
                typer.echo(f"{hook_name}: {', '.join(plugins)}")

    @staticmethod
    def _register_routes(app: typer.Typer) -> None:
        @app.command("routes")
        def list_routes() -> None:
            """Show registered routes in dispatch order."""

            for index, route in enumerate(build_echo_app().router.routes, start=1):
                typer.echo(f"{index}. {route.name}")


def build_echo_app(*, stream: bool = False) -> App:
    """Build an app with the console plugin and a message echo handler."""

    palaver = App(AppOptions(settings=get_settings(), plugins=[ConsolePlugin()]))

    @palaver.on_message
    async def echo(ctx: Context) -> str | None:
        message = as_message(ctx.activity)
        text = message.text if message is not None else ""
        if not stream:
            await ctx.send(f"echo: {text}")
            return text

        ctx.stream.update("typing...")
        for index, word in enumerate(text.split()):
            ctx.stream.emit(word if index == 0 else f" {word}")
        return None

    return palaver


async def _process_once(palaver: App, activity: MessageActivity) -> Response:
    await palaver.start()
    return await palaver.process(CONSOLE_CHANNEL, InboundToken(app_id=palaver.id), activity)


def _render(activity: ActivityBase) -> str:
    match activity:
        case TypingActivity(text=None):
            return "(typing)"
        case TypingActivity():
            info = activity.stream_info()
            if info is not None and info.stream_type == StreamType.INFORMATIVE:
                return f"... {activity.text}"
            sequence = info.stream_sequence if info is not None else "-"
            return f"[chunk {sequence}] {activity.text}"
        case MessageActivity():
            parts = [activity.text] if activity.text else []
            parts.extend(f"<{attachment.content_type}>" for attachment in activity.attachments)
            return " ".join(parts)
    return f"<{activity.type}>"
