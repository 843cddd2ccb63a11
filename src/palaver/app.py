"""Application core: plugin wiring, routing and activity processing."""

from __future__ import annotations

import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, cast

import pluggy
from loguru import logger

from palaver.activities import (
    Account,
    ActivityBase,
    ActivityType,
    Conversation,
    ConversationReference,
    as_invoke,
)
from palaver.auth import BotToken, InboundToken, TokenResponse
from palaver.config import Settings, get_settings
from palaver.context import Context, Outbound, to_activity
from palaver.errors import AppNotStartedError, PluginNotFoundError, SenderNotFoundError
from palaver.events import (
    ActivityEvent,
    ActivityResponseEvent,
    ActivitySentEvent,
    ErrorEvent,
    EventBus,
    EventType,
    SignInEvent,
    StartEvent,
)
from palaver.hook_runtime import HookRuntime
from palaver.hookspecs import PALAVER_HOOK_NAMESPACE, PalaverHookSpecs
from palaver.logging_utils import reset_current_path, set_current_path
from palaver.protocols import BotTokenProvider, ConversationClient, Sender, TokenClient, is_sender
from palaver.router import ANY_ACTIVITY, RouteChain, RouteMatcher, Router, TextPattern
from palaver.storage import MemoryStorage, Storage
from palaver.stream import Stream
from palaver.types import AppStatus, Extra, Handler, Response, ResponseMeta

TOKEN_EXCHANGE_INVOKE = "signin/tokenExchange"
VERIFY_STATE_INVOKE = "signin/verifyState"

type HandlerDecorator = Callable[[Handler], Handler]


@dataclass
class AppOptions:
    """Explicit construction parameters for an App."""

    settings: Settings | None = None
    plugins: list[Any] = field(default_factory=list)
    tokens: TokenClient | None = None
    conversations: ConversationClient | None = None
    bot_token_provider: BotTokenProvider | None = None
    storage: Storage | None = None
    connection_name: str | None = None


class App:
    """Routes inbound activities to handlers and plugins.

    Plugins are pluggy objects registered with ``add_plugin``. Handlers are
    registered through the ``on_*`` decorators before the first ``process``
    call; after that the route table is frozen.
    """

    def __init__(self, options: AppOptions | None = None) -> None:
        options = options or AppOptions()
        self.settings = options.settings or get_settings()
        self.storage: Storage = options.storage if options.storage is not None else MemoryStorage()
        self.tokens = options.tokens
        self.conversations = options.conversations
        self.connection_name = options.connection_name or self.settings.default_connection_name
        self.status = AppStatus.READY
        self.events = EventBus()
        self.router = Router()

        self._bot_token_provider = options.bot_token_provider
        self._bot_token: BotToken | None = None
        self._plugin_manager = pluggy.PluginManager(PALAVER_HOOK_NAMESPACE)
        self._plugin_manager.add_hookspecs(PalaverHookSpecs)
        self._hooks = HookRuntime(self._plugin_manager, on_failure=self._on_hook_failure)

        self.events.on(EventType.ERROR, self._on_error_event)
        self.events.on(EventType.ACTIVITY_SENT, self._on_activity_sent_event)
        self.events.on(EventType.ACTIVITY_RESPONSE, self._on_activity_response_event)
        self.on_invoke(TOKEN_EXCHANGE_INVOKE)(self._on_token_exchange)
        self.on_invoke(VERIFY_STATE_INVOKE)(self._on_verify_state)

        for plugin in options.plugins:
            self.add_plugin(plugin)

    @property
    def id(self) -> str | None:
        if self._bot_token is not None:
            return self._bot_token.app_id
        return self.settings.client_id

    @property
    def name(self) -> str | None:
        return self._bot_token.app_display_name if self._bot_token is not None else None

    @property
    def plugins(self) -> list[str]:
        return [name for name, _plugin in self._plugin_manager.list_name_plugin()]

    def add_plugin(self, plugin: Any, name: str | None = None) -> App:
        plugin_name = name or getattr(plugin, "name", None) or type(plugin).__name__
        self._plugin_manager.register(plugin, name=plugin_name)
        logger.debug("app.plugin_added plugin={}", plugin_name)
        return self

    def get_plugin(self, name: str) -> Any:
        plugin = self._plugin_manager.get_plugin(name)
        if plugin is None:
            raise PluginNotFoundError(name)
        return plugin

    def hook_report(self) -> dict[str, list[str]]:
        """Return hook implementation summary for diagnostics."""

        return self._hooks.hook_report()

    def register_cli_commands(self, cli: Any) -> None:
        """Ask plugins to register CLI commands."""

        self._hooks.call_many_sync("register_cli_commands", app=cli)

    # Routing

    def route(self, matcher: RouteMatcher | Callable[[ActivityBase], bool], *, name: str | None = None) -> HandlerDecorator:
        def decorator(handler: Handler) -> Handler:
            self.router.register(matcher, handler, name=name)
            return handler

        return decorator

    def on(self, event: EventType | str, handler: Any = None) -> Any:
        """Subscribe to a lifecycle or plugin event."""

        return self.events.on(event, handler)

    def on_activity(self, handler: Handler | None = None) -> Any:
        return self._decorate(RouteMatcher(ANY_ACTIVITY), handler)

    def on_message(self, pattern: TextPattern | Handler | None = None) -> Any:
        """Handle messages, optionally only those whose text matches ``pattern``.

        A plain string must equal the stripped text; a compiled regex is searched.
        """
        if callable(pattern) and not isinstance(pattern, re.Pattern):
            return self._decorate(RouteMatcher(ActivityType.MESSAGE.value), cast(Handler, pattern))
        return self._decorate(RouteMatcher(ActivityType.MESSAGE.value, pattern=pattern), None)

    def on_typing(self, handler: Handler | None = None) -> Any:
        return self._decorate(RouteMatcher(ActivityType.TYPING.value), handler)

    def on_event(self, name: str | Handler | None = None) -> Any:
        if callable(name):
            return self._decorate(RouteMatcher(ActivityType.EVENT.value), name)
        return self._decorate(RouteMatcher(ActivityType.EVENT.value, name=name), None)

    def on_invoke(self, name: str | Handler | None = None) -> Any:
        if callable(name):
            return self._decorate(RouteMatcher(ActivityType.INVOKE.value), name)
        return self._decorate(RouteMatcher(ActivityType.INVOKE.value, name=name), None)

    def on_conversation_update(self, handler: Handler | None = None) -> Any:
        return self._decorate(RouteMatcher(ActivityType.CONVERSATION_UPDATE.value), handler)

    def on_end_of_conversation(self, handler: Handler | None = None) -> Any:
        return self._decorate(RouteMatcher(ActivityType.END_OF_CONVERSATION.value), handler)

    def _decorate(self, matcher: RouteMatcher, handler: Handler | None) -> Any:
        if handler is not None:
            self.router.register(matcher, handler)
            return handler
        return self.route(matcher)

    # Lifecycle

    async def start(self) -> None:
        """Acquire the bot identity and start plugins.

        Failures never propagate: they are logged, published as ``error`` and
        leave the app ``STOPPED`` so health checks can observe it.
        """

        if self._bot_token_provider is not None:
            try:
                self._bot_token = await self._bot_token_provider.get_bot_token()
            except Exception as error:
                logger.opt(exception=error).error("app.bot_token_failed")
                await self._stop_with(error)
                return

        try:
            await self._hooks.call_many_strict("on_init", app=self)
            await self._hooks.call_many_strict("on_start", app=self)
        except Exception as error:
            logger.opt(exception=error).error("app.start_failed")
            await self._stop_with(error)
            return

        self.status = AppStatus.STARTED
        logger.info("app.started id={} plugins={}", self.id, ",".join(self.plugins) or "-")
        await self.events.emit(self, EventType.START, StartEvent(app=self))

    async def _stop_with(self, error: Exception) -> None:
        self.status = AppStatus.STOPPED
        await self.events.emit(self, EventType.ERROR, ErrorEvent(error=error))

    # Sending

    async def send(
        self,
        conversation_id: str,
        activity: Outbound,
        *,
        conversation_type: str | None = None,
        service_url: str | None = None,
        is_targeted: bool = False,
    ) -> ActivityBase:
        """Send into a conversation outside of any inbound request."""

        if self.id is None:
            raise AppNotStartedError("app id is unknown; start the app or configure client_id")
        sender = await self._hooks.call_first("provide_sender")
        if not is_sender(sender):
            raise SenderNotFoundError("no plugin provides a sender")

        reference = ConversationReference(
            service_url=service_url or self.settings.service_url,
            conversation=Conversation(id=conversation_id, conversation_type=conversation_type),
            bot=Account(id=self.id, name=self.name, role="bot"),
        )
        sent = await sender.send(to_activity(activity), reference, is_targeted)
        await self.events.emit(sender, EventType.ACTIVITY_SENT, ActivitySentEvent(activity=sent))
        return sent

    async def emit_plugin_event(self, plugin: str, name: str, payload: Any = None) -> Any:
        """Publish ``"<plugin>.<name>"``; built-in names other than start are republished."""

        source = self.get_plugin(plugin)
        result = await self.events.emit(source, f"{plugin}.{name}", payload)
        builtin = EventType.parse(name)
        if builtin is not None and builtin is not EventType.START:
            forwarded = await self.events.emit(source, builtin, payload)
            if forwarded is not None:
                result = forwarded
        return result

    # Processing

    async def process(
        self,
        sender: Sender | str,
        token: InboundToken,
        activity: ActivityBase,
        extra: Extra | None = None,
    ) -> Response:
        """Run one inbound activity through observers and its matched handlers.

        Always returns a response: any failure becomes an ``error`` event and a
        500 response.
        """

        started = time.perf_counter()
        self.router.freeze()
        path_token = set_current_path(activity.path)
        context: Context | None = None
        stream: Stream | None = None
        chain: RouteChain | None = None
        try:
            resolved = self._resolve_sender(sender)
            chain = RouteChain(self.router.select(activity))
            user_token = await self._lookup_user_token(activity)
            reference = ConversationReference(
                service_url=activity.service_url or token.service_url or self.settings.service_url,
                channel_id=activity.channel_id or "msteams",
                bot=activity.recipient,
                user=activity.from_,
                conversation=activity.conversation,
                locale=activity.locale,
                activity_id=activity.id,
            )
            stream = self._create_stream(resolved, reference)

            async def activity_sent(sent: ActivityBase) -> None:
                await self.events.emit(resolved, EventType.ACTIVITY_SENT, ActivitySentEvent(activity=sent))

            context = Context(
                activity=activity,
                ref=reference,
                sender=resolved,
                stream=stream,
                chain=chain,
                app_id=token.app_id or self.id,
                tenant_id=token.tenant_id,
                storage=self.storage,
                extra=extra,
                user_token=user_token,
                connection_name=self.connection_name,
                tokens=self.tokens,
                conversations=self.conversations,
                on_activity_sent=activity_sent,
            )

            event = ActivityEvent(activity=activity, token=token, extra=context.extra)
            await self._hooks.call_many("on_activity", app=self, sender=resolved, event=event)
            await self.events.emit(resolved, EventType.ACTIVITY, event)

            result = await context.next()
            await stream.close()

            response = result if isinstance(result, Response) else Response(body=result)
            response.meta.routes = chain.invoked
            response.meta.elapse = _elapsed_ms(started)
            logger.info(
                "app.process path={} routes={} status={} elapse={}ms",
                activity.path,
                response.meta.routes,
                int(response.status),
                response.meta.elapse,
            )
            await self.events.emit(resolved, EventType.ACTIVITY_RESPONSE, ActivityResponseEvent(response=response))
            return response
        except Exception as error:
            logger.opt(exception=error).error("app.process_failed path={}", activity.path)
            if stream is not None:
                stream.cancel()
            await self.events.emit(self, EventType.ERROR, ErrorEvent(error=error, context=context))
            return Response(
                status=HTTPStatus.INTERNAL_SERVER_ERROR,
                meta=ResponseMeta(routes=chain.invoked if chain is not None else 0, elapse=_elapsed_ms(started)),
            )
        finally:
            reset_current_path(path_token)

    def _resolve_sender(self, sender: Sender | str) -> Sender:
        candidate = self.get_plugin(sender) if isinstance(sender, str) else sender
        if not is_sender(candidate):
            raise SenderNotFoundError(f"sender plugin '{sender}' cannot send activities")
        return candidate

    async def _lookup_user_token(self, activity: ActivityBase) -> str | None:
        if self.tokens is None or activity.from_ is None:
            return None
        try:
            response = await self.tokens.get_user_token(
                activity.from_.id,
                activity.channel_id or "msteams",
                self.connection_name,
            )
        except Exception as error:
            # signed out is a valid state
            logger.debug("app.user_token_unavailable user={} error={!r}", activity.from_.id, error)
            return None
        return response.token if response is not None else None

    def _create_stream(self, sender: Sender, reference: ConversationReference) -> Stream:
        settings = self.settings

        async def send(activity: ActivityBase) -> ActivityBase:
            return await sender.send(activity, reference)

        stream = Stream(
            send,
            debounce_seconds=settings.stream_debounce_seconds,
            batch_size=settings.stream_batch_size,
            retry_attempts=settings.send_retry_attempts,
            retry_delay_seconds=settings.send_retry_delay_seconds,
            retry_max_delay_seconds=settings.send_retry_max_delay_seconds,
            close_poll_seconds=settings.stream_close_poll_seconds,
        )

        async def chunk_sent(activity: ActivityBase) -> None:
            await self.events.emit(sender, EventType.ACTIVITY_SENT, ActivitySentEvent(activity=activity))

        async def flush_failed(error: Exception) -> None:
            await self.events.emit(sender, EventType.ERROR, ErrorEvent(error=error))

        stream.on_chunk(chunk_sent)
        stream.on_flush_error(flush_failed)
        return stream

    # Built-in sign-in completion

    async def _on_token_exchange(self, ctx: Context) -> Response:
        invoke = as_invoke(ctx.activity)
        value = invoke.value if invoke is not None and isinstance(invoke.value, dict) else {}
        connection_name = value.get("connectionName") or ctx.connection_name
        try:
            if ctx.tokens is None or ctx.activity.from_ is None:
                raise ValueError("token exchange needs a token client and a sender account")
            token = await ctx.tokens.exchange_token(
                ctx.activity.from_.id,
                ctx.ref.channel_id,
                connection_name,
                str(value.get("token", "")),
            )
        except Exception as error:
            ctx.log.warning("app.token_exchange_failed connection={} error={!r}", connection_name, error)
            return Response(
                status=HTTPStatus.PRECONDITION_FAILED,
                body={"id": value.get("id"), "connectionName": connection_name, "failureDetail": str(error)},
            )
        return await self._complete_sign_in(ctx, token)

    async def _on_verify_state(self, ctx: Context) -> Response:
        invoke = as_invoke(ctx.activity)
        value = invoke.value if invoke is not None and isinstance(invoke.value, dict) else {}
        try:
            if ctx.tokens is None or ctx.activity.from_ is None:
                raise ValueError("verify state needs a token client and a sender account")
            token = await ctx.tokens.get_user_token(
                ctx.activity.from_.id,
                ctx.ref.channel_id,
                ctx.connection_name,
                code=value.get("state"),
            )
        except Exception as error:
            ctx.log.warning("app.verify_state_failed error={!r}", error)
            return Response(status=HTTPStatus.PRECONDITION_FAILED)
        if token is None:
            ctx.log.warning("app.verify_state_failed error=token not found")
            return Response(status=HTTPStatus.PRECONDITION_FAILED)
        return await self._complete_sign_in(ctx, token)

    async def _complete_sign_in(self, ctx: Context, token: TokenResponse) -> Response:
        ctx.is_signed_in = True
        ctx.user_token = token.token
        await self.events.emit(ctx.sender, EventType.SIGN_IN, SignInEvent(context=ctx, token=token))
        return Response(status=HTTPStatus.OK)

    # Event bridges into plugin hooks

    async def _on_hook_failure(self, stage: str, error: Exception) -> None:
        await self.events.emit(self, EventType.ERROR, ErrorEvent(error=error))

    async def _on_error_event(self, source: Any, payload: ErrorEvent) -> None:
        await self._hooks.notify_error(error=payload.error, context=payload.context)

    async def _on_activity_sent_event(self, source: Any, payload: ActivitySentEvent) -> None:
        await self._hooks.call_many("on_activity_sent", sender=source, event=payload)

    async def _on_activity_response_event(self, source: Any, payload: ActivityResponseEvent) -> None:
        await self._hooks.call_many("on_activity_response", sender=source, event=payload)


class AppBuilder:
    """Fluent construction of an App from explicit parts."""

    def __init__(self) -> None:
        self._options = AppOptions()

    def with_settings(self, settings: Settings) -> AppBuilder:
        self._options.settings = settings
        return self

    def add_plugin(self, plugin: Any) -> AppBuilder:
        self._options.plugins.append(plugin)
        return self

    def with_token_client(self, tokens: TokenClient) -> AppBuilder:
        self._options.tokens = tokens
        return self

    def with_conversation_client(self, conversations: ConversationClient) -> AppBuilder:
        self._options.conversations = conversations
        return self

    def with_bot_token_provider(self, provider: BotTokenProvider) -> AppBuilder:
        self._options.bot_token_provider = provider
        return self

    def with_storage(self, storage: Storage) -> AppBuilder:
        self._options.storage = storage
        return self

    def with_connection_name(self, connection_name: str) -> AppBuilder:
        self._options.connection_name = connection_name
        return self

    def build(self) -> App:
        return App(self._options)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
