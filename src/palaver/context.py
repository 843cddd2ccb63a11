"""Per-request context handed to route handlers."""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

from loguru import logger

from palaver.activities import (
    Account,
    ActivityBase,
    Conversation,
    ConversationReference,
    InputHint,
    MessageActivity,
    TypingActivity,
)
from palaver.auth import OAuthOptions, SSOOptions, TokenExchangeState
from palaver.cards import CardAction, OAuthCard, TokenExchangeResource, adaptive_card, oauth_card
from palaver.errors import ConfigurationError, SignInError
from palaver.protocols import ConversationClient, Sender, TokenClient
from palaver.storage import MemoryStorage, Storage
from palaver.types import Extra

if TYPE_CHECKING:
    from palaver.router import RouteChain
    from palaver.stream import Stream

type Outbound = ActivityBase | str | Mapping[str, Any]
type SentCallback = Callable[[ActivityBase], Awaitable[None]]


class Context:
    """Everything a handler needs to act on one inbound activity.

    A context is created by ``App.process`` for a single activity and dropped
    once the response is returned. ``send``/``reply``/``typing`` go straight to
    the sender; incremental output goes through ``stream``.
    """

    def __init__(
        self,
        *,
        activity: ActivityBase,
        ref: ConversationReference,
        sender: Sender,
        stream: Stream,
        chain: RouteChain,
        app_id: str | None = None,
        tenant_id: str | None = None,
        storage: Storage | None = None,
        extra: Extra | None = None,
        user_token: str | None = None,
        connection_name: str = "graph",
        tokens: TokenClient | None = None,
        conversations: ConversationClient | None = None,
        on_activity_sent: SentCallback | None = None,
    ) -> None:
        self.activity = activity
        self.ref = ref
        self.sender = sender
        self.stream = stream
        self.app_id = app_id
        self.tenant_id = tenant_id
        self.storage: Storage = storage if storage is not None else MemoryStorage()
        self.extra: Extra = extra if extra is not None else {}
        self.user_token = user_token
        self.is_signed_in = user_token is not None
        self.connection_name = connection_name
        self.tokens = tokens
        self.conversations = conversations
        self.log = logger.bind(path=activity.path)
        self._chain = chain
        self._on_activity_sent = on_activity_sent

    async def send(self, activity: Outbound, *, is_targeted: bool = False) -> ActivityBase:
        """Send into the inbound conversation and return the channel's copy."""

        return await self._deliver(to_activity(activity), self.ref, is_targeted=is_targeted)

    async def reply(self, activity: Outbound, *, is_targeted: bool = False) -> ActivityBase:
        """Send as a threaded reply to the inbound activity, quoting it for messages."""

        outbound = to_activity(activity)
        reference = self.ref.copy_reference()
        reference.conversation.id = reference.conversation.thread_id
        outbound.reply_to_id = self.activity.id
        if isinstance(outbound, MessageActivity):
            text = outbound.text
            outbound.text = "\n".join([self.activity.to_quote_reply(), f"<p>{text}</p>" if text else ""])
        return await self._deliver(outbound, reference, is_targeted=is_targeted)

    async def typing(self, text: str | None = None) -> ActivityBase:
        return await self.send(TypingActivity(text=text))

    async def next(self) -> Any:
        """Run the next matched handler and return the chain's running result."""

        return await self._chain.next(self)

    async def sign_in(self, options: OAuthOptions | None = None) -> str | None:
        """Return the user's token, or send an OAuth card and return ``None``.

        A silent lookup runs first. When it finds nothing the user is
        challenged; group conversations cannot host the card, so a 1:1
        conversation is created for it first.
        """

        options = options or OAuthOptions()
        connection_name = options.connection_name or self.connection_name
        tokens = self._require_tokens()
        user = self._require_user()

        try:
            response = await tokens.get_user_token(user.id, self.ref.channel_id, connection_name)
        except Exception:
            logger.opt(exception=True).debug("context.silent_token_failed connection={}", connection_name)
            response = None
        if response is not None:
            self.is_signed_in = True
            self.user_token = response.token
            return response.token

        reference = await self._sign_in_reference(options.oauth_card_text)
        state = TokenExchangeState(
            connection_name=connection_name,
            conversation=reference,
            relates_to=self.activity.relates_to,
            ms_app_id=self.app_id,
        )
        resource = await tokens.get_sign_in_resource(state.encode())
        card = OAuthCard(
            text=options.oauth_card_text,
            connection_name=connection_name,
            token_exchange_resource=resource.token_exchange_resource,
            token_post_resource=resource.token_post_resource,
            buttons=[CardAction(type="signin", title=options.sign_in_button_text, value=resource.sign_in_link)],
        )
        await self._deliver(self._oauth_activity(card, reference), reference)
        self.log.info("context.sign_in_challenge connection={}", connection_name)
        return None

    async def sign_in_sso(self, options: SSOOptions) -> None:
        """Send an SSO sign-in card whose button opens the configured link."""

        self._require_user()
        link = (
            f"{options.sign_in_link}?scope={quote(' '.join(options.scopes))}"
            f"&clientId={self.app_id or ''}&tenantId={self.tenant_id or ''}"
        )
        reference = await self._sign_in_reference(options.oauth_card_text)
        card = OAuthCard(
            text=options.oauth_card_text,
            token_exchange_resource=TokenExchangeResource(id=str(uuid.uuid4())),
            buttons=[CardAction(type="signin", title=options.sign_in_button_text, value=link)],
        )
        await self._deliver(self._oauth_activity(card, reference), reference)

    async def sign_out(self, connection_name: str | None = None) -> None:
        tokens = self._require_tokens()
        user = self._require_user()
        await tokens.sign_out(user.id, self.ref.channel_id, connection_name or self.connection_name)
        self.is_signed_in = False
        self.user_token = None

    async def _deliver(
        self,
        activity: ActivityBase,
        reference: ConversationReference,
        *,
        is_targeted: bool = False,
    ) -> ActivityBase:
        sent = await self.sender.send(activity, reference, is_targeted)
        if self._on_activity_sent is not None:
            await self._on_activity_sent(sent)
        return sent

    async def _sign_in_reference(self, notice: str) -> ConversationReference:
        reference = self.ref.copy_reference()
        if not self.ref.conversation.is_group:
            return reference
        if self.conversations is None:
            raise ConfigurationError("a conversation client is required to sign in from a group conversation")

        user = self._require_user()
        tenant_id = self.ref.conversation.tenant_id or self.tenant_id
        conversation_id = await self.conversations.create(
            tenant_id=tenant_id,
            bot=self.ref.bot,
            members=[user],
            is_group=False,
        )
        reference.conversation = Conversation(id=conversation_id, is_group=False, tenant_id=tenant_id)
        await self._deliver(MessageActivity(text=notice), reference)
        return reference

    def _oauth_activity(self, card: OAuthCard, reference: ConversationReference) -> MessageActivity:
        activity = MessageActivity(
            input_hint=InputHint.ACCEPTING_INPUT,
            recipient=self.activity.from_,
            conversation=reference.conversation,
        )
        return activity.add_attachment(oauth_card(card))

    def _require_tokens(self) -> TokenClient:
        if self.tokens is None:
            raise ConfigurationError("a token client is required for sign-in")
        return self.tokens

    def _require_user(self) -> Account:
        if self.activity.from_ is None:
            raise SignInError("activity has no sender account")
        return self.activity.from_


def to_activity(outbound: Outbound) -> ActivityBase:
    """Coerce text or an adaptive card payload into a message activity."""
    if isinstance(outbound, ActivityBase):
        return outbound
    if isinstance(outbound, str):
        return MessageActivity(text=outbound)
    return MessageActivity().add_attachment(adaptive_card(outbound))
