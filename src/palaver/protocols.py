"""Contracts for the external collaborators the core depends on."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from palaver.activities import Account, ActivityBase, ConversationReference
from palaver.auth import BotToken, SignInResource, TokenResponse


@runtime_checkable
class Sender(Protocol):
    """Delivers one activity to a conversation and returns the channel's copy."""

    async def send(
        self,
        activity: ActivityBase,
        reference: ConversationReference,
        is_targeted: bool = False,
    ) -> ActivityBase: ...


class TokenClient(Protocol):
    """User token operations against the channel's token service."""

    async def get_user_token(
        self,
        user_id: str,
        channel_id: str,
        connection_name: str,
        code: str | None = None,
    ) -> TokenResponse | None: ...

    async def sign_out(self, user_id: str, channel_id: str, connection_name: str) -> None: ...

    async def get_sign_in_resource(self, state: str) -> SignInResource: ...

    async def exchange_token(
        self,
        user_id: str,
        channel_id: str,
        connection_name: str,
        token: str,
    ) -> TokenResponse: ...


class ConversationClient(Protocol):
    async def create(
        self,
        *,
        tenant_id: str | None,
        bot: Account | None,
        members: list[Account],
        is_group: bool = False,
    ) -> str: ...


class BotTokenProvider(Protocol):
    async def get_bot_token(self) -> BotToken: ...


def is_sender(candidate: object) -> bool:
    return candidate is not None and callable(getattr(candidate, "send", None))
