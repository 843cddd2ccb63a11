from __future__ import annotations

import itertools
from collections.abc import Callable
from typing import Any

import pytest

from palaver.activities import (
    Account,
    ActivityBase,
    Conversation,
    ConversationReference,
    InvokeActivity,
    MessageActivity,
)
from palaver.auth import SignInResource, TokenResponse
from palaver.cards import TokenExchangeResource
from palaver.config import Settings
from palaver.stream import Stream

SIGN_IN_LINK = "https://login.example/signin"


class FakeSender:
    """Records sends and assigns channel ids; can fail the first N calls."""

    name = "fake"

    def __init__(self, *, failures: int = 0) -> None:
        self.failures = failures
        self.calls = 0
        self.sent: list[tuple[ActivityBase, ConversationReference, bool]] = []
        self._ids = itertools.count(1)

    async def send(
        self,
        activity: ActivityBase,
        reference: ConversationReference,
        is_targeted: bool = False,
    ) -> ActivityBase:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("channel unavailable")
        sent = activity.model_copy(deep=True)
        if sent.id is None:
            sent.id = f"sent-{next(self._ids)}"
        self.sent.append((sent, reference, is_targeted))
        return sent

    @property
    def activities(self) -> list[ActivityBase]:
        return [activity for activity, _reference, _targeted in self.sent]


class FakeTokenClient:
    def __init__(self, token: str | None = None, *, fail: bool = False, exchange_error: Exception | None = None) -> None:
        self.token = token
        self.fail = fail
        self.exchange_error = exchange_error
        self.calls: list[tuple[Any, ...]] = []

    async def get_user_token(
        self,
        user_id: str,
        channel_id: str,
        connection_name: str,
        code: str | None = None,
    ) -> TokenResponse | None:
        self.calls.append(("get_user_token", user_id, channel_id, connection_name, code))
        if self.fail:
            raise LookupError("token service unavailable")
        if self.token is None:
            return None
        return TokenResponse(connection_name=connection_name, token=self.token)

    async def sign_out(self, user_id: str, channel_id: str, connection_name: str) -> None:
        self.calls.append(("sign_out", user_id, channel_id, connection_name))

    async def get_sign_in_resource(self, state: str) -> SignInResource:
        self.calls.append(("get_sign_in_resource", state))
        return SignInResource(
            sign_in_link=SIGN_IN_LINK,
            token_exchange_resource=TokenExchangeResource(id="exchange-1"),
        )

    async def exchange_token(self, user_id: str, channel_id: str, connection_name: str, token: str) -> TokenResponse:
        self.calls.append(("exchange_token", user_id, channel_id, connection_name, token))
        if self.exchange_error is not None:
            raise self.exchange_error
        return TokenResponse(connection_name=connection_name, token=f"exchanged-{token}")


class FakeConversationClient:
    """Creates 1:1 conversations and remembers how many sends preceded each one."""

    def __init__(self, sender: FakeSender | None = None) -> None:
        self.sender = sender
        self.created: list[dict[str, Any]] = []

    async def create(
        self,
        *,
        tenant_id: str | None,
        bot: Account | None,
        members: list[Account],
        is_group: bool = False,
    ) -> str:
        sends_before = len(self.sender.sent) if self.sender is not None else 0
        self.created.append(
            {"tenant_id": tenant_id, "bot": bot, "members": members, "is_group": is_group, "sends_before": sends_before}
        )
        return "personal-1"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        client_id=None,
        client_secret=None,
        stream_debounce_seconds=0.05,
        stream_close_poll_seconds=0.01,
        send_retry_attempts=3,
        send_retry_delay_seconds=0.0,
        send_retry_max_delay_seconds=0.0,
    )


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def reference() -> ConversationReference:
    return ConversationReference(
        service_url="https://service.example/",
        conversation=Conversation(id="conv-1", tenant_id="tenant-1"),
        bot=Account(id="bot-1", name="Bot"),
        user=Account(id="user-1", name="Ada"),
    )


@pytest.fixture
def make_message() -> Callable[..., MessageActivity]:
    def factory(
        text: str = "hello",
        *,
        activity_id: str = "act-1",
        conversation_id: str = "conv-1",
        is_group: bool = False,
    ) -> MessageActivity:
        return MessageActivity(
            id=activity_id,
            text=text,
            channel_id="msteams",
            service_url="https://service.example/",
            from_=Account(id="user-1", name="Ada"),
            recipient=Account(id="bot-1", name="Bot"),
            conversation=Conversation(id=conversation_id, is_group=is_group, tenant_id="tenant-1"),
        )

    return factory


@pytest.fixture
def make_invoke() -> Callable[..., InvokeActivity]:
    def factory(name: str, value: Any = None) -> InvokeActivity:
        return InvokeActivity(
            id="invoke-1",
            name=name,
            value=value,
            channel_id="msteams",
            service_url="https://service.example/",
            from_=Account(id="user-1", name="Ada"),
            recipient=Account(id="bot-1", name="Bot"),
            conversation=Conversation(id="conv-1", tenant_id="tenant-1"),
        )

    return factory


@pytest.fixture
def make_stream(reference: ConversationReference) -> Callable[..., Stream]:
    def factory(sender: FakeSender, **overrides: Any) -> Stream:
        async def send(activity: ActivityBase) -> ActivityBase:
            return await sender.send(activity, reference)

        options: dict[str, Any] = {
            "debounce_seconds": 0.05,
            "batch_size": 10,
            "retry_attempts": 3,
            "retry_delay_seconds": 0.0,
            "retry_max_delay_seconds": 0.0,
            "close_poll_seconds": 0.01,
        }
        options.update(overrides)
        return Stream(send, **options)

    return factory
