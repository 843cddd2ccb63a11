"""Sign-in and token value types."""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field

from palaver.activities import ConversationReference, WireModel
from palaver.cards import TokenExchangeResource, TokenPostResource


@dataclass(frozen=True)
class InboundToken:
    """Claims of the validated token that accompanied an inbound request."""

    app_id: str | None = None
    tenant_id: str | None = None
    service_url: str | None = None


@dataclass(frozen=True)
class BotToken:
    """Bot identity acquired at startup."""

    app_id: str
    app_display_name: str | None = None
    access_token: str | None = None


class TokenResponse(WireModel):
    connection_name: str | None = None
    token: str
    expiration: str | None = None
    channel_id: str | None = None


class SignInResource(WireModel):
    sign_in_link: str
    token_exchange_resource: TokenExchangeResource | None = None
    token_post_resource: TokenPostResource | None = None


class TokenExchangeState(WireModel):
    """Opaque state round-tripped through the sign-in card."""

    connection_name: str
    conversation: ConversationReference
    relates_to: ConversationReference | None = None
    ms_app_id: str | None = None

    def encode(self) -> str:
        payload = json.dumps(self.to_wire(), separators=(",", ":")).encode("utf-8")
        return base64.b64encode(payload).decode("ascii")

    @classmethod
    def decode(cls, state: str) -> TokenExchangeState:
        return cls.model_validate_json(base64.b64decode(state))


@dataclass
class SignInOptions:
    oauth_card_text: str = "Please Sign In..."
    sign_in_button_text: str = "Sign In"


@dataclass
class OAuthOptions(SignInOptions):
    # falls back to the app's default connection name
    connection_name: str | None = None


@dataclass
class SSOOptions(SignInOptions):
    scopes: list[str] = field(default_factory=list)
    sign_in_link: str = ""
