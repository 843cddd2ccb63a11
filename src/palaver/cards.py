"""Card attachment builders."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import Field

from palaver.activities import Attachment, WireModel

ADAPTIVE_CARD_CONTENT_TYPE = "application/vnd.microsoft.card.adaptive"
OAUTH_CARD_CONTENT_TYPE = "application/vnd.microsoft.card.oauth"

type Card = Mapping[str, Any]


class CardAction(WireModel):
    type: str
    title: str | None = None
    value: Any = None


class TokenExchangeResource(WireModel):
    id: str | None = None
    uri: str | None = None
    provider_id: str | None = None


class TokenPostResource(WireModel):
    sas_url: str | None = None


class OAuthCard(WireModel):
    text: str | None = None
    connection_name: str | None = None
    token_exchange_resource: TokenExchangeResource | None = None
    token_post_resource: TokenPostResource | None = None
    buttons: list[CardAction] = Field(default_factory=list)


def adaptive_card(card: Card) -> Attachment:
    return Attachment(content_type=ADAPTIVE_CARD_CONTENT_TYPE, content=dict(card))


def oauth_card(card: OAuthCard) -> Attachment:
    return Attachment(content_type=OAUTH_CARD_CONTENT_TYPE, content=card.to_wire())
