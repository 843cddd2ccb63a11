"""Activity models exchanged with the channel.

Activities are pydantic models using camelCase aliases on the wire. The set of
activity kinds is closed: ``Activity`` is a union discriminated on ``type`` and
``parse_activity`` validates a wire payload into it. Narrowing to a concrete
kind goes through the ``as_*`` helpers, which return ``None`` on mismatch.
"""

from __future__ import annotations

import html
import re
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny, TypeAdapter
from pydantic.alias_generators import to_camel

THREAD_MESSAGE_ID_RE = re.compile(r";messageid=\d+$")
QUOTE_PREVIEW_LIMIT = 120


class ActivityType(str, Enum):
    MESSAGE = "message"
    TYPING = "typing"
    EVENT = "event"
    INVOKE = "invoke"
    END_OF_CONVERSATION = "endOfConversation"
    CONVERSATION_UPDATE = "conversationUpdate"


class StreamType(str, Enum):
    INFORMATIVE = "informative"
    STREAMING = "streaming"
    FINAL = "final"


class InputHint(str, Enum):
    ACCEPTING_INPUT = "acceptingInput"
    IGNORING_INPUT = "ignoringInput"
    EXPECTING_INPUT = "expectingInput"


class WireModel(BaseModel):
    """Base for every wire model: camelCase aliases, unknown keys preserved."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class Account(WireModel):
    id: str
    name: str | None = None
    aad_object_id: str | None = None
    role: str | None = None


class Conversation(WireModel):
    id: str
    conversation_type: str | None = None
    is_group: bool | None = None
    tenant_id: str | None = None
    name: str | None = None

    @property
    def thread_id(self) -> str:
        """Conversation id without the ``;messageid=`` reply suffix."""
        return THREAD_MESSAGE_ID_RE.sub("", self.id)


class ConversationReference(WireModel):
    channel_id: str = "msteams"
    service_url: str
    conversation: Conversation
    bot: Account | None = None
    user: Account | None = None
    locale: str | None = None
    activity_id: str | None = None

    def copy_reference(self) -> ConversationReference:
        return self.model_copy(deep=True)


class ChannelData(WireModel):
    stream_type: StreamType | None = None
    stream_id: str | None = None
    stream_sequence: int | None = None
    tenant: dict[str, Any] | None = None

    def merge(self, other: ChannelData) -> ChannelData:
        """Return a new value where every field set on ``other`` wins."""
        merged = self.model_dump(by_alias=True, exclude_none=True)
        merged.update(other.model_dump(by_alias=True, exclude_none=True))
        return ChannelData.model_validate(merged)


class Entity(WireModel):
    type: str


class StreamInfoEntity(Entity):
    type: str = "streaminfo"
    stream_id: str | None = None
    stream_type: StreamType = StreamType.STREAMING
    stream_sequence: int | None = None


class Attachment(WireModel):
    content_type: str
    content: Any = None
    content_url: str | None = None
    name: str | None = None


class ActivityBase(WireModel):
    type: str
    id: str | None = None
    channel_id: str | None = None
    service_url: str | None = None
    from_: Account | None = Field(default=None, alias="from")
    recipient: Account | None = None
    conversation: Conversation | None = None
    reply_to_id: str | None = None
    locale: str | None = None
    input_hint: InputHint | None = None
    channel_data: ChannelData | None = None
    entities: list[SerializeAsAny[Entity]] = Field(default_factory=list)
    relates_to: ConversationReference | None = None

    @property
    def path(self) -> str:
        """Routing path, e.g. ``message`` or ``invoke/signin/tokenExchange``."""
        name = getattr(self, "name", None)
        return f"{self.type}/{name}" if name else self.type

    def with_id(self, activity_id: str | None) -> ActivityBase:
        self.id = activity_id
        return self

    def add_entity(self, *entities: Entity) -> ActivityBase:
        self.entities.extend(entities)
        return self

    def with_channel_data(self, channel_data: ChannelData) -> ActivityBase:
        self.channel_data = channel_data if self.channel_data is None else self.channel_data.merge(channel_data)
        return self

    def stream_info(self) -> StreamInfoEntity | None:
        for entity in self.entities:
            if isinstance(entity, StreamInfoEntity):
                return entity
        return None

    def add_stream_update(self, sequence: int, stream_id: str | None = None) -> ActivityBase:
        stream_type = StreamType.STREAMING
        if self.channel_data is not None and self.channel_data.stream_type == StreamType.INFORMATIVE:
            stream_type = StreamType.INFORMATIVE
        self.with_channel_data(ChannelData(stream_type=stream_type, stream_id=stream_id, stream_sequence=sequence))
        return self.add_entity(StreamInfoEntity(stream_id=stream_id, stream_type=stream_type, stream_sequence=sequence))

    def add_stream_final(self, stream_id: str | None = None) -> ActivityBase:
        self.with_channel_data(ChannelData(stream_type=StreamType.FINAL, stream_id=stream_id))
        return self.add_entity(StreamInfoEntity(stream_id=stream_id, stream_type=StreamType.FINAL))

    def to_quote_reply(self) -> str:
        """Render the quoted excerpt of this activity used when replying to it."""
        author = self.from_
        text = html.escape(str(getattr(self, "text", "") or ""))
        if len(text) > QUOTE_PREVIEW_LIMIT:
            text = text[:QUOTE_PREVIEW_LIMIT] + "..."
        return (
            f'<blockquote itemscope="" itemtype="http://schema.skype.com/Reply" itemid="{self.id or ""}">'
            f'<strong itemprop="mri" itemid="{author.id if author else ""}">'
            f"{html.escape(author.name or '') if author else ''}</strong>"
            f'<span itemprop="time" itemid="{self.id or ""}"></span>'
            f'<p itemprop="preview">{text}</p>'
            "</blockquote>"
        )


class MessageActivity(ActivityBase):
    type: Literal["message"] = "message"
    text: str = ""
    text_format: str | None = None
    attachments: list[Attachment] = Field(default_factory=list)

    def add_attachment(self, *attachments: Attachment) -> MessageActivity:
        self.attachments.extend(attachments)
        return self


class TypingActivity(ActivityBase):
    type: Literal["typing"] = "typing"
    text: str | None = None


class EventActivity(ActivityBase):
    type: Literal["event"] = "event"
    name: str | None = None
    value: Any = None


class InvokeActivity(ActivityBase):
    type: Literal["invoke"] = "invoke"
    name: str | None = None
    value: Any = None


class EndOfConversationActivity(ActivityBase):
    type: Literal["endOfConversation"] = "endOfConversation"
    code: str | None = None
    text: str | None = None


class ConversationUpdateActivity(ActivityBase):
    type: Literal["conversationUpdate"] = "conversationUpdate"
    members_added: list[Account] = Field(default_factory=list)
    members_removed: list[Account] = Field(default_factory=list)


Activity = Annotated[
    Union[
        MessageActivity,
        TypingActivity,
        EventActivity,
        InvokeActivity,
        EndOfConversationActivity,
        ConversationUpdateActivity,
    ],
    Field(discriminator="type"),
]

_ACTIVITY_ADAPTER: TypeAdapter[Activity] = TypeAdapter(Activity)


def parse_activity(data: dict[str, Any]) -> Activity:
    """Validate a wire payload into one concrete activity kind."""

    return _ACTIVITY_ADAPTER.validate_python(data)


def as_message(activity: ActivityBase) -> MessageActivity | None:
    match activity:
        case MessageActivity():
            return activity
    return None


def as_typing(activity: ActivityBase) -> TypingActivity | None:
    match activity:
        case TypingActivity():
            return activity
    return None


def as_invoke(activity: ActivityBase) -> InvokeActivity | None:
    match activity:
        case InvokeActivity():
            return activity
    return None


def as_event(activity: ActivityBase) -> EventActivity | None:
    match activity:
        case EventActivity():
            return activity
    return None


def is_informative(activity: ActivityBase) -> bool:
    """True for typing fragments carrying progress text rather than content."""

    match activity:
        case TypingActivity(channel_data=ChannelData(stream_type=StreamType.INFORMATIVE)):
            return True
    return False
