# src/waku_chat/schemas/message.py
"""Message schemas: the wire records, their display projection and broadcast envelope.

Messages form a closed tagged union on ``kind`` (serialized as ``type``):

- ``text``: carries ``content``.
- ``tombstone``: revokes the message named by ``tombstone_for``.
- ``user-leave``: the sender left the conversation.

Wire field names are camelCase so records stay readable by the browser SDK.
"""

import base64
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_serializer, field_validator
from pydantic.alias_generators import to_camel

TEXT = "text"
TOMBSTONE = "tombstone"
LEAVE = "user-leave"

NEW_MESSAGE_EVENT = "new-message"


class _MessageBase(BaseModel):
    """Fields shared by every message kind."""

    id: str
    conversation_id: str
    sender: str
    timestamp: int = Field(..., description="Logical send time in milliseconds since the epoch")
    signature: str | None = None
    mac: str | None = None
    payload: bytes | None = Field(None, description="Encrypted serialized form, once encrypted")

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @field_validator("payload", mode="before")
    @classmethod
    def decode_payload(cls, value: Any) -> Any:
        """Accept base64 text for the payload (JSON transports)."""
        if isinstance(value, str):
            return base64.b64decode(value)
        return value

    @field_serializer("payload", when_used="json")
    def serialize_payload(self, value: bytes | None) -> str | None:
        """Encode the binary payload as base64."""
        if value is None:
            return None
        return base64.b64encode(value).decode()

    def wire_fields(self) -> dict[str, Any]:
        """Return the wire representation without the encrypted payload."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            exclude={"payload"},
        )


class TextMessage(_MessageBase):
    """A regular chat message."""

    kind: Literal["text"] = Field(TEXT, alias="type")
    content: str


class TombstoneMessage(_MessageBase):
    """A record marking another message as revoked."""

    kind: Literal["tombstone"] = Field(TOMBSTONE, alias="type")
    tombstone_for: str
    content: Literal[""] = ""


class LeaveMessage(_MessageBase):
    """Signals that the sender left the conversation."""

    kind: Literal["user-leave"] = Field(LEAVE, alias="type")
    content: Literal[""] = ""


Message = Annotated[
    TextMessage | TombstoneMessage | LeaveMessage,
    Field(discriminator="kind"),
]

message_adapter: TypeAdapter[Message] = TypeAdapter(Message)


class DisplayMessage(BaseModel):
    """Display-ready view of one log record after revocation is applied."""

    id: str
    conversation_id: str
    sender: str
    timestamp: int
    kind: str
    content: str
    revoked: bool = False
    system_notice: bool = False
    tombstone_for: str | None = None

    model_config = ConfigDict(frozen=True)


class BroadcastRecord(BaseModel):
    """Record carried by the same-device broadcast channel."""

    event: Literal["new-message"] = NEW_MESSAGE_EVENT
    message: Message
    timestamp: int

    model_config = ConfigDict(frozen=True)

    def to_json(self) -> str:
        """Serialize with wire field names and a base64 payload."""
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "BroadcastRecord":
        return cls.model_validate_json(raw)
