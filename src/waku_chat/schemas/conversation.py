# src/waku_chat/schemas/conversation.py
"""Conversation schemas."""

from enum import Enum

from pydantic import BaseModel, Field


class ConversationKind(str, Enum):
    """Two-party or multi-party conversation."""

    DIRECT = "direct"
    GROUP = "group"


class Conversation(BaseModel):
    """A logical chat channel known to this session.

    For group conversations ``participants`` only lists identifiers this
    process has observed; it is not authoritative membership.
    """

    id: str
    kind: ConversationKind
    participants: list[str] = Field(default_factory=list)
    name: str | None = None

    @property
    def is_direct(self) -> bool:
        return self.kind is ConversationKind.DIRECT
