# src/waku_chat/schemas/__init__.py
"""
Pydantic schemas for identities, conversations and messages.

These schemas define the wire records exchanged between participants and the
local views derived from them.
"""

from .conversation import Conversation, ConversationKind
from .identity import Identity
from .message import (
    BroadcastRecord,
    DisplayMessage,
    LeaveMessage,
    Message,
    TextMessage,
    TombstoneMessage,
    message_adapter,
)

__all__ = [
    "Conversation", "ConversationKind",
    "Identity",
    "BroadcastRecord", "DisplayMessage",
    "LeaveMessage", "Message", "TextMessage", "TombstoneMessage",
    "message_adapter",
]
