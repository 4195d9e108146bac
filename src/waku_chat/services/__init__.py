# src/waku_chat/services/__init__.py
"""Chat protocol services: session facade, local state and collaborators."""

from .broadcast import Broadcast, BroadcastEndpoint, LocalBroadcastChannel
from .codec import MessageCodec
from .identity_store import IdentityStore
from .message_log import DedupIndex, MessageLog
from .registry import ConversationRegistry
from .session import ChatSession
from .subscriptions import SubscriptionHub
from .transport import (
    LoopbackNetwork,
    LoopbackTransport,
    Transport,
    WakuRestConfig,
    WakuRestTransport,
    content_topic,
)

__all__ = [
    "ChatSession",
    "ConversationRegistry",
    "MessageCodec",
    "MessageLog",
    "DedupIndex",
    "SubscriptionHub",
    "IdentityStore",
    "Broadcast",
    "BroadcastEndpoint",
    "LocalBroadcastChannel",
    "Transport",
    "LoopbackNetwork",
    "LoopbackTransport",
    "WakuRestConfig",
    "WakuRestTransport",
    "content_topic",
]
