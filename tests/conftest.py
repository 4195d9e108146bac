# tests/conftest.py
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from waku_chat.core.settings import Settings
from waku_chat.schemas.message import LeaveMessage, TextMessage, TombstoneMessage
from waku_chat.services.broadcast import Broadcast, LocalBroadcastChannel
from waku_chat.services.session import ChatSession
from waku_chat.services.transport import LoopbackNetwork, Transport


@pytest.fixture()
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    """Build settings whose identity lives under a per-user temp directory."""

    def factory(name: str = "alice", **overrides: Any) -> Settings:
        overrides.setdefault("transport_url", None)
        return Settings(identity_dir=tmp_path / name, **overrides)

    return factory


@pytest.fixture()
def network() -> LoopbackNetwork:
    return LoopbackNetwork()


@pytest.fixture()
def channel() -> LocalBroadcastChannel:
    return LocalBroadcastChannel()


@pytest.fixture()
def make_session(
    make_settings: Callable[..., Settings],
    network: LoopbackNetwork,
) -> Callable[..., ChatSession]:
    """Build an uninitialized session attached to the shared loopback network."""

    def factory(
        name: str = "alice",
        *,
        online: bool = True,
        transport: Transport | None = None,
        broadcast: Broadcast | None = None,
        **overrides: Any,
    ) -> ChatSession:
        if transport is None and online:
            transport = network.transport()
        return ChatSession(
            settings=make_settings(name, **overrides),
            transport=transport,
            broadcast=broadcast,
        )

    return factory


def text(
    message_id: str,
    timestamp: int = 1,
    *,
    conversation_id: str = "conv",
    sender: str = "0xalice",
    content: str = "hello",
) -> TextMessage:
    return TextMessage(
        id=message_id,
        conversation_id=conversation_id,
        sender=sender,
        content=content,
        timestamp=timestamp,
    )


def tombstone(
    message_id: str,
    target_id: str,
    timestamp: int = 2,
    *,
    conversation_id: str = "conv",
    sender: str = "0xalice",
) -> TombstoneMessage:
    return TombstoneMessage(
        id=message_id,
        conversation_id=conversation_id,
        sender=sender,
        tombstone_for=target_id,
        timestamp=timestamp,
    )


def leave(
    message_id: str,
    timestamp: int = 3,
    *,
    conversation_id: str = "conv",
    sender: str = "0xbob",
) -> LeaveMessage:
    return LeaveMessage(
        id=message_id,
        conversation_id=conversation_id,
        sender=sender,
        timestamp=timestamp,
    )
