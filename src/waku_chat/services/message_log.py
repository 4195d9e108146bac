# src/waku_chat/services/message_log.py
"""Bounded, deduplicated per-conversation message history and its display projection."""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Final

from waku_chat.schemas.message import (
    DisplayMessage,
    LeaveMessage,
    Message,
    TextMessage,
    TombstoneMessage,
)

DEFAULT_RETENTION: Final[int] = 100

# Configure logger for this module
logger = logging.getLogger(__name__)


class DedupIndex:
    """Set of message ids already applied to the local log.

    Unbounded unless ``capacity`` is given, in which case the least recently
    seen ids are evicted first.
    """

    def __init__(self, capacity: int | None = None) -> None:
        if capacity is not None and capacity <= 0:
            raise ValueError("Dedup index capacity must be positive")
        self._capacity = capacity
        self._ids: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, message_id: str) -> bool:
        """Record an id; return False if it was already present."""
        if message_id in self._ids:
            self._ids.move_to_end(message_id)
            return False
        self._ids[message_id] = None
        if self._capacity is not None:
            while len(self._ids) > self._capacity:
                self._ids.popitem(last=False)
        return True


class MessageLog:
    """Insertion-ordered message storage keyed by conversation id."""

    def __init__(
        self,
        retention: int = DEFAULT_RETENTION,
        dedup_index: DedupIndex | None = None,
    ) -> None:
        if retention <= 0:
            raise ValueError("Message retention must be positive")
        self.retention = retention
        self.dedup_index = dedup_index if dedup_index is not None else DedupIndex()
        self._store: dict[str, list[Message]] = {}

    def store(self, message: Message) -> bool:
        """Append a message unless its id was already applied.

        Returns:
            True if the message was stored, False for a duplicate delivery
        """
        if not self.dedup_index.add(message.id):
            return False

        messages = self._store.setdefault(message.conversation_id, [])
        messages.append(message)
        if len(messages) > self.retention:
            del messages[: len(messages) - self.retention]
            logger.debug(
                "Trimmed conversation %s to %d messages",
                message.conversation_id,
                len(messages),
            )
        return True

    def messages(self, conversation_id: str) -> list[Message]:
        return list(self._store.get(conversation_id, ()))

    def find(self, conversation_id: str, message_id: str) -> Message | None:
        for message in self._store.get(conversation_id, ()):
            if message.id == message_id:
                return message
        return None

    def delete(self, conversation_id: str, message_id: str) -> bool:
        """Remove one message locally; unknown ids are a silent no-op.

        The id stays in the dedup index, so a redelivery is not stored again.
        """
        messages = self._store.get(conversation_id)
        if not messages:
            return False
        kept = [message for message in messages if message.id != message_id]
        if len(kept) == len(messages):
            return False
        self._store[conversation_id] = kept
        return True

    def drop(self, conversation_id: str) -> None:
        self._store.pop(conversation_id, None)

    def project(self, conversation_id: str) -> list[DisplayMessage]:
        """Build the effective view of a conversation.

        Every non-tombstone record is kept; records named by a tombstone are
        flagged ``revoked`` and their content is suppressed. Tombstones are
        hidden unless a tombstone itself is revoked. Leave records become
        system notices. The view is ordered by timestamp, ties by arrival.
        """
        records = self._store.get(conversation_id, [])
        revoked_ids = {
            record.tombstone_for for record in records if isinstance(record, TombstoneMessage)
        }

        view: list[DisplayMessage] = []
        for record in records:
            revoked = record.id in revoked_ids
            if isinstance(record, TombstoneMessage):
                if not revoked:
                    continue
                view.append(_display(record, content="", revoked=True))
            elif isinstance(record, LeaveMessage):
                view.append(_display(record, content="", system_notice=True))
            elif isinstance(record, TextMessage):
                view.append(_display(record, content="" if revoked else record.content, revoked=revoked))
            else:  # pragma: no cover - closed union
                raise TypeError(f"Unknown message kind: {type(record).__name__}")

        view.sort(key=lambda item: item.timestamp)
        return view


def _display(
    record: Message,
    *,
    content: str,
    revoked: bool = False,
    system_notice: bool = False,
) -> DisplayMessage:
    return DisplayMessage(
        id=record.id,
        conversation_id=record.conversation_id,
        sender=record.sender,
        timestamp=record.timestamp,
        kind=record.kind,
        content=content,
        revoked=revoked,
        system_notice=system_notice,
        tombstone_for=getattr(record, "tombstone_for", None),
    )
