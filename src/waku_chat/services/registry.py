# src/waku_chat/services/registry.py
"""Conversation creation, lookup and teardown for one local identity."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence

from waku_chat.core.errors import InvalidArgumentError
from waku_chat.schemas.conversation import Conversation, ConversationKind
from waku_chat.services.codec import SEPARATOR, MessageCodec
from waku_chat.services.message_log import MessageLog
from waku_chat.services.subscriptions import SubscriptionHub

# Configure logger for this module
logger = logging.getLogger(__name__)


class ConversationRegistry:
    """Owns the conversations of one session and their cached keys.

    Creation is idempotent by id. ``remove`` also drops the conversation's
    message log, subscriber list and topic subscription marker.
    """

    def __init__(
        self,
        self_id: str,
        message_log: MessageLog,
        hub: SubscriptionHub,
    ) -> None:
        self.self_id = self_id
        self._message_log = message_log
        self._hub = hub
        self._conversations: dict[str, Conversation] = {}
        self._keys: dict[str, str] = {}
        self._subscribed: set[str] = set()

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._conversations

    def __len__(self) -> int:
        return len(self._conversations)

    @staticmethod
    def direct_id(first: str, second: str) -> str:
        """Return the initiator-independent id of a two-party conversation."""
        return SEPARATOR.join(sorted((first, second)))

    def create(
        self,
        participant_ids: Sequence[str],
        kind: ConversationKind | str,
        name: str | None = None,
        explicit_id: str | None = None,
    ) -> Conversation:
        """Create a conversation, or return the existing one with the same id.

        Args:
            participant_ids: For direct conversations, exactly the other
                participant's public id; ignored for groups
            kind: ``direct`` or ``group``
            name: Optional local display name
            explicit_id: Group id to join; a fresh one is generated if omitted

        Returns:
            The registered conversation. An existing record is returned
            unchanged; name and participants are not merged.

        Raises:
            InvalidArgumentError: If the parameters cannot form a conversation
        """
        try:
            kind = ConversationKind(kind)
        except ValueError as err:
            raise InvalidArgumentError(f"Unknown conversation kind: {kind!r}") from err

        if kind is ConversationKind.DIRECT:
            if len(participant_ids) != 1:
                raise InvalidArgumentError(
                    "A direct conversation takes exactly one other participant id"
                )
            other = participant_ids[0]
            if not other or other == self.self_id:
                raise InvalidArgumentError(
                    "A direct conversation needs a participant other than yourself"
                )
            participants = sorted((self.self_id, other))
            conversation_id = SEPARATOR.join(participants)
        else:
            if explicit_id is not None and not explicit_id.strip():
                raise InvalidArgumentError("Group conversation id must not be empty")
            conversation_id = explicit_id or str(uuid.uuid4())
            participants = [self.self_id]

        existing = self._conversations.get(conversation_id)
        if existing is not None:
            return existing

        conversation = Conversation(
            id=conversation_id,
            kind=kind,
            participants=participants,
            name=name,
        )
        self._conversations[conversation_id] = conversation
        self._keys[conversation_id] = MessageCodec.derive_key(conversation)
        logger.debug("Registered %s conversation %s", kind.value, conversation_id)
        return conversation

    def join(self, conversation_id: str, name: str | None = None) -> Conversation:
        return self.create([], ConversationKind.GROUP, name, conversation_id)

    def get(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def all(self) -> list[Conversation]:
        return list(self._conversations.values())

    def key_for(self, conversation_id: str) -> str | None:
        return self._keys.get(conversation_id)

    def observe_participant(self, conversation_id: str, participant_id: str) -> None:
        """Record a sender seen in a group conversation."""
        conversation = self._conversations.get(conversation_id)
        if conversation is None or conversation.is_direct:
            return
        if participant_id not in conversation.participants:
            conversation.participants.append(participant_id)

    def forget_participant(self, conversation_id: str, participant_id: str) -> None:
        """Drop a group participant that announced it left."""
        conversation = self._conversations.get(conversation_id)
        if conversation is None or conversation.is_direct or participant_id == self.self_id:
            return
        if participant_id in conversation.participants:
            conversation.participants.remove(participant_id)

    def mark_subscribed(self, conversation_id: str) -> bool:
        """Mark the conversation topic as subscribed; False if it already was."""
        if conversation_id in self._subscribed:
            return False
        self._subscribed.add(conversation_id)
        return True

    def is_subscribed(self, conversation_id: str) -> bool:
        return conversation_id in self._subscribed

    def clear_subscriptions(self) -> None:
        """Forget every topic subscription marker, e.g. after the transport stopped."""
        self._subscribed.clear()

    def remove(self, conversation_id: str) -> bool:
        """Tear down all local state of a conversation.

        Returns:
            False if the conversation was not registered
        """
        if self._conversations.pop(conversation_id, None) is None:
            return False
        self._keys.pop(conversation_id, None)
        self._message_log.drop(conversation_id)
        self._hub.clear(conversation_id)
        self._subscribed.discard(conversation_id)
        logger.debug("Removed conversation %s", conversation_id)
        return True
