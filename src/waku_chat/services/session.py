# src/waku_chat/services/session.py
"""Chat session facade.

``ChatSession`` is the public contract of the package. It binds the local
state components (registry, log, subscriptions, codec) to the external
Transport and Broadcast collaborators. Local state is updated first and
synchronously; collaborator failures are logged and never undo it.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Coroutine, Sequence
from typing import Any

from waku_chat.core.errors import (
    AuthenticationError,
    InvalidArgumentError,
    NotFoundError,
    NotInitializedError,
    PermissionDeniedError,
)
from waku_chat.core.settings import Settings, settings as default_settings
from waku_chat.schemas.conversation import Conversation, ConversationKind
from waku_chat.schemas.identity import Identity
from waku_chat.schemas.message import (
    BroadcastRecord,
    DisplayMessage,
    LeaveMessage,
    Message,
    TextMessage,
    TombstoneMessage,
)
from waku_chat.services.broadcast import Broadcast, Unlisten
from waku_chat.services.codec import SEPARATOR, MessageCodec
from waku_chat.services.identity_store import IdentityStore
from waku_chat.services.message_log import DedupIndex, MessageLog
from waku_chat.services.registry import ConversationRegistry
from waku_chat.services.subscriptions import MessageHandler, SubscriptionHub
from waku_chat.services.transport import (
    Transport,
    WakuRestTransport,
    content_topic,
    load_waku_rest_config,
)

# Configure logger for this module
logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Current time in milliseconds."""
    return int(time.time() * 1000)


class ChatSession:
    """Conversation-oriented, encrypted, revocable messaging for one identity.

    One session has a single owner: its state is not shared with other
    sessions and must not be mutated from several threads.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        identity_store: IdentityStore | None = None,
        transport: Transport | None = None,
        broadcast: Broadcast | None = None,
    ) -> None:
        """Initialize the session.

        Args:
            settings: Optional settings instance. If None, uses the global settings.
            identity_store: Optional identity persistence. If None, a file-backed
                store at the configured identity path is used.
            transport: Optional transport. If None and a transport URL is
                configured, a ``WakuRestTransport`` is built on ``init``.
            broadcast: Optional same-device broadcast channel.
        """
        self.settings = settings or default_settings
        self.identity_store = identity_store or IdentityStore(config=self.settings)
        self.transport = transport
        self.broadcast = broadcast

        self.message_log = MessageLog(
            retention=self.settings.message_retention,
            dedup_index=DedupIndex(self.settings.dedup_index_capacity),
        )
        self.hub = SubscriptionHub()
        self._identity: Identity | None = None
        self._registry: ConversationRegistry | None = None
        self._online = False
        self._unlisten: Unlisten | None = None
        self._background: set[asyncio.Task[Any]] = set()

    # --- lifecycle ------------------------------------------------------------------

    @property
    def identity(self) -> Identity | None:
        return self._identity

    @property
    def online(self) -> bool:
        """True while the transport is up; False means local-only mode."""
        return self._online

    @property
    def registry(self) -> ConversationRegistry:
        if self._registry is None:
            raise NotInitializedError("Chat session is not initialized")
        return self._registry

    def _require_identity(self) -> Identity:
        if self._identity is None:
            raise NotInitializedError("Chat session is not initialized")
        return self._identity

    async def init(self) -> Identity:
        """Load or create the identity and bring up collaborators.

        A transport that fails to start leaves the session in local-only
        mode; it never makes ``init`` fail.
        """
        if self._identity is None:
            self._identity = self.identity_store.load_or_create()
            self._registry = ConversationRegistry(
                self._identity.public_id,
                self.message_log,
                self.hub,
            )

        if self.transport is None and self.settings.transport_url:
            self.transport = WakuRestTransport(load_waku_rest_config(self.settings))

        if self.transport is not None and not self._online:
            try:
                await self.transport.start()
            except Exception as exc:
                logger.warning("Transport failed to start, running in local-only mode: %s", exc)
            else:
                self._online = True

        if self.broadcast is not None and self._unlisten is None:
            self._unlisten = self.broadcast.listen(self.receive_broadcast)

        # Conversations kept across close/init need their topics again.
        for conversation in self._registry.all():
            await self._subscribe_to_conversation(conversation.id)

        return self._identity

    async def close(self) -> None:
        """Stop the transport and detach from the broadcast channel. Idempotent."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        if self._unlisten is not None:
            self._unlisten()
            self._unlisten = None

        if self.transport is not None and self._online:
            try:
                await self.transport.stop()
            except Exception as exc:
                logger.error("Failed to stop transport: %s", exc)
            self._online = False

        if self._registry is not None:
            self._registry.clear_subscriptions()

    # --- conversations --------------------------------------------------------------

    async def create_conversation(
        self,
        participant_ids: Sequence[str],
        kind: ConversationKind | str,
        name: str | None = None,
        conversation_id: str | None = None,
    ) -> Conversation:
        """Create (or return) a conversation and subscribe to its topic.

        Direct conversations take the other participant's public id and get
        the same id on both sides. Group conversations get a fresh id unless
        ``conversation_id`` is given.
        """
        self._require_identity()
        conversation = self.registry.create(participant_ids, kind, name, conversation_id)
        await self._subscribe_to_conversation(conversation.id)
        return conversation

    async def join_group(self, conversation_id: str, name: str | None = None) -> Conversation:
        """Join an existing group conversation by its shared id."""
        return await self.create_conversation([], ConversationKind.GROUP, name, conversation_id)

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        if self._registry is None:
            return None
        return self._registry.get(conversation_id)

    def get_all_conversations(self) -> list[Conversation]:
        if self._registry is None:
            return []
        return self._registry.all()

    async def leave_conversation(self, conversation_id: str) -> bool:
        """Remove a conversation locally, then announce the leave.

        The leave is sealed first, the conversation is torn down, and only
        then is the announcement mirrored and published, so the echo of our
        own leave finds no key and is discarded. Unknown conversations are a
        no-op. Local teardown happens even when the announcement cannot be
        delivered.

        Returns:
            True if a conversation was removed
        """
        identity = self._require_identity()
        key = self.registry.key_for(conversation_id)
        if key is None:
            logger.debug("Ignoring leave for unknown conversation %s", conversation_id)
            return False

        leave = LeaveMessage(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            sender=identity.public_id,
            timestamp=now_ms(),
        )
        encrypted = MessageCodec.encrypt(leave, key)

        # Local teardown first so echoes of our own leave are discarded.
        self.registry.remove(conversation_id)
        self._mirror(encrypted)
        await self._publish(conversation_id, encrypted)
        return True

    # --- messages -------------------------------------------------------------------

    def _key_or_raise(self, conversation_id: str) -> str:
        key = self.registry.key_for(conversation_id)
        if key is None:
            raise NotFoundError(f"Conversation {conversation_id} does not exist")
        return key

    async def send_message(self, conversation_id: str, content: str) -> str:
        """Send a text message.

        The message is stored and handed to local subscribers before any
        network call; transport failures only lose the network mirror.

        Returns:
            The new message id

        Raises:
            NotInitializedError: If ``init`` has not run
            NotFoundError: If the conversation is unknown
        """
        identity = self._require_identity()
        key = self._key_or_raise(conversation_id)

        message = TextMessage(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            sender=identity.public_id,
            content=content,
            timestamp=now_ms(),
        )
        return await self._dispatch(MessageCodec.encrypt(message, key))

    async def revoke_message(self, conversation_id: str, message_id: str) -> str:
        """Revoke a message by sending a tombstone for it.

        Revoking an id that is not present locally still produces a
        tombstone, since the original may simply not have arrived yet.

        Returns:
            The tombstone message id

        Raises:
            NotInitializedError: If ``init`` has not run
            NotFoundError: If the conversation is unknown
            PermissionDeniedError: If the target is known locally and was
                sent by someone else
        """
        identity = self._require_identity()
        key = self._key_or_raise(conversation_id)

        target = self.message_log.find(conversation_id, message_id)
        if target is not None and target.sender != identity.public_id:
            raise PermissionDeniedError("Only the original sender can revoke a message")

        tombstone = TombstoneMessage(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            sender=identity.public_id,
            tombstone_for=message_id,
            timestamp=now_ms(),
        )
        tombstone_id = await self._dispatch(MessageCodec.encrypt(tombstone, key))
        logger.info("Created tombstone %s for message %s", tombstone_id, message_id)
        return tombstone_id

    async def _dispatch(self, encrypted: Message) -> str:
        self._apply(encrypted)
        self._mirror(encrypted)
        await self._publish(encrypted.conversation_id, encrypted)
        return encrypted.id

    def _apply(self, message: Message) -> bool:
        """Store a message and notify subscribers if it is new."""
        if not self.message_log.store(message):
            return False
        self.hub.notify(message)
        return True

    def _mirror(self, encrypted: Message) -> None:
        if self.broadcast is None:
            return
        record = BroadcastRecord(message=encrypted, timestamp=now_ms())
        try:
            self.broadcast.post(record)
        except Exception as exc:
            logger.warning("Failed to mirror message %s to local broadcast: %s", encrypted.id, exc)

    async def _publish(self, conversation_id: str, encrypted: Message) -> bool:
        if self.transport is None or not self._online or encrypted.payload is None:
            return False
        topic = content_topic(conversation_id, self.settings.content_topic_prefix)
        try:
            published = await self.transport.publish(topic, encrypted.payload)
        except Exception as exc:
            logger.warning(
                "Failed to publish message %s, it is stored locally only: %s",
                encrypted.id,
                exc,
            )
            return False
        if not published:
            logger.warning("Transport rejected message %s, it is stored locally only", encrypted.id)
            return False
        logger.debug("Published message %s to %s", encrypted.id, topic)
        return True

    # --- subscriptions --------------------------------------------------------------

    async def subscribe(self, conversation_id: str, handler: MessageHandler) -> None:
        """Register a handler for new messages and ensure the topic is subscribed."""
        self.hub.register(conversation_id, handler)
        await self._subscribe_to_conversation(conversation_id)

    def unsubscribe(self, conversation_id: str, handler: MessageHandler) -> bool:
        return self.hub.unregister(conversation_id, handler)

    async def _subscribe_to_conversation(self, conversation_id: str) -> None:
        if self._registry is None or not self._registry.mark_subscribed(conversation_id):
            return
        if self.transport is None or not self._online:
            return

        topic = content_topic(conversation_id, self.settings.content_topic_prefix)

        def on_payload(payload: bytes) -> None:
            self.deliver_inbound(payload, conversation_id)

        try:
            await self.transport.subscribe_topic(topic, on_payload)
        except Exception as exc:
            logger.error("Failed to subscribe to conversation %s: %s", conversation_id, exc)
        else:
            logger.debug("Subscribed to conversation %s on %s", conversation_id, topic)

        if self.settings.store_messages:
            try:
                await self.transport.query_history(topic, on_payload)
            except Exception as exc:
                logger.error("Failed to pull history of conversation %s: %s", conversation_id, exc)

    # --- inbound --------------------------------------------------------------------

    def deliver_inbound(self, payload: bytes, conversation_id: str) -> Message | None:
        """Decrypt, verify and store a payload received for a conversation.

        Payloads for unknown conversations, failing authentication, or naming
        another conversation than the topic they arrived on are discarded.

        Returns:
            The newly stored message, or None if it was discarded or a duplicate
        """
        key = self._registry.key_for(conversation_id) if self._registry else None
        if key is None:
            logger.debug("No key for conversation %s, discarding payload", conversation_id)
            return None

        try:
            message = MessageCodec.decrypt(payload, key)
        except AuthenticationError as exc:
            logger.warning("Discarding payload for conversation %s: %s", conversation_id, exc)
            return None

        if message.conversation_id != conversation_id:
            logger.warning("Conversation id mismatch, discarding message %s", message.id)
            return None

        if not self._apply(message):
            return None

        if isinstance(message, LeaveMessage):
            self.registry.forget_participant(conversation_id, message.sender)
        else:
            self.registry.observe_participant(conversation_id, message.sender)
        logger.debug("Received message %s for conversation %s", message.id, conversation_id)
        return message

    def receive_broadcast(self, record: BroadcastRecord) -> Message | None:
        """Handle a record mirrored by another local session.

        Unknown conversations are adopted (direct ids naming this identity are
        created, anything else is joined as a group) when
        ``auto_join_broadcast_conversations`` is set, otherwise the record is
        discarded. The record is then verified like any inbound payload.
        """
        message = record.message
        if message.payload is None:
            logger.warning("Broadcast record %s carries no payload, discarding", message.id)
            return None
        if self._registry is None:
            return None

        conversation_id = message.conversation_id
        if conversation_id not in self._registry:
            if not self.settings.auto_join_broadcast_conversations:
                logger.debug("Discarding broadcast for unknown conversation %s", conversation_id)
                return None
            if not self._adopt_conversation(conversation_id, message.payload):
                return None
            self._spawn(self._subscribe_to_conversation(conversation_id))

        return self.deliver_inbound(message.payload, conversation_id)

    def _adoption_candidate(self, conversation_id: str) -> Conversation | None:
        """Describe the conversation a broadcast id would create, without registering it."""
        if not conversation_id.strip():
            return None
        self_id = self.registry.self_id
        members = conversation_id.split(SEPARATOR)
        if len(members) == 2 and self_id in members and members[0] != members[1]:
            return Conversation(
                id=conversation_id,
                kind=ConversationKind.DIRECT,
                participants=sorted(members),
            )
        return Conversation(id=conversation_id, kind=ConversationKind.GROUP, participants=[self_id])

    def _adopt_conversation(self, conversation_id: str, payload: bytes) -> bool:
        """Register an unknown conversation once a payload for it authenticates."""
        candidate = self._adoption_candidate(conversation_id)
        if candidate is None:
            logger.warning("Cannot adopt conversation with an empty id")
            return False

        try:
            verified = MessageCodec.decrypt(payload, MessageCodec.derive_key(candidate))
        except AuthenticationError as exc:
            logger.warning("Discarding broadcast for unknown conversation %s: %s", conversation_id, exc)
            return False
        if verified.conversation_id != conversation_id:
            logger.warning("Conversation id mismatch, discarding broadcast %s", verified.id)
            return False

        try:
            if candidate.is_direct:
                other = next(member for member in candidate.participants if member != self.registry.self_id)
                self.registry.create([other], ConversationKind.DIRECT)
            else:
                self.registry.join(conversation_id)
        except InvalidArgumentError as exc:
            logger.warning("Cannot adopt conversation %s: %s", conversation_id, exc)
            return False
        return True

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.debug("No running event loop, skipping background subscription")
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # --- local pass-throughs --------------------------------------------------------

    def store_message(self, message: Message) -> bool:
        """Store a message directly, bypassing verification. Duplicate ids are ignored."""
        return self.message_log.store(message)

    def delete_message_locally(self, conversation_id: str, message_id: str) -> None:
        self.message_log.delete(conversation_id, message_id)

    def get_messages(self, conversation_id: str) -> list[Message]:
        return self.message_log.messages(conversation_id)

    def get_display_messages(self, conversation_id: str) -> list[DisplayMessage]:
        """Return the projected view of a conversation with revocations applied."""
        return self.message_log.project(conversation_id)
