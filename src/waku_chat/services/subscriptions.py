# src/waku_chat/services/subscriptions.py
"""Per-conversation message handler registry and fan-out."""

from __future__ import annotations

import logging
from collections.abc import Callable

from waku_chat.schemas.message import Message

MessageHandler = Callable[[Message], None]

# Configure logger for this module
logger = logging.getLogger(__name__)


class SubscriptionHub:
    """Registers handlers per conversation and notifies them of stored messages."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[MessageHandler]] = {}

    def register(self, conversation_id: str, handler: MessageHandler) -> bool:
        """Add a handler; the same handler is never registered twice.

        Returns:
            True if the handler was added, False if it was already registered
        """
        handlers = self._handlers.setdefault(conversation_id, [])
        if handler in handlers:
            logger.debug("Handler already subscribed to conversation %s", conversation_id)
            return False
        handlers.append(handler)
        logger.debug(
            "Subscribed to conversation %s, %d handler(s)",
            conversation_id,
            len(handlers),
        )
        return True

    def unregister(self, conversation_id: str, handler: MessageHandler) -> bool:
        handlers = self._handlers.get(conversation_id)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        return True

    def handlers(self, conversation_id: str) -> list[MessageHandler]:
        return list(self._handlers.get(conversation_id, ()))

    def clear(self, conversation_id: str) -> None:
        self._handlers.pop(conversation_id, None)

    def notify(self, message: Message) -> int:
        """Deliver a message to the handlers of its conversation.

        A failing handler is logged and does not keep the others from
        running.

        Returns:
            Number of handlers that completed without raising
        """
        delivered = 0
        for handler in self.handlers(message.conversation_id):
            try:
                handler(message)
            except Exception:
                logger.exception(
                    "Message handler failed for %s in conversation %s",
                    message.id,
                    message.conversation_id,
                )
                continue
            delivered += 1
        return delivered
