# src/waku_chat/services/broadcast.py
"""Same-device mirror channel between co-located sessions."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Protocol

from waku_chat.schemas.message import BroadcastRecord

BroadcastListener = Callable[[BroadcastRecord], None]
Unlisten = Callable[[], None]

# Configure logger for this module
logger = logging.getLogger(__name__)


class Broadcast(Protocol):
    """Local channel mirroring new messages to other processes of this device."""

    def post(self, record: BroadcastRecord) -> None: ...

    def listen(self, listener: BroadcastListener) -> Unlisten: ...


class LocalBroadcastChannel:
    """In-process broadcast channel.

    A record posted through ``post`` reaches every listener except the one
    registered by the poster, the way browser storage events skip the tab
    that wrote the value. Records are passed through their JSON form so
    listeners never share objects with the poster.
    """

    def __init__(self) -> None:
        self._listeners: list[BroadcastListener] = []

    def endpoint(self) -> BroadcastEndpoint:
        return BroadcastEndpoint(self)

    def _deliver(self, record: BroadcastRecord, origin: BroadcastListener | None) -> int:
        raw = record.to_json()
        delivered = 0
        for listener in list(self._listeners):
            if listener is origin:
                continue
            try:
                listener(BroadcastRecord.from_json(raw))
            except Exception:
                logger.exception("Broadcast listener failed for %s", record.message.id)
                continue
            delivered += 1
        return delivered

    def post(self, record: BroadcastRecord) -> None:
        self._deliver(record, origin=None)

    def listen(self, listener: BroadcastListener) -> Unlisten:
        self._listeners.append(listener)

        def unlisten() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unlisten


class BroadcastEndpoint:
    """One session's view of a ``LocalBroadcastChannel``.

    Posts made through an endpoint are not echoed back to the listener that
    endpoint registered.
    """

    def __init__(self, channel: LocalBroadcastChannel) -> None:
        self.channel = channel
        self._listener: BroadcastListener | None = None

    def post(self, record: BroadcastRecord) -> None:
        self.channel._deliver(record, origin=self._listener)

    def listen(self, listener: BroadcastListener) -> Unlisten:
        self._listener = listener
        unlisten = self.channel.listen(listener)

        def detach() -> None:
            unlisten()
            self._listener = None

        return detach
