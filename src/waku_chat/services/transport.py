"""Transport collaborators for moving encrypted records between participants.

This module provides:

- The ``Transport`` protocol the chat session consumes
- Content topic naming for conversations
- ``LoopbackNetwork``: an in-process relay for offline development and tests
- ``WakuRestTransport``: an HTTP client for the nwaku REST API, with a
  background task polling subscribed content topics
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from waku_chat.core.errors import TransportError
from waku_chat.core.settings import Settings, settings as default_settings

PayloadCallback = Callable[[bytes], None]

# Configure logger for this module
logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_OK = 200
HTTP_INTERNAL_SERVER_ERROR = 500

_UNSAFE_TOPIC_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def content_topic(conversation_id: str, prefix: str | None = None) -> str:
    """Return the transport-safe content topic of a conversation.

    Args:
        conversation_id: Conversation id; characters outside ``[A-Za-z0-9_-]``
            are replaced with ``_``
        prefix: Topic prefix, defaults to the configured one

    Returns:
        Topic of the form ``<prefix>/<safe id>/proto``
    """
    prefix = default_settings.content_topic_prefix if prefix is None else prefix
    safe_id = _UNSAFE_TOPIC_CHARS.sub("_", conversation_id)
    return f"{prefix}/{safe_id}/proto"


class Transport(Protocol):
    """Peer-to-peer publish/subscribe network consumed by the chat session."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def publish(self, topic: str, payload: bytes) -> bool: ...

    async def subscribe_topic(self, topic: str, on_message: PayloadCallback) -> None: ...

    async def query_history(self, topic: str, on_message: PayloadCallback) -> bool: ...


class LoopbackNetwork:
    """In-process relay shared by the transports of co-located sessions.

    Every published payload is kept per topic so history queries can replay
    it. Delivery is synchronous and includes the publisher's own
    subscription, like a relay node echoing to its subscribers.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[PayloadCallback]] = {}
        self._history: dict[str, list[bytes]] = {}

    def transport(self) -> LoopbackTransport:
        return LoopbackTransport(self)

    def history(self, topic: str) -> list[bytes]:
        return list(self._history.get(topic, ()))

    def _publish(self, topic: str, payload: bytes) -> None:
        self._history.setdefault(topic, []).append(payload)
        for callback in list(self._subscribers.get(topic, ())):
            callback(payload)

    def _subscribe(self, topic: str, callback: PayloadCallback) -> None:
        self._subscribers.setdefault(topic, []).append(callback)

    def _unsubscribe(self, callback: PayloadCallback) -> None:
        for callbacks in self._subscribers.values():
            if callback in callbacks:
                callbacks.remove(callback)


class LoopbackTransport:
    """Transport endpoint attached to a ``LoopbackNetwork``."""

    def __init__(self, network: LoopbackNetwork) -> None:
        self.network = network
        self.started = False
        self._callbacks: dict[str, PayloadCallback] = {}

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        for callback in self._callbacks.values():
            self.network._unsubscribe(callback)
        self._callbacks.clear()
        self.started = False

    async def publish(self, topic: str, payload: bytes) -> bool:
        if not self.started:
            raise TransportError("Loopback transport is not started")
        self.network._publish(topic, payload)
        return True

    async def subscribe_topic(self, topic: str, on_message: PayloadCallback) -> None:
        if not self.started:
            raise TransportError("Loopback transport is not started")
        if topic in self._callbacks:
            return
        self._callbacks[topic] = on_message
        self.network._subscribe(topic, on_message)

    async def query_history(self, topic: str, on_message: PayloadCallback) -> bool:
        if not self.started:
            raise TransportError("Loopback transport is not started")
        for payload in self.network.history(topic):
            on_message(payload)
        return True


@dataclass(frozen=True)
class WakuRestConfig:
    """Immutable configuration for the nwaku REST transport."""

    base_url: str
    pubsub_topic: str
    timeout_seconds: float
    poll_interval_seconds: float
    history_page_size: int = 50


def load_waku_rest_config(config: Settings | None = None) -> WakuRestConfig:
    """Build the REST transport configuration from settings."""
    config = config or default_settings
    if not config.transport_url:
        raise TransportError("WAKU_CHAT_TRANSPORT_URL is not configured")
    return WakuRestConfig(
        base_url=config.transport_url,
        pubsub_topic=config.pubsub_topic,
        timeout_seconds=float(config.transport_timeout_seconds),
        poll_interval_seconds=float(config.transport_poll_interval_seconds),
    )


class WakuRestTransport:
    """Transport backed by a local nwaku node's REST API."""

    def __init__(
        self,
        config: WakuRestConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or load_waku_rest_config()
        self._client = client
        self._owns_client = client is None
        self._topics: dict[str, PayloadCallback] = {}
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=httpx.Timeout(self.config.timeout_seconds),
            )
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_data: Any | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        client = self._ensure_client()
        try:
            response = await client.request(method, path, json=json_data, params=params)
        except httpx.HTTPError as exc:
            raise TransportError(f"Waku node request failed: {exc}") from exc

        if response.status_code >= HTTP_INTERNAL_SERVER_ERROR:
            raise TransportError(f"Waku node responded with {response.status_code}")
        return response

    async def start(self) -> None:
        """Check the node is reachable and start polling subscribed topics."""
        response = await self._request("GET", "/health")
        if response.status_code != HTTP_OK:
            raise TransportError(f"Waku node is not healthy ({response.status_code})")

        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop polling and release the HTTP client."""
        if self._task is not None:
            self._stopping.set()
            await self._task
            self._task = None

        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def publish(self, topic: str, payload: bytes) -> bool:
        body = {
            "payload": base64.b64encode(payload).decode(),
            "contentTopic": topic,
            "timestamp": time.time_ns(),
        }
        response = await self._request("POST", "/relay/v1/auto/messages", json_data=body)
        if response.status_code != HTTP_OK:
            logger.warning("Waku node rejected message on %s: %s", topic, response.text)
            return False
        return True

    async def subscribe_topic(self, topic: str, on_message: PayloadCallback) -> None:
        if topic in self._topics:
            return

        response = await self._request(
            "POST",
            "/relay/v1/auto/subscriptions",
            json_data=[topic],
        )
        if response.status_code != HTTP_OK:
            raise TransportError(
                f"Unexpected node response ({response.status_code}) subscribing to {topic}"
            )
        self._topics[topic] = on_message

    async def query_history(self, topic: str, on_message: PayloadCallback) -> bool:
        """Replay stored messages of a topic, following pagination cursors."""
        params: dict[str, Any] = {
            "pubsubTopic": self.config.pubsub_topic,
            "contentTopics": topic,
            "includeData": "true",
            "ascending": "true",
            "pageSize": self.config.history_page_size,
        }
        while True:
            response = await self._request("GET", "/store/v3/messages", params=params)
            if response.status_code != HTTP_OK:
                logger.warning("History query for %s failed: %s", topic, response.text)
                return False

            body = response.json()
            if not isinstance(body, dict):
                logger.warning("History query for %s returned an unexpected body", topic)
                return False

            for entry in _entries(body.get("messages")):
                message = entry.get("message")
                if not isinstance(message, dict):
                    continue
                payload = _decode_payload(message.get("payload"))
                if payload is not None:
                    on_message(payload)

            cursor = body.get("paginationCursor")
            if not cursor:
                return True
            params["cursor"] = cursor

    async def poll_once(self) -> int:
        """Fetch cached relay messages for every subscribed topic.

        Returns:
            Number of payloads handed to callbacks
        """
        delivered = 0
        for topic, callback in list(self._topics.items()):
            response = await self._request(
                "GET",
                f"/relay/v1/auto/messages/{quote(topic, safe='')}",
            )
            if response.status_code != HTTP_OK:
                continue
            body = response.json()
            if not isinstance(body, list):
                logger.warning("Relay messages for %s returned an unexpected body", topic)
                continue
            for entry in _entries(body):
                payload = _decode_payload(entry.get("payload"))
                if payload is None:
                    continue
                callback(payload)
                delivered += 1
        return delivered

    async def _run(self) -> None:
        interval = max(0.1, self.config.poll_interval_seconds)

        while not self._stopping.is_set():
            try:
                await self.poll_once()
            except TransportError as e:
                logger.warning("Waku polling encountered TransportError: %s", e)
                await self._sleep(min(interval * 4, 30.0))
                continue
            except (ValueError, TypeError, KeyError, AttributeError) as e:
                logger.error("Waku polling encountered data processing error: %s", e, exc_info=True)

            await self._sleep(interval)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


def _entries(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [entry for entry in value if isinstance(entry, dict)]


def _decode_payload(value: Any) -> bytes | None:
    if not isinstance(value, str):
        return None
    try:
        return base64.b64decode(value, validate=True)
    except ValueError:
        logger.debug("Skipping relay entry with an invalid payload")
        return None
