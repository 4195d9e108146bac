# src/waku_chat/services/codec.py
"""Per-conversation key derivation, signing, MAC and payload encryption.

The payload cipher is the illustrative keystream XOR used by the browser
SDK: it gives no confidentiality against anyone who knows the conversation
id. Callers needing real confidentiality must swap an AEAD primitive in
behind ``encrypt``/``decrypt``; nothing else touches the cipher.
"""

from __future__ import annotations

import json
import secrets
from collections.abc import Mapping
from itertools import cycle
from typing import Any, Final

from pydantic import ValidationError

from waku_chat.core.errors import AuthenticationError
from waku_chat.schemas.conversation import Conversation, ConversationKind
from waku_chat.schemas.message import Message, message_adapter
from waku_chat.utils.hash import keccak_hex

KEY_LENGTH: Final[int] = 32  # characters of the 0x-prefixed hex digest
AUTH_FIELDS: Final[frozenset[str]] = frozenset({"signature", "mac", "payload"})
SEPARATOR: Final[str] = "_"


def canonical_bytes(fields: Mapping[str, Any]) -> bytes:
    """Deterministic JSON over the signed fields of a message.

    Authentication fields and unset values are dropped, keys are sorted and
    separators are compact, so equal field sets always produce the same bytes
    whatever order they were inserted in.
    """
    signed = {k: v for k, v in fields.items() if k not in AUTH_FIELDS and v is not None}
    return json.dumps(
        signed,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def _keystream(key: str) -> bytes:
    return keccak_hex(key)[:KEY_LENGTH].encode("utf-8")


def _xor(data: bytes, key: str) -> bytes:
    return bytes(b ^ k for b, k in zip(data, cycle(_keystream(key))))


class MessageCodec:
    """Service handling message authentication and encryption."""

    @staticmethod
    def derive_key(conversation: Conversation) -> str:
        """Derive the symmetric key for a conversation.

        Args:
            conversation: Conversation whose id (and participants, for direct
                conversations) seed the key material

        Returns:
            The first ``KEY_LENGTH`` characters of the 0x-prefixed Keccak-256
            hex digest of the key material
        """
        if conversation.kind is ConversationKind.GROUP:
            material = conversation.id
        else:
            participants = SEPARATOR.join(sorted(conversation.participants))
            material = f"{conversation.id}{SEPARATOR}{participants}"
        return keccak_hex(material)[:KEY_LENGTH]

    @staticmethod
    def sign(message: Message) -> str:
        """Return the content signature over the canonical message fields."""
        return keccak_hex(canonical_bytes(message.wire_fields()).decode("utf-8"))

    @staticmethod
    def mac(message: Message, key: str) -> str:
        """Return the keyed MAC over the canonical message fields."""
        return MessageCodec._mac_fields(message.wire_fields(), key)

    @staticmethod
    def _mac_fields(fields: Mapping[str, Any], key: str) -> str:
        canonical = canonical_bytes(fields).decode("utf-8")
        return keccak_hex(f"{canonical}{SEPARATOR}{key}")

    @staticmethod
    def encrypt(message: Message, key: str) -> Message:
        """Attach signature and MAC, then encrypt the serialized message.

        Args:
            message: Message to protect; any existing auth fields are replaced
            key: Conversation key from ``derive_key``

        Returns:
            Copy of the message with ``signature``, ``mac`` and ``payload`` set.
            The payload is exactly as long as the serialized plaintext.
        """
        unsigned = message.model_copy(update={"signature": None, "mac": None, "payload": None})
        authenticated = unsigned.model_copy(
            update={
                "signature": MessageCodec.sign(unsigned),
                "mac": MessageCodec.mac(unsigned, key),
            }
        )
        plaintext = json.dumps(
            authenticated.wire_fields(),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        ).encode("utf-8")
        return authenticated.model_copy(update={"payload": _xor(plaintext, key)})

    @staticmethod
    def decrypt(payload: bytes, key: str) -> Message:
        """Decrypt a payload and verify its signature and MAC.

        Args:
            payload: Raw bytes received from a transport or broadcast
            key: Conversation key the payload is expected to be sealed with

        Returns:
            The recovered message, carrying ``payload`` for re-broadcast

        Raises:
            AuthenticationError: If the payload does not decode to a message,
                lacks authentication fields, or fails either check
        """
        try:
            fields = json.loads(_xor(payload, key).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as err:
            raise AuthenticationError("Payload does not decrypt to a message") from err

        if not isinstance(fields, dict):
            raise AuthenticationError("Payload does not decrypt to a message")

        signature = fields.get("signature")
        mac = fields.get("mac")
        if not isinstance(signature, str) or not isinstance(mac, str):
            raise AuthenticationError("Message is missing its signature or MAC")

        expected_signature = keccak_hex(canonical_bytes(fields).decode("utf-8"))
        if not secrets.compare_digest(signature.encode(), expected_signature.encode()):
            raise AuthenticationError("Message signature mismatch")

        if not secrets.compare_digest(mac.encode(), MessageCodec._mac_fields(fields, key).encode()):
            raise AuthenticationError("Message MAC mismatch")

        try:
            message = message_adapter.validate_python(fields)
        except ValidationError as err:
            raise AuthenticationError(f"Message fields are invalid: {err}") from err

        return message.model_copy(update={"payload": bytes(payload)})
