# src/waku_chat/services/identity_store.py
"""Load, generate and persist the local user's identity."""

from __future__ import annotations

import logging
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from pydantic import ValidationError

from waku_chat.core.settings import Settings, settings as default_settings
from waku_chat.schemas.identity import Identity
from waku_chat.utils.hash import keccak_digest

PUBLIC_ID_BYTES = 20

# Configure logger for this module
logger = logging.getLogger(__name__)


def derive_public_id(public_key_bytes: bytes) -> str:
    """Return the address-style identifier of a public key.

    Args:
        public_key_bytes: Raw public key bytes

    Returns:
        ``0x`` followed by the hex of the last 20 bytes of its Keccak-256 digest
    """
    return "0x" + keccak_digest(public_key_bytes)[-PUBLIC_ID_BYTES:].hex()


class IdentityStore:
    """File-backed identity persistence keyed by a well-known name.

    Persistence failures are logged and never raised: a session can always
    proceed with an in-memory identity.
    """

    def __init__(self, path: Path | None = None, config: Settings | None = None) -> None:
        config = config or default_settings
        self.path = path or config.identity_path

    @staticmethod
    def generate() -> Identity:
        """Generate a fresh Ed25519 identity."""
        private_key = Ed25519PrivateKey.generate()

        private_bytes = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

        identity = Identity(
            public_id=derive_public_id(public_bytes),
            private_key=private_bytes.hex(),
            public_key=public_bytes.hex(),
        )
        logger.info("Generated identity %s", identity.public_id)
        return identity

    def load(self) -> Identity | None:
        """Return the persisted identity, or None if absent or unreadable."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as err:
            logger.error("Failed to read identity from %s: %s", self.path, err)
            return None

        try:
            identity = Identity.model_validate_json(raw)
        except ValidationError as err:
            logger.error("Stored identity at %s is invalid: %s", self.path, err)
            return None

        logger.info("Loaded identity %s", identity.public_id)
        return identity

    def save(self, identity: Identity) -> bool:
        """Persist an identity; returns False (logged) if it could not be written."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(identity.model_dump_json(by_alias=True), encoding="utf-8")
        except OSError as err:
            logger.error("Failed to save identity to %s: %s", self.path, err)
            return False
        return True

    def reset(self) -> bool:
        """Forget the persisted identity so the next run generates a new one."""
        try:
            self.path.unlink(missing_ok=True)
        except OSError as err:
            logger.error("Failed to reset identity at %s: %s", self.path, err)
            return False
        logger.info("Identity reset")
        return True

    def load_or_create(self) -> Identity:
        """Load the identity, generating and saving one on first run."""
        identity = self.load()
        if identity is None:
            identity = self.generate()
            if not self.save(identity):
                logger.warning("Continuing with an in-memory identity %s", identity.public_id)
        return identity
