# src/waku_chat/utils/hash.py
"""Keccak-256 helpers shared by key derivation, signing and identities."""

from __future__ import annotations

from Crypto.Hash import keccak


def keccak_digest(data: bytes) -> bytes:
    """Return the 32-byte Keccak-256 digest of the supplied data."""
    hasher = keccak.new(digest_bits=256)
    hasher.update(data)
    return hasher.digest()


def keccak_hexdigest(data: bytes) -> str:
    """Return the hexadecimal Keccak-256 digest of the supplied data."""
    return keccak_digest(data).hex()


def keccak_hex(text: str) -> str:
    """Hash UTF-8 text and render it ``0x``-prefixed.

    This is the string form every party slices keys and keystreams from, so
    the prefix is part of the derived material.
    """
    return "0x" + keccak_hexdigest(text.encode("utf-8"))
