"""Exception hierarchy for the chat protocol layer."""

from __future__ import annotations


class ChatError(RuntimeError):
    """Base exception raised for chat-layer failures.

    This is the base class for all waku-chat exceptions.
    """


class NotInitializedError(ChatError):
    """Raised when an operation needs an identity before ``init`` ran."""


class InvalidArgumentError(ChatError, ValueError):
    """Raised for malformed conversation creation parameters."""


class NotFoundError(ChatError, LookupError):
    """Raised when a conversation is not known locally."""


class PermissionDeniedError(ChatError):
    """Raised when revoking a locally known message sent by someone else."""


class AuthenticationError(ChatError):
    """Raised when a payload fails decryption, signature or MAC checks."""


class TransportError(ChatError):
    """Raised by transport implementations for network failures.

    The session catches these at its boundary; they never reach callers of
    the facade operations.
    """


class BroadcastError(ChatError):
    """Raised by broadcast channel implementations when a post fails."""
