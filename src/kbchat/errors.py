"""Exception hierarchy shared by the kbchat services."""

from __future__ import annotations


class KBChatError(RuntimeError):
    """Base class for errors surfaced by kbchat."""

    status_code = 500


class ConfigurationError(KBChatError):
    """Missing credential, base URL or unsupported provider; raised before any external call."""

    status_code = 400


class ValidationError(KBChatError):
    status_code = 400


class NotFoundError(KBChatError):
    status_code = 404


class ForbiddenError(KBChatError):
    status_code = 403


class ProviderError(KBChatError):
    """A model or embedding backend failed."""

    status_code = 502


class RetrievalError(KBChatError):
    """Vector store unreachable or query rejected."""

    status_code = 502


class InvalidFilterError(RetrievalError):
    status_code = 400


class EmbeddingDimensionError(RetrievalError):
    """Query or batch vectors do not match the dimensionality the index was built with."""

    status_code = 409


class IngestionError(KBChatError):
    """Raised when indexing a document's chunks fails."""


class ConversationConflictError(KBChatError):
    """Another turn was appended to the conversation after this turn read its history."""

    status_code = 409


class ChatTurnError(KBChatError):
    """Generic failure indicator for a chat turn; never carries provider details."""

    status_code = 502

    def __init__(self, message: str = "The assistant could not answer this message. Please try again.") -> None:
        super().__init__(message)
