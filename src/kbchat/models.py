"""Shared domain models used across the kbchat pipeline."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Mapping, Sequence

from kbchat.errors import InvalidFilterError

_WHITESPACE = re.compile(r"\s+")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def count_words(text: str) -> int:
    """Number of whitespace-separated words in ``text``."""

    if not text:
        return 0
    return len([word for word in _WHITESPACE.split(text.strip()) if word])


class DocumentStatus(str, Enum):
    PENDING = "pending"
    INDEXED = "indexed"
    FAILED = "failed"


class DocumentVisibility(str, Enum):
    PRIVATE = "PRIVATE"
    PUBLIC = "PUBLIC"


class ChatbotVisibility(str, Enum):
    PRIVATE = "PRIVATE"
    SHARED = "SHARED"
    PUBLIC = "PUBLIC"


class LLMProvider(str, Enum):
    """Chat model backends: hosted API or self-hosted OpenAI-compatible server."""

    OPENAI = "OPENAI"
    OLLAMA = "OLLAMA"


class UsageEventType(str, Enum):
    CREATE_DOCUMENT_INDEX = "CREATE_DOCUMENT_INDEX"
    LLM_INPUT = "LLM_INPUT"
    LLM_OUTPUT = "LLM_OUTPUT"
    QUERY_DOCUMENT = "QUERY_DOCUMENT"


@dataclass(frozen=True)
class ChunkPayload:
    """Chunk transfer object produced by the external chunking step."""

    id: str
    content: str
    index: int
    character_count: int | None = None
    word_count: int | None = None


@dataclass(frozen=True)
class Chunk:
    """Chunk materialized from the vector index for source citations."""

    chunk_id: str
    content: str
    chunk_index: int
    document_id: str
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def as_source(self) -> dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "content": self.content,
            "chunk_index": self.chunk_index,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class RetrievedChunk:
    """Chunk returned from the vector index during retrieval."""

    chunk: Chunk
    score: float


@dataclass(frozen=True)
class IndexResult:
    indexed_count: int
    ids: Sequence[str]


@dataclass(frozen=True)
class DocumentFilter:
    """Retrieval scope: one document id or a set of them."""

    document_ids: tuple[str, ...]

    @classmethod
    def single(cls, document_id: str) -> "DocumentFilter":
        return cls.parse({"document_id": document_id})

    @classmethod
    def any_of(cls, document_ids: Sequence[str]) -> "DocumentFilter":
        return cls.parse({"document_id": {"$in": list(document_ids)}})

    @classmethod
    def parse(cls, raw: Mapping[str, Any]) -> "DocumentFilter":
        """Accept ``{"document_id": "x"}`` or ``{"document_id": {"$in": [...]}}``."""

        if not isinstance(raw, Mapping) or "document_id" not in raw:
            raise InvalidFilterError("Document filter must contain 'document_id'")
        value = raw["document_id"]
        if isinstance(value, str):
            if not value:
                raise InvalidFilterError("Document filter id must not be empty")
            return cls(document_ids=(value,))
        if isinstance(value, Mapping) and set(value) == {"$in"}:
            ids = value["$in"]
            if isinstance(ids, (str, bytes)) or not isinstance(ids, Sequence):
                raise InvalidFilterError("'$in' must be a list of document ids")
            if not all(isinstance(item, str) and item for item in ids):
                raise InvalidFilterError("'$in' must only contain non-empty string ids")
            return cls(document_ids=tuple(dict.fromkeys(ids)))
        raise InvalidFilterError(f"Unsupported document filter: {value!r}")

    def contains(self, document_id: str) -> bool:
        return document_id in self.document_ids

    def to_where(self) -> dict[str, Any]:
        if len(self.document_ids) == 1:
            return {"document_id": self.document_ids[0]}
        return {"document_id": {"$in": list(self.document_ids)}}


@dataclass(frozen=True)
class LLMConfig:
    provider: LLMProvider
    model_name: str
    api_key: str | None = None
    base_url: str | None = None
    id: str | None = None
    user_id: str | None = None


@dataclass(frozen=True)
class SamplingConfig:
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass(frozen=True)
class ChatBot:
    """Chatbot definition as resolved by the CRUD/authorization layer."""

    id: str
    owner_id: str
    document_ids: Sequence[str]
    llm_config: LLMConfig | None
    system_prompt: str = ""
    temperature: float = 0.7
    max_tokens: int = 1024
    view_source_documents: bool = True
    visibility: ChatbotVisibility = ChatbotVisibility.PRIVATE
    name: str = ""
    shared_with: Sequence[str] = ()


@dataclass(frozen=True)
class HistoryMessage:
    role: Literal["user", "assistant"]
    content: str


@dataclass(frozen=True)
class Identity:
    """Conversation owner: an authenticated user or a public session."""

    kind: Literal["user", "session"]
    value: str

    @classmethod
    def user(cls, user_id: str) -> "Identity":
        return cls(kind="user", value=user_id)

    @classmethod
    def session(cls, session_id: str) -> "Identity":
        return cls(kind="session", value=session_id)

    @property
    def is_public(self) -> bool:
        return self.kind == "session"


@dataclass(frozen=True)
class ChunkRef:
    """A cited chunk, identified inside the document it belongs to."""

    document_id: str
    chunk_id: str

    @classmethod
    def of(cls, chunk: Chunk) -> "ChunkRef":
        return cls(document_id=chunk.document_id, chunk_id=chunk.chunk_id)


@dataclass(frozen=True)
class Message:
    role: Literal["user", "assistant"]
    content: str
    position: int
    timestamp: datetime
    sources: Sequence[ChunkRef] = ()

    @property
    def chunk_ids(self) -> tuple[str, ...]:
        return tuple(ref.chunk_id for ref in self.sources)


@dataclass(frozen=True)
class Conversation:
    id: str
    identity: Identity
    chatbot_id: str
    title: str
    messages: Sequence[Message]
    last_message_at: datetime
    created_at: datetime
    chatbot_owner_id: str | None = None

    @property
    def last_position(self) -> int:
        return self.messages[-1].position if self.messages else -1

    def history(self) -> list[HistoryMessage]:
        return [HistoryMessage(role=message.role, content=message.content) for message in self.messages]


@dataclass(frozen=True)
class DocumentRecord:
    id: str
    owner_id: str
    name: str
    description: str
    visibility: DocumentVisibility
    labels: Sequence[str]
    status: DocumentStatus
    chunk_count: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class UsageEvent:
    user_id: str
    provider: str
    model_name: str
    token_count: int
    event_type: UsageEventType
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ChatRequest:
    """Everything a single RAG call needs; the engine keeps no state between calls."""

    question: str
    document_filter: DocumentFilter
    llm_config: LLMConfig
    history: Sequence[HistoryMessage] = ()
    system_prompt: str = ""
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass(frozen=True)
class TurnUsage:
    """Token counts of one RAG call, attributed to the models that consumed them."""

    llm_provider: str
    llm_model: str
    input_tokens: int
    output_tokens: int
    embedding_provider: str
    embedding_model: str
    context_tokens: int

    def events(self, user_id: str) -> list[UsageEvent]:
        return [
            UsageEvent(user_id, self.llm_provider, self.llm_model, self.input_tokens, UsageEventType.LLM_INPUT),
            UsageEvent(user_id, self.llm_provider, self.llm_model, self.output_tokens, UsageEventType.LLM_OUTPUT),
            UsageEvent(
                user_id,
                self.embedding_provider,
                self.embedding_model,
                self.context_tokens,
                UsageEventType.QUERY_DOCUMENT,
            ),
        ]


@dataclass(frozen=True)
class ChatResult:
    response: str
    sources: Sequence[Chunk]
    usage: TurnUsage | None = None
