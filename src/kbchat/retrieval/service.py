"""Scoped retrieval built on top of the vector index."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Protocol, Sequence

from kbchat.embeddings.service import EmbeddingProvider
from kbchat.embeddings.store import VectorIndex
from kbchat.metrics.observability import get_logger
from kbchat.models import DocumentFilter, RetrievedChunk


@dataclass(frozen=True)
class RetrievalConfig:
    """Configuration for retrieval."""

    top_k: int = 4
    min_score: float = 0.3
    max_top_k: int | None = 20


class Retriever(Protocol):
    """Retrieve relevant chunks for a query string inside a document scope."""

    def retrieve(
        self,
        query: str,
        document_filter: DocumentFilter,
        *,
        top_k: int | None = None,
    ) -> Sequence[RetrievedChunk]:
        """Return retrieved chunks ordered by descending score."""


class ScopedRetriever:
    """Embeds the query with the index's provider and searches only inside the filter."""

    def __init__(
        self,
        embedding_provider: EmbeddingProvider,
        index: VectorIndex,
        config: RetrievalConfig | None = None,
    ) -> None:
        self._provider = embedding_provider
        self._index = index
        self._config = config or RetrievalConfig()
        self._logger = get_logger("retrieval")

    def retrieve(
        self,
        query: str,
        document_filter: DocumentFilter,
        *,
        top_k: int | None = None,
    ) -> Sequence[RetrievedChunk]:
        limit = top_k or self._config.top_k
        if self._config.max_top_k:
            limit = min(limit, self._config.max_top_k)
        limit = max(1, limit)

        vector = self._provider.embed(query)
        candidates = self._index.search(vector, document_filter, limit=limit)

        admitted: List[RetrievedChunk] = []
        for candidate in candidates:
            if not document_filter.contains(candidate.chunk.document_id):
                # Never let a chunk outside the chatbot's scope reach the prompt.
                self._logger.error(
                    "retrieval.scope_violation",
                    chunk_id=candidate.chunk.chunk_id,
                    document_id=candidate.chunk.document_id,
                )
                continue
            if candidate.score < self._config.min_score:
                continue
            admitted.append(candidate)
        admitted.sort(key=lambda item: item.score, reverse=True)
        self._logger.info(
            "retrieval.candidates",
            requested=limit,
            returned=len(candidates),
            admitted=len(admitted),
        )
        return admitted
