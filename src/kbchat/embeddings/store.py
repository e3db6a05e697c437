"""Chroma-backed vector index for document chunks."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, MutableMapping, Optional, Protocol, Sequence, TypeVar
from uuid import uuid4

import chromadb
from chromadb.api import ClientAPI

from kbchat.embeddings.service import EmbeddingProvider
from kbchat.errors import EmbeddingDimensionError, IngestionError, RetrievalError, ValidationError
from kbchat.metrics.observability import get_logger
from kbchat.models import Chunk, DocumentFilter, IndexResult, RetrievedChunk, count_words, utcnow
from kbchat.resilience import call_with_timeout, retry_transient

T = TypeVar("T")

REQUIRED_METADATA = ("document_id", "chunk_id", "chunk_index")


class VectorIndex(Protocol):
    """Stores chunk vectors with document metadata; every query is scoped by document id."""

    def index_documents(self, texts: Sequence[str], metadata: Sequence[Mapping[str, Any]]) -> IndexResult:
        """Embed and store one entry per text; all or nothing."""

    def delete_documents(self, document_filter: DocumentFilter) -> None:
        """Remove every entry whose document_id is in the filter. Idempotent."""

    def get_chunks_by_document_id(self, document_id: str) -> Sequence[Chunk]:
        """Return a document's chunks in chunk_index order."""

    def get_chunks_by_ids(self, chunk_ids: Sequence[str], document_filter: DocumentFilter) -> Sequence[Chunk]:
        """Return the chunks inside the filter whose chunk_id is listed."""

    def search(self, vector: Sequence[float], document_filter: DocumentFilter, *, limit: int) -> Sequence[RetrievedChunk]:
        """Return up to ``limit`` most similar chunks inside the filter."""


class ChromaVectorIndex:
    """Vector index backed by a Chroma collection using cosine distance."""

    DIMENSION_KEY = "embedding_dim"

    def __init__(
        self,
        embedding_provider: EmbeddingProvider,
        collection_name: str = "documents",
        *,
        client: ClientAPI | None = None,
        persist_directory: str | Path | None = None,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
    ) -> None:
        if client is not None:
            self._client = client
        elif persist_directory is not None:
            self._client = chromadb.PersistentClient(path=str(persist_directory))
        else:
            self._client = chromadb.EphemeralClient()
        self._provider = embedding_provider
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._backoff = backoff_seconds
        self._logger = get_logger("vector_index")
        self._collection = self._open_collection(collection_name, embedding_provider.dimensions())
        self._dimension = self._collection_dimension(embedding_provider.dimensions())
        self._logger.info(
            "vector_index.ready",
            collection=collection_name,
            dimension=self._dimension,
            provider=embedding_provider.provider_name(),
        )

    # writes

    def index_documents(self, texts: Sequence[str], metadata: Sequence[Mapping[str, Any]]) -> IndexResult:
        if len(texts) != len(metadata):
            raise ValidationError(f"Got {len(texts)} texts but {len(metadata)} metadata entries")
        if not texts:
            return IndexResult(indexed_count=0, ids=[])
        for entry in metadata:
            missing = [key for key in REQUIRED_METADATA if entry.get(key) is None]
            if missing:
                raise ValidationError(f"Chunk metadata is missing {', '.join(missing)}")

        document_ids = sorted({str(entry["document_id"]) for entry in metadata})
        self._logger.info("vector_index.indexing", text_count=len(texts), document_ids=document_ids)

        # Every vector exists before anything is written.
        vectors = self._provider.embed_documents(list(texts))
        if len(vectors) != len(texts):
            raise IngestionError("Embedding provider returned a different number of vectors than texts")
        for vector in vectors:
            self._ensure_dimension(len(vector))

        created_at = utcnow().isoformat()
        ids = [str(uuid4()) for _ in texts]
        metadatas = [self._serialize_metadata(text, entry, created_at) for text, entry in zip(texts, metadata)]

        written: List[str] = []
        try:
            for start in range(0, len(ids), self._batch_size()):
                stop = start + self._batch_size()
                batch_ids = ids[start:stop]
                written.extend(batch_ids)
                self._with_deadline(
                    lambda: self._collection.add(
                        ids=batch_ids,
                        embeddings=[list(vector) for vector in vectors[start:stop]],
                        documents=list(texts[start:stop]),
                        metadatas=metadatas[start:stop],
                    ),
                    name="vector_index.add",
                    on_abandoned=lambda batch=batch_ids: self._discard_late(batch),
                )
        except Exception as exc:
            self._logger.error("vector_index.write_failed", written=len(written), error=str(exc))
            self._discard(written)
            raise IngestionError(f"Failed to write {len(ids)} vectors: {exc}") from exc

        self._logger.info("vector_index.indexing_complete", indexed_count=len(ids))
        return IndexResult(indexed_count=len(ids), ids=ids)

    def delete_documents(self, document_filter: DocumentFilter) -> None:
        if not document_filter.document_ids:
            return
        self._logger.info("vector_index.deleting", document_ids=list(document_filter.document_ids))
        where = document_filter.to_where()
        self._read(lambda: self._collection.delete(where=where), name="vector_index.delete")
        self._logger.info("vector_index.delete_complete")

    # reads

    def search(self, vector: Sequence[float], document_filter: DocumentFilter, *, limit: int) -> Sequence[RetrievedChunk]:
        if limit <= 0 or not document_filter.document_ids:
            return []
        self._ensure_dimension(len(vector))
        results = self._read(
            lambda: self._collection.query(
                query_embeddings=[list(vector)],
                n_results=limit,
                where=document_filter.to_where(),
                include=["documents", "metadatas", "distances"],
            ),
            name="vector_index.query",
        )
        ids = self._first(results.get("ids"))
        documents = self._first(results.get("documents"))
        metadatas = self._first(results.get("metadatas"))
        distances = self._first(results.get("distances"))
        retrieved: List[RetrievedChunk] = []
        for position, vector_id in enumerate(ids):
            metadata = metadatas[position] if position < len(metadatas) else {}
            document = documents[position] if position < len(documents) else ""
            distance = distances[position] if position < len(distances) else None
            score = 1.0 - float(distance) if distance is not None else 0.0
            retrieved.append(RetrievedChunk(chunk=self._deserialize_chunk(vector_id, document, metadata), score=score))
        return retrieved

    def get_chunks_by_document_id(self, document_id: str) -> Sequence[Chunk]:
        chunks = self._get(DocumentFilter.single(document_id).to_where())
        chunks.sort(key=lambda chunk: chunk.chunk_index)
        self._logger.info("vector_index.chunks_by_document", document_id=document_id, chunk_count=len(chunks))
        return chunks

    def get_chunks_by_ids(self, chunk_ids: Sequence[str], document_filter: DocumentFilter) -> Sequence[Chunk]:
        wanted = list(dict.fromkeys(chunk_ids))
        if not wanted or not document_filter.document_ids:
            return []
        by_chunk: Dict[str, Any] = {"chunk_id": wanted[0]} if len(wanted) == 1 else {"chunk_id": {"$in": wanted}}
        return self._get({"$and": [by_chunk, document_filter.to_where()]})

    def count(self) -> int:
        return int(self._read(lambda: self._collection.count(), name="vector_index.count"))

    @property
    def dimension(self) -> int | None:
        return self._dimension

    # helpers

    def _get(self, where: Mapping[str, Any]) -> List[Chunk]:
        results = self._read(
            lambda: self._collection.get(where=dict(where), include=["documents", "metadatas"]),
            name="vector_index.get",
        )
        ids = results.get("ids") or []
        documents = results.get("documents") or []
        metadatas = results.get("metadatas") or []
        return [
            self._deserialize_chunk(vector_id, documents[position], metadatas[position])
            for position, vector_id in enumerate(ids)
        ]

    def _read(self, operation: Callable[[], T], *, name: str) -> T:
        try:
            return retry_transient(
                lambda: self._with_deadline(operation, name=name),
                name=name,
                max_attempts=self._max_retries,
                backoff_seconds=self._backoff,
            )
        except (ValueError, TypeError) as exc:
            raise RetrievalError(f"Vector store rejected {name}: {exc}") from exc
        except (ConnectionError, TimeoutError) as exc:
            raise RetrievalError(f"Vector store unavailable during {name}: {exc}") from exc

    def _with_deadline(
        self,
        operation: Callable[[], T],
        *,
        name: str,
        on_abandoned: Optional[Callable[[], None]] = None,
    ) -> T:
        return call_with_timeout(operation, timeout_seconds=self._timeout, name=name, on_abandoned=on_abandoned)

    def _discard(self, ids: Sequence[str]) -> None:
        if not ids:
            return
        try:
            self._collection.delete(ids=list(ids))
        except Exception as exc:
            self._logger.error("vector_index.compensation_failed", ids=len(ids), error=str(exc))

    def _discard_late(self, ids: Sequence[str]) -> None:
        # The add outlived its deadline and may have committed after the first cleanup.
        self._logger.warning("vector_index.late_write_discarded", ids=len(ids))
        self._discard(ids)

    def _open_collection(self, name: str, dimension: int):
        # An existing collection keeps the metadata it was created with.
        try:
            return self._client.get_collection(name=name)
        except Exception:  # missing collection; the exception type differs across chromadb releases
            pass
        return self._client.get_or_create_collection(
            name=name,
            metadata={"hnsw:space": "cosine", self.DIMENSION_KEY: dimension},
        )

    def _batch_size(self) -> int:
        getter = getattr(self._client, "get_max_batch_size", None)
        try:
            size = int(getter()) if callable(getter) else 0
        except Exception:
            size = 0
        return size if size > 0 else 1000

    def _collection_dimension(self, default: int) -> int | None:
        metadata = self._collection.metadata or {}
        value = metadata.get(self.DIMENSION_KEY)
        return int(value) if value is not None else default

    def _ensure_dimension(self, size: int) -> None:
        if self._dimension is not None and size != self._dimension:
            raise EmbeddingDimensionError(
                f"Vector has {size} dimensions but the index was built with {self._dimension}"
            )

    @staticmethod
    def _serialize_metadata(text: str, entry: Mapping[str, Any], created_at: str) -> MutableMapping[str, Any]:
        metadata: MutableMapping[str, Any] = {"created_at": created_at}
        for key, value in entry.items():
            if value is None:
                continue
            if isinstance(value, datetime):
                value = value.isoformat()
            elif not isinstance(value, (str, int, float, bool)):
                value = str(value)
            metadata[key] = value
        metadata["document_id"] = str(entry["document_id"])
        metadata["chunk_id"] = str(entry["chunk_id"])
        metadata["chunk_index"] = int(entry["chunk_index"])
        metadata.setdefault("character_count", len(text))
        metadata.setdefault("word_count", count_words(text))
        return metadata

    @staticmethod
    def _deserialize_chunk(vector_id: str, document: str | None, metadata: Mapping[str, Any] | None) -> Chunk:
        metadata = metadata or {}
        text = document or ""
        return Chunk(
            chunk_id=str(metadata.get("chunk_id", vector_id)),
            content=text,
            chunk_index=int(metadata.get("chunk_index", 0)),
            document_id=str(metadata.get("document_id", "")),
            metadata={
                "document_id": metadata.get("document_id"),
                "user_id": metadata.get("user_id"),
                "created_at": metadata.get("created_at"),
                "characterCount": int(metadata.get("character_count", len(text))),
                "wordCount": int(metadata.get("word_count", count_words(text))),
            },
        )

    @staticmethod
    def _first(value: object) -> list:
        if isinstance(value, list):
            return list(value[0]) if value and value[0] is not None else []
        return []
