"""Document lifecycle: record, index, edit and delete chunked documents."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from kbchat.embeddings.service import EmbeddingProvider
from kbchat.embeddings.store import VectorIndex
from kbchat.errors import ForbiddenError, IngestionError, KBChatError, NotFoundError, ValidationError
from kbchat.metrics.observability import PipelineMetrics, TimedSection, get_logger
from kbchat.metrics.usage import UsageMeter
from kbchat.models import (
    Chunk,
    ChunkPayload,
    DocumentFilter,
    DocumentRecord,
    DocumentStatus,
    DocumentVisibility,
    UsageEventType,
    count_words,
)
from kbchat.storage.database import Database
from kbchat.storage.documents import DocumentRepository


@dataclass(frozen=True)
class IngestionConfig:
    """Limits applied to incoming chunk payloads."""

    max_chunks_per_document: int = 5000


def validate_chunks(chunks: Sequence[ChunkPayload], *, max_chunks: int) -> List[ChunkPayload]:
    """Return chunks ordered by index after checking the payload is well formed.

    Indices must be contiguous from 0, ids unique and content non-empty.
    """

    if not chunks:
        raise ValidationError("A document needs at least one chunk")
    if len(chunks) > max_chunks:
        raise ValidationError(f"A document may have at most {max_chunks} chunks, got {len(chunks)}")
    ordered = sorted(chunks, key=lambda chunk: chunk.index)
    seen_ids: set[str] = set()
    for expected, chunk in enumerate(ordered):
        if chunk.index != expected:
            raise ValidationError(f"Chunk indices must be contiguous from 0; expected {expected}, got {chunk.index}")
        if not chunk.id:
            raise ValidationError(f"Chunk {chunk.index} has no id")
        if chunk.id in seen_ids:
            raise ValidationError(f"Duplicate chunk id: {chunk.id}")
        seen_ids.add(chunk.id)
        if not chunk.content.strip():
            raise ValidationError(f"Chunk {chunk.id} has empty content")
    return ordered


class DocumentIngestionService:
    """Owns document records and keeps the vector index in step with them."""

    def __init__(
        self,
        database: Database,
        index: VectorIndex,
        embedding_provider: EmbeddingProvider,
        usage_meter: Optional[UsageMeter] = None,
        *,
        documents: Optional[DocumentRepository] = None,
        config: IngestionConfig | None = None,
    ) -> None:
        self._database = database
        self._index = index
        self._embedding = embedding_provider
        self._usage = usage_meter
        self._documents = documents or DocumentRepository()
        self._config = config or IngestionConfig()
        self._logger = get_logger("ingestion")

    def create_document(
        self,
        owner_id: str,
        *,
        name: str,
        chunks: Sequence[ChunkPayload],
        description: str = "",
        labels: Sequence[str] = (),
        visibility: DocumentVisibility = DocumentVisibility.PRIVATE,
    ) -> DocumentRecord:
        if not name.strip():
            raise ValidationError("Document name is required")
        ordered = validate_chunks(chunks, max_chunks=self._config.max_chunks_per_document)

        with self._database.session() as session:
            record = self._documents.create(
                session,
                owner_id=owner_id,
                name=name,
                description=description,
                labels=labels,
                visibility=DocumentVisibility(visibility),
            )
        self._logger.info("ingestion.document_created", document_id=record.id, chunk_count=len(ordered))

        texts = [chunk.content for chunk in ordered]
        metadata = [
            {
                "document_id": record.id,
                "user_id": owner_id,
                "chunk_id": chunk.id,
                "chunk_index": chunk.index,
                "character_count": chunk.character_count if chunk.character_count is not None else len(chunk.content),
                "word_count": chunk.word_count if chunk.word_count is not None else count_words(chunk.content),
            }
            for chunk in ordered
        ]
        try:
            with TimedSection() as timer:
                result = self._index.index_documents(texts, metadata)
        except Exception as exc:
            self._mark(record.id, DocumentStatus.FAILED)
            self._logger.error("ingestion.index_failed", document_id=record.id, error=str(exc))
            if isinstance(exc, KBChatError):
                raise
            raise IngestionError(f"Failed to index document {record.id}: {exc}") from exc

        PipelineMetrics.observe_indexing(timer.duration, result.indexed_count)
        self._mark(record.id, DocumentStatus.INDEXED, chunk_count=result.indexed_count)
        self._logger.info(
            "ingestion.indexed",
            document_id=record.id,
            indexed_count=result.indexed_count,
            duration_seconds=timer.duration,
        )
        if self._usage is not None:
            self._usage.record(
                owner_id,
                self._embedding.provider_name(),
                self._embedding.model_name(),
                sum(self._embedding.count_tokens(text) for text in texts),
                UsageEventType.CREATE_DOCUMENT_INDEX,
            )
        return self._load(record.id)

    def get_document(self, requester_id: str, document_id: str) -> Tuple[DocumentRecord, Sequence[Chunk]]:
        record = self._load(document_id)
        if record.owner_id != requester_id and record.visibility != DocumentVisibility.PUBLIC:
            raise ForbiddenError("You do not have access to this document")
        return record, self._index.get_chunks_by_document_id(document_id)

    def get_chunks(self, requester_id: str, document_id: str) -> Sequence[Chunk]:
        _, chunks = self.get_document(requester_id, document_id)
        return chunks

    def update_document(
        self,
        owner_id: str,
        document_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        labels: Optional[Sequence[str]] = None,
        visibility: Optional[DocumentVisibility] = None,
    ) -> DocumentRecord:
        if name is not None and not name.strip():
            raise ValidationError("Document name must not be empty")
        with self._database.session() as session:
            self._owned(session, owner_id, document_id)
            self._documents.update(
                session,
                document_id,
                name=name,
                description=description,
                labels=labels,
                visibility=visibility,
            )
        self._logger.info("ingestion.document_updated", document_id=document_id)
        return self._load(document_id)

    def delete_document(self, owner_id: str, document_id: str) -> None:
        with self._database.session() as session:
            self._owned(session, owner_id, document_id)
        # Vectors go first; a failure here leaves the record in place so the delete can be retried.
        self._index.delete_documents(DocumentFilter.single(document_id))
        with self._database.session() as session:
            self._documents.delete(session, document_id)
        self._logger.info("ingestion.document_deleted", document_id=document_id)

    def list_documents(
        self,
        owner_id: str,
        *,
        page: int = 1,
        limit: int = 20,
        search: str = "",
        labels: Sequence[str] = (),
    ) -> Dict[str, object]:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        with self._database.session() as session:
            items, total = self._documents.list_by_owner(
                session,
                owner_id,
                page=page,
                limit=limit,
                search=search,
                labels=labels,
            )
        return {
            "items": items,
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": (total + limit - 1) // limit,
        }

    def unique_labels(self, owner_id: str) -> List[str]:
        with self._database.session() as session:
            return self._documents.unique_labels(session, owner_id)

    def _owned(self, session, owner_id: str, document_id: str) -> DocumentRecord:
        record = self._documents.get(session, document_id)
        if record is None:
            raise NotFoundError("Document not found")
        if record.owner_id != owner_id:
            raise ForbiddenError("Only the owner can modify this document")
        return record

    def _load(self, document_id: str) -> DocumentRecord:
        with self._database.session() as session:
            record = self._documents.get(session, document_id)
        if record is None:
            raise NotFoundError("Document not found")
        return record

    def _mark(self, document_id: str, status: DocumentStatus, *, chunk_count: Optional[int] = None) -> None:
        with self._database.session() as session:
            self._documents.set_status(session, document_id, status, chunk_count=chunk_count)
