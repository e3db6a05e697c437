"""Process-wide wiring of kbchat services."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import chromadb
import httpx
from chromadb.api import ClientAPI

from kbchat.config import Settings, get_settings
from kbchat.embeddings.factory import EmbeddingProviderFactory
from kbchat.embeddings.service import EmbeddingProvider
from kbchat.embeddings.store import ChromaVectorIndex
from kbchat.ingestion.service import DocumentIngestionService, IngestionConfig
from kbchat.metrics.observability import get_logger
from kbchat.metrics.usage import UsageMeter
from kbchat.retrieval.service import RetrievalConfig, ScopedRetriever
from kbchat.services.chat import ChatService
from kbchat.services.generation import ChatModelFactory, GenerationConfig
from kbchat.services.rag import RAGConfig, RAGEngine
from kbchat.storage.database import Database
from kbchat.storage.usage import UsageEventRepository
from kbchat.tokens import TokenCounter


@dataclass(frozen=True)
class ServiceRegistry:
    settings: Settings
    database: Database
    embedding_provider: EmbeddingProvider
    index: ChromaVectorIndex
    retriever: ScopedRetriever
    chat_models: ChatModelFactory
    engine: RAGEngine
    usage_meter: UsageMeter
    ingestion: DocumentIngestionService
    chat: ChatService

    def close(self) -> None:
        self.usage_meter.close()


def _chroma_client(settings: Settings) -> ClientAPI:
    if settings.chroma_host:
        return chromadb.HttpClient(
            host=settings.chroma_host,
            port=settings.chroma_port or 8000,
            ssl=settings.chroma_ssl,
        )
    return chromadb.PersistentClient(path=str(settings.chroma_persist_dir))


def build_registry(
    settings: Settings | None = None,
    *,
    embedding_provider: Optional[EmbeddingProvider] = None,
    chroma_client: Optional[ClientAPI] = None,
    chat_models: Optional[ChatModelFactory] = None,
    http_client: Optional[httpx.Client] = None,
) -> ServiceRegistry:
    """Construct every service once for the process lifetime."""

    settings = settings or get_settings()
    logger = get_logger("registry")
    tokens = TokenCounter()

    database = Database(settings.database_path)
    provider = embedding_provider or EmbeddingProviderFactory(settings, token_counter=tokens).get()
    index = ChromaVectorIndex(
        provider,
        collection_name=settings.chroma_collection,
        client=chroma_client or _chroma_client(settings),
        timeout_seconds=settings.vector_timeout_seconds,
        max_retries=settings.transient_max_retries,
        backoff_seconds=settings.transient_backoff_seconds,
    )
    retriever = ScopedRetriever(
        provider,
        index,
        RetrievalConfig(top_k=settings.retrieval_top_k, min_score=settings.retrieval_min_score),
    )
    models = chat_models or ChatModelFactory(
        GenerationConfig(
            timeout_seconds=settings.generation_timeout_seconds,
            in_container=settings.in_container,
            host_gateway_alias=settings.host_gateway_alias,
        ),
        http_client=http_client,
        token_counter=tokens,
    )
    engine = RAGEngine(
        retriever,
        provider,
        models,
        config=RAGConfig(
            context_window_tokens=settings.context_window_tokens,
            default_max_tokens=settings.default_max_tokens,
            top_k=settings.retrieval_top_k,
        ),
    )
    usage_meter = UsageMeter(UsageEventRepository(database))
    ingestion = DocumentIngestionService(
        database,
        index,
        provider,
        usage_meter,
        config=IngestionConfig(max_chunks_per_document=settings.max_chunks_per_document),
    )
    chat = ChatService(database, engine, index, usage_meter)
    logger.info(
        "registry.ready",
        embedding_provider=provider.provider_name(),
        embedding_model=provider.model_name(),
        database=str(settings.database_path),
        in_container=settings.in_container,
    )
    return ServiceRegistry(
        settings=settings,
        database=database,
        embedding_provider=provider,
        index=index,
        retriever=retriever,
        chat_models=models,
        engine=engine,
        usage_meter=usage_meter,
        ingestion=ingestion,
        chat=chat,
    )
