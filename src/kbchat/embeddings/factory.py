"""Selects the process-wide embedding provider from configuration."""

from __future__ import annotations

import threading

import httpx

from kbchat.config import Settings
from kbchat.embeddings.service import (
    EmbeddingConfig,
    EmbeddingProvider,
    LocalEmbeddingProvider,
    OpenAIEmbeddingProvider,
)
from kbchat.tokens import TokenCounter


class EmbeddingProviderFactory:
    """Maps ``use_local_embedding`` to a provider, created lazily once per variant."""

    def __init__(
        self,
        settings: Settings,
        *,
        token_counter: TokenCounter | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._tokens = token_counter or TokenCounter()
        self._transport = transport
        self._instances: dict[bool, EmbeddingProvider] = {}
        self._lock = threading.Lock()

    def get(self) -> EmbeddingProvider:
        local = self._settings.use_local_embedding
        with self._lock:
            provider = self._instances.get(local)
            if provider is None:
                provider = self._build_local() if local else self._build_hosted()
                self._instances[local] = provider
            return provider

    def _build_hosted(self) -> EmbeddingProvider:
        settings = self._settings
        http_client = httpx.Client(transport=self._transport) if self._transport is not None else None
        return OpenAIEmbeddingProvider(
            EmbeddingConfig(
                model=settings.openai_embedding_model,
                dim=settings.openai_embedding_dim,
                timeout_seconds=settings.embedding_timeout_seconds,
                max_retries=settings.transient_max_retries,
                backoff_seconds=settings.transient_backoff_seconds,
            ),
            settings.openai_api_key,
            http_client=http_client,
            token_counter=self._tokens,
        )

    def _build_local(self) -> EmbeddingProvider:
        settings = self._settings
        return LocalEmbeddingProvider(
            EmbeddingConfig(
                model=settings.embedding_local_model,
                dim=settings.embedding_local_dim,
                timeout_seconds=settings.embedding_timeout_seconds,
                max_retries=settings.transient_max_retries,
                backoff_seconds=settings.transient_backoff_seconds,
            ),
            settings.embedding_service_url,
            transport=self._transport,
            token_counter=self._tokens,
        )
