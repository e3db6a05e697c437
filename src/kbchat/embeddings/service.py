"""Embedding providers for kbchat."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Protocol, Sequence

import httpx
from langchain_core.embeddings import Embeddings as LangChainEmbeddings
from langchain_openai import OpenAIEmbeddings

from kbchat.errors import ConfigurationError, ProviderError
from kbchat.metrics.observability import get_logger
from kbchat.resilience import raise_for_transient_status, retry_transient
from kbchat.tokens import TokenCounter

LOGGER = get_logger("embeddings")

# Embedding token usage is approximated with the chat tokenizer family.
TOKEN_MODEL_FAMILY = "gpt-3.5-turbo"


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration shared by embedding providers."""

    model: str
    dim: int
    timeout_seconds: float = 30.0
    max_retries: int = 3
    backoff_seconds: float = 0.5


class EmbeddingProvider(Protocol):
    """Produces fixed-dimension vectors for text."""

    def embed(self, text: str) -> List[float]:
        """Return the embedding vector for a query string."""

    def embed_documents(self, texts: Sequence[str]) -> List[List[float]]:
        """Return one vector per text, in order."""

    def dimensions(self) -> int:
        ...

    def model_name(self) -> str:
        ...

    def provider_name(self) -> str:
        ...

    def count_tokens(self, text: str) -> int:
        ...


class _LangChainEmbeddingProvider:
    """Adapts a LangChain ``Embeddings`` client to ``EmbeddingProvider``."""

    provider = ""

    def __init__(self, config: EmbeddingConfig, token_counter: TokenCounter | None = None) -> None:
        self._config = config
        self._tokens = token_counter or TokenCounter()

    def _client(self) -> LangChainEmbeddings:
        raise NotImplementedError

    def embed(self, text: str) -> List[float]:
        vector = list(self._client().embed_query(text))
        self._check_dim(vector)
        return vector

    def embed_documents(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        vectors = [list(vector) for vector in self._client().embed_documents(list(texts))]
        if len(vectors) != len(texts):
            LOGGER.error("embeddings.count_mismatch", texts=len(texts), vectors=len(vectors))
            raise ProviderError("Mismatch between number of texts and embedding vectors")
        for vector in vectors:
            self._check_dim(vector)
        return vectors

    def dimensions(self) -> int:
        return self._config.dim

    def model_name(self) -> str:
        return self._config.model

    def provider_name(self) -> str:
        return self.provider

    def count_tokens(self, text: str) -> int:
        return self._tokens.count_tokens(text, TOKEN_MODEL_FAMILY)

    def _check_dim(self, vector: Sequence[float]) -> None:
        if len(vector) != self._config.dim:
            LOGGER.error(
                "embeddings.dim_mismatch",
                provider=self.provider,
                configured=self._config.dim,
                actual=len(vector),
            )
            raise ProviderError(
                f"Embedding model {self._config.model} returned {len(vector)} dimensions, expected {self._config.dim}"
            )


class OpenAIEmbeddingProvider(_LangChainEmbeddingProvider):
    """Hosted embedding API variant."""

    provider = "openai"

    def __init__(
        self,
        config: EmbeddingConfig,
        api_key: str,
        *,
        http_client: httpx.Client | None = None,
        token_counter: TokenCounter | None = None,
    ) -> None:
        super().__init__(config, token_counter)
        self._api_key = (api_key or "").strip()
        self._http_client = http_client
        self._embeddings: OpenAIEmbeddings | None = None

    def _client(self) -> LangChainEmbeddings:
        if not self._api_key:
            raise ConfigurationError(
                "OPENAI_API_KEY is not configured. Set KBCHAT_OPENAI_API_KEY to use OpenAI embeddings."
            )
        if self._embeddings is None:
            kwargs = {}
            if self._http_client is not None:
                kwargs["http_client"] = self._http_client
            # The OpenAI client applies its own bounded backoff; embedding calls are idempotent.
            self._embeddings = OpenAIEmbeddings(
                model=self._config.model,
                api_key=self._api_key,
                dimensions=None,
                timeout=self._config.timeout_seconds,
                max_retries=self._config.max_retries,
                check_embedding_ctx_length=False,
                **kwargs,
            )
        return self._embeddings


class TEIEmbeddings(LangChainEmbeddings):
    """Client for a text-embeddings-inference server (``POST /embed``)."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            transport=transport,
        )
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds

    def _post_embed(self, texts: List[str]) -> List[List[float]]:
        def call() -> List[List[float]]:
            response = self._client.post("/embed", json={"inputs": texts, "truncate": True})
            raise_for_transient_status(response)
            return response.json()

        try:
            payload = retry_transient(
                call,
                name="tei.embed",
                max_attempts=self._max_retries,
                backoff_seconds=self._backoff_seconds,
            )
        except httpx.HTTPError as exc:
            raise ProviderError(f"Embedding service request failed: {exc}") from exc
        if not isinstance(payload, list) or not all(isinstance(row, list) for row in payload):
            raise ProviderError("Embedding service returned an unexpected payload")
        return [[float(value) for value in row] for row in payload]

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        return self._post_embed(texts)

    def embed_query(self, text: str) -> List[float]:
        return self._post_embed([text])[0]

    def close(self) -> None:
        self._client.close()


class LocalEmbeddingProvider(_LangChainEmbeddingProvider):
    """Self-hosted embedding variant backed by a fixed TEI endpoint."""

    provider = "docker-tei"

    def __init__(
        self,
        config: EmbeddingConfig,
        service_url: str,
        *,
        transport: httpx.BaseTransport | None = None,
        token_counter: TokenCounter | None = None,
    ) -> None:
        super().__init__(config, token_counter)
        self._service_url = service_url
        self._embeddings = TEIEmbeddings(
            service_url,
            timeout_seconds=config.timeout_seconds,
            max_retries=config.max_retries,
            backoff_seconds=config.backoff_seconds,
            transport=transport,
        )
        LOGGER.info("embeddings.tei_initialized", service_url=service_url, model=config.model)

    def _client(self) -> LangChainEmbeddings:
        return self._embeddings
