"""Embedding providers and the vector index."""

from .factory import EmbeddingProviderFactory
from .service import (
    EmbeddingConfig,
    EmbeddingProvider,
    LocalEmbeddingProvider,
    OpenAIEmbeddingProvider,
    TEIEmbeddings,
)
from .store import ChromaVectorIndex, VectorIndex

__all__ = [
    "ChromaVectorIndex",
    "EmbeddingConfig",
    "EmbeddingProvider",
    "EmbeddingProviderFactory",
    "LocalEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "TEIEmbeddings",
    "VectorIndex",
]
