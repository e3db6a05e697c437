"""Retrieval components."""

from .service import RetrievalConfig, Retriever, ScopedRetriever

__all__ = ["RetrievalConfig", "Retriever", "ScopedRetriever"]
