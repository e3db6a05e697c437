"""Document ingestion: records plus vector indexing of pre-chunked content."""

from .service import DocumentIngestionService, IngestionConfig, validate_chunks

__all__ = ["DocumentIngestionService", "IngestionConfig", "validate_chunks"]
