"""Runtime configuration for the kbchat services."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="kbchat_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"
    log_level: str = "INFO"

    # Relational state (documents, conversations, usage events)
    database_path: Path = Path("./data/kbchat.sqlite3")

    chroma_persist_dir: Path = Path("./.chroma")
    chroma_collection: str = "documents"
    chroma_host: str | None = None
    chroma_port: int | None = None
    chroma_ssl: bool = False

    # Embedding variant is fixed for the process lifetime
    use_local_embedding: bool = False
    openai_api_key: str = ""
    openai_embedding_model: str = "text-embedding-3-small"
    openai_embedding_dim: int = 1536
    embedding_service_url: str = "http://embeddings:80"
    embedding_local_model: str = "BAAI/bge-base-en-v1.5"
    embedding_local_dim: int = 768

    # Network bounds
    embedding_timeout_seconds: float = 30.0
    generation_timeout_seconds: float = 120.0
    vector_timeout_seconds: float = 30.0
    transient_max_retries: int = 3
    transient_backoff_seconds: float = 0.5

    # Self-hosted model reachability from inside a container
    running_in_container: bool | None = None
    host_gateway_alias: str = "host.docker.internal"

    retrieval_top_k: int = 4
    retrieval_min_score: float = 0.3
    context_window_tokens: int = 8192
    default_max_tokens: int = 1024

    # API
    cors_allow_origins: tuple[str, ...] = ()
    cors_allow_credentials: bool = False
    cors_allow_methods: tuple[str, ...] = ("GET", "POST", "PATCH", "DELETE", "OPTIONS")
    cors_allow_headers: tuple[str, ...] = ("*",)
    max_chunks_per_document: int = 5000

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def in_container(self) -> bool:
        if self.running_in_container is not None:
            return self.running_in_container
        return Path("/.dockerenv").exists()

    @property
    def embedding_dim(self) -> int:
        return self.embedding_local_dim if self.use_local_embedding else self.openai_embedding_dim


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
