from __future__ import annotations

import re
from pathlib import Path
from typing import Callable, List, Optional, Sequence
from uuid import uuid4

import chromadb
import pytest

from kbchat.embeddings.store import ChromaVectorIndex
from kbchat.errors import ConfigurationError
from kbchat.metrics.usage import UsageMeter
from kbchat.models import HistoryMessage, LLMConfig, LLMProvider, SamplingConfig
from kbchat.storage.database import Database
from kbchat.storage.usage import UsageEventRepository

VOCABULARY = ("sky", "blue", "invoices", "due", "thirty", "days", "cats", "sleep", "refund", "policy")
_WORD = re.compile(r"[a-z]+")


class KeywordEmbeddingProvider:
    """One axis per vocabulary word plus a small bias axis so no vector is all zeros."""

    def __init__(self, vocabulary: Sequence[str] = VOCABULARY, *, dim: Optional[int] = None) -> None:
        self._vocabulary = list(vocabulary)
        self._dim = dim if dim is not None else len(self._vocabulary) + 1
        self.calls: List[Sequence[str]] = []

    def _vector(self, text: str) -> List[float]:
        words = set(_WORD.findall(text.lower()))
        vector = [1.0 if word in words else 0.0 for word in self._vocabulary] + [0.01]
        vector = vector[: self._dim]
        return vector + [0.0] * (self._dim - len(vector))

    def embed(self, text: str) -> List[float]:
        self.calls.append([text])
        return self._vector(text)

    def embed_documents(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        return [self._vector(text) for text in texts]

    def dimensions(self) -> int:
        return self._dim

    def model_name(self) -> str:
        return "keyword-test"

    def provider_name(self) -> str:
        return "test"

    def count_tokens(self, text: str) -> int:
        return len(text.split())


class FakeChatModel:
    def __init__(self, llm_config: LLMConfig, responder: Callable[[str], str]) -> None:
        self._llm_config = llm_config
        self._responder = responder
        self.calls: List[tuple[str, List[HistoryMessage], SamplingConfig | None]] = []

    def generate(
        self,
        prompt: str,
        history: Sequence[HistoryMessage] = (),
        sampling: SamplingConfig | None = None,
    ) -> str:
        self.calls.append((prompt, list(history), sampling))
        return self._responder(prompt)

    def count_tokens(self, text: str) -> int:
        return len(text.split())

    def model_name(self) -> str:
        return self._llm_config.model_name

    def provider_name(self) -> str:
        return LLMProvider(self._llm_config.provider).value


class FakeChatModelFactory:
    """Hands out ``FakeChatModel`` instances; the answer can be swapped per test."""

    def __init__(self, answer: str = "Invoices are due within thirty days.") -> None:
        self.answer = answer
        self.error: Optional[Exception] = None
        self.on_generate: Optional[Callable[[], None]] = None
        self.models: List[FakeChatModel] = []

    def _respond(self, prompt: str) -> str:
        if self.on_generate is not None:
            self.on_generate()
        if self.error is not None:
            raise self.error
        return self.answer

    def create(self, llm_config: LLMConfig) -> FakeChatModel:
        if not (llm_config.model_name or "").strip():
            raise ConfigurationError("LLM model name is required")
        model = FakeChatModel(llm_config, self._respond)
        self.models.append(model)
        return model

    @property
    def last(self) -> FakeChatModel:
        return self.models[-1]


@pytest.fixture()
def embedder() -> KeywordEmbeddingProvider:
    return KeywordEmbeddingProvider()


@pytest.fixture()
def chroma_client():
    return chromadb.EphemeralClient()


@pytest.fixture()
def index(embedder: KeywordEmbeddingProvider, chroma_client) -> ChromaVectorIndex:
    return ChromaVectorIndex(
        embedder,
        collection_name=f"test-{uuid4().hex}",
        client=chroma_client,
        backoff_seconds=0.0,
    )


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    return Database(tmp_path / "kbchat.sqlite3")


@pytest.fixture()
def chat_models() -> FakeChatModelFactory:
    return FakeChatModelFactory()


@pytest.fixture()
def usage_meter(database: Database):
    meter = UsageMeter(UsageEventRepository(database))
    yield meter
    meter.close()


@pytest.fixture()
def openai_config() -> LLMConfig:
    return LLMConfig(provider=LLMProvider.OPENAI, model_name="gpt-4o-mini", api_key="sk-test")
