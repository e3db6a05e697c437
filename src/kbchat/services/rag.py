"""RAG orchestration: retrieve, budget, prompt, generate, attribute."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

from kbchat.embeddings.service import EmbeddingProvider
from kbchat.metrics.observability import PipelineMetrics, TimedSection, get_logger
from kbchat.models import ChatRequest, ChatResult, HistoryMessage, RetrievedChunk, SamplingConfig, TurnUsage
from kbchat.retrieval.service import Retriever
from kbchat.services.generation import ChatModelFactory, ChatModelProvider

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant. Use the following pieces of context to answer the question at the end."
)
GROUNDING_RULE = "If you don't know the answer, just say that you don't know, don't try to make up an answer."

# Per-message overhead of chat formatting (role markers, separators).
MESSAGE_OVERHEAD_TOKENS = 4


@dataclass(frozen=True)
class PromptBuilderConfig:
    """Configuration for prompt construction."""

    citation_prefix: str = "[chunk:"
    citation_suffix: str = "]"


class PromptBuilder:
    """Builds the single grounded prompt sent with each question."""

    def __init__(self, config: PromptBuilderConfig | None = None) -> None:
        self._config = config or PromptBuilderConfig()

    def build_context(self, chunks: Sequence[RetrievedChunk]) -> str:
        return "\n\n".join(self.format_chunk(item) for item in chunks)

    def format_chunk(self, item: RetrievedChunk) -> str:
        tag = f"{self._config.citation_prefix}{item.chunk.chunk_id}{self._config.citation_suffix}"
        return f"{tag} {item.chunk.content}"

    def build(self, *, system_prompt: str, chunks: Sequence[RetrievedChunk], question: str) -> str:
        instructions = (system_prompt or "").strip() or DEFAULT_SYSTEM_PROMPT
        context = self.build_context(chunks)
        return (
            f"{instructions}\n\n"
            f"{GROUNDING_RULE}\n\n"
            f"Context:\n{context}\n\n"
            f"Question: {question}\n"
            "Helpful Answer:"
        )


@dataclass(frozen=True)
class RAGConfig:
    context_window_tokens: int = 8192
    default_max_tokens: int = 1024
    top_k: int | None = None


class ContextBudget:
    """Fits retrieved chunks and conversation history under the model's context window.

    The completion reservation (``max_tokens``) is subtracted first. Chunks are
    admitted in score order ahead of history; history is then filled newest
    first, so the oldest turns are the first to be dropped.
    """

    def __init__(self, model: ChatModelProvider, builder: PromptBuilder, window_tokens: int) -> None:
        self._model = model
        self._builder = builder
        self._window = window_tokens

    def fit(
        self,
        *,
        system_prompt: str,
        question: str,
        chunks: Sequence[RetrievedChunk],
        history: Sequence[HistoryMessage],
        max_tokens: int,
    ) -> Tuple[List[RetrievedChunk], List[HistoryMessage]]:
        available = self._window - max(max_tokens, 0)
        used = self._model.count_tokens(self._builder.build(system_prompt=system_prompt, chunks=[], question=question))
        used += MESSAGE_OVERHEAD_TOKENS

        admitted: List[RetrievedChunk] = []
        for item in chunks:
            cost = self._model.count_tokens(self._builder.format_chunk(item)) + 1
            if used + cost > available:
                break
            admitted.append(item)
            used += cost

        kept: List[HistoryMessage] = []
        for turn in reversed(history):
            cost = self._model.count_tokens(turn.content) + MESSAGE_OVERHEAD_TOKENS
            if used + cost > available:
                break
            kept.append(turn)
            used += cost
        kept.reverse()
        return admitted, kept


class RAGEngine:
    """Answers one question against a document scope. Holds no per-conversation state."""

    def __init__(
        self,
        retriever: Retriever,
        embedding_provider: EmbeddingProvider,
        chat_models: ChatModelFactory,
        prompt_builder: PromptBuilder | None = None,
        config: RAGConfig | None = None,
    ) -> None:
        self._retriever = retriever
        self._embedding = embedding_provider
        self._chat_models = chat_models
        self._prompt_builder = prompt_builder or PromptBuilder()
        self._config = config or RAGConfig()
        self._logger = get_logger("rag")

    def chat(self, request: ChatRequest) -> ChatResult:
        # Configuration errors surface before any network call.
        model = self._chat_models.create(request.llm_config)
        max_tokens = request.max_tokens or self._config.default_max_tokens

        self._logger.info(
            "rag.question",
            question=request.question,
            document_ids=list(request.document_filter.document_ids),
        )
        with TimedSection() as retrieval_timer:
            retrieved = self._retriever.retrieve(
                request.question,
                request.document_filter,
                top_k=self._config.top_k,
            )

        budget = ContextBudget(model, self._prompt_builder, self._config.context_window_tokens)
        chunks, history = budget.fit(
            system_prompt=request.system_prompt,
            question=request.question,
            chunks=retrieved,
            history=request.history,
            max_tokens=max_tokens,
        )
        PipelineMetrics.observe_retrieval(
            retrieval_timer.duration,
            len(chunks),
            (item.score for item in chunks),
        )
        self._logger.info(
            "retrieval.complete",
            retrieved=len(retrieved),
            admitted=len(chunks),
            history_turns=len(history),
            dropped_history_turns=len(request.history) - len(history),
            duration_seconds=retrieval_timer.duration,
        )
        for position, item in enumerate(chunks, start=1):
            self._logger.debug(
                "retrieval.source",
                rank=position,
                chunk_id=item.chunk.chunk_id,
                document_id=item.chunk.document_id,
                score=item.score,
                preview=item.chunk.content[:100],
            )

        prompt = self._prompt_builder.build(
            system_prompt=request.system_prompt,
            chunks=chunks,
            question=request.question,
        )
        with TimedSection(PipelineMetrics.observe_generation) as generation_timer:
            response = model.generate(
                prompt,
                history,
                SamplingConfig(temperature=request.temperature, max_tokens=max_tokens),
            )
        self._logger.info(
            "generation.complete",
            provider=model.provider_name(),
            model=model.model_name(),
            duration_seconds=generation_timer.duration,
            citation_count=len(chunks),
        )

        context = self._prompt_builder.build_context(chunks)
        input_text = "\n".join([*(turn.content for turn in history), prompt])
        usage = TurnUsage(
            llm_provider=model.provider_name(),
            llm_model=model.model_name(),
            input_tokens=model.count_tokens(input_text),
            output_tokens=model.count_tokens(response),
            embedding_provider=self._embedding.provider_name(),
            embedding_model=self._embedding.model_name(),
            context_tokens=self._embedding.count_tokens(context),
        )
        return ChatResult(response=response, sources=[item.chunk for item in chunks], usage=usage)
