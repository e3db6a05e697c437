"""Observability helpers for kbchat."""

from __future__ import annotations

import logging
import time
from contextvars import ContextVar
from typing import Callable, Iterable

import structlog
from prometheus_client import Counter, Histogram

_logger_configured = False
_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


def configure_logging(level: int | str = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()
    _correlation_id_var.set("-")


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def get_logger(name: str = "kbchat") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def _clamp_score(score: float) -> float:
    if score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return score


class PipelineMetrics:
    """Prometheus metrics for pipeline stages."""

    indexing_latency = Histogram(
        "kbchat_indexing_duration_seconds",
        "Time spent embedding and writing a document's chunks.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    )
    indexed_chunks = Histogram(
        "kbchat_indexed_chunk_count",
        "Chunks written per indexing batch.",
        buckets=(0, 1, 5, 10, 50, 100, 500, 1000),
    )
    retrieval_latency = Histogram(
        "kbchat_retrieval_duration_seconds",
        "Time spent embedding the question and searching the index.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0),
    )
    retrieved_chunk_count = Histogram(
        "kbchat_retrieved_chunk_count",
        "Number of chunks admitted into the prompt.",
        buckets=(0, 1, 2, 3, 5, 8, 13),
    )
    grounding_score = Histogram(
        "kbchat_grounding_score",
        "Similarity score of chunks admitted into the prompt.",
        buckets=(0.0, 0.25, 0.5, 0.75, 1.0),
    )
    generation_latency = Histogram(
        "kbchat_generation_duration_seconds",
        "Time spent generating answers.",
        buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
    )
    chat_turn_failures = Counter(
        "kbchat_chat_turn_failures_total",
        "Chat turns rolled back, by failure stage.",
        ["stage"],
    )
    usage_tokens = Counter(
        "kbchat_usage_tokens_total",
        "Tokens recorded by the usage meter.",
        ["event_type", "provider"],
    )
    usage_failures = Counter(
        "kbchat_usage_record_failures_total",
        "Usage events that could not be persisted.",
    )

    @classmethod
    def observe_indexing(cls, duration_seconds: float, chunk_count: int) -> None:
        cls.indexing_latency.observe(duration_seconds)
        cls.indexed_chunks.observe(chunk_count)

    @classmethod
    def observe_retrieval(
        cls,
        duration_seconds: float,
        chunk_count: int,
        scores: Iterable[float],
    ) -> None:
        cls.retrieval_latency.observe(duration_seconds)
        cls.retrieved_chunk_count.observe(chunk_count)
        for score in scores:
            cls.grounding_score.observe(_clamp_score(score))

    @classmethod
    def observe_generation(cls, duration_seconds: float) -> None:
        cls.generation_latency.observe(duration_seconds)

    @classmethod
    def observe_turn_failure(cls, stage: str) -> None:
        cls.chat_turn_failures.labels(stage=stage).inc()

    @classmethod
    def observe_usage(cls, event_type: str, provider: str, token_count: int) -> None:
        cls.usage_tokens.labels(event_type=event_type, provider=provider).inc(max(token_count, 0))


class TimedSection:
    """Context manager capturing elapsed time for metrics."""

    def __init__(self, callback: Callable[[float], None] | None = None) -> None:
        self._callback = callback
        self._start = 0.0
        self.duration = 0.0

    def __enter__(self) -> "TimedSection":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        self.duration = time.perf_counter() - self._start
        if self._callback is not None:
            self._callback(self.duration)


__all__ = [
    "PipelineMetrics",
    "TimedSection",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
]
