"""Bounded retry with exponential backoff for idempotent network calls."""

from __future__ import annotations

import random
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Optional, Tuple, Type, TypeVar

import httpx

from kbchat.metrics.observability import get_logger

T = TypeVar("T")

TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (
    httpx.TransportError,
    ConnectionError,
    TimeoutError,
)

_logger = get_logger("resilience")

# Clients without a native timeout (the vector store) run here so callers stop waiting on time.
_deadline_pool = ThreadPoolExecutor(max_workers=16, thread_name_prefix="kbchat-deadline")


def call_with_timeout(
    operation: Callable[[], T],
    *,
    timeout_seconds: float,
    name: str,
    on_abandoned: Optional[Callable[[], None]] = None,
) -> T:
    """Run ``operation`` and raise ``TimeoutError`` if it has not finished in time.

    A running operation cannot be interrupted and may still complete after
    the caller gave up; ``on_abandoned`` runs once it has actually finished.
    """

    future = _deadline_pool.submit(operation)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError as exc:
        if not future.cancel() and on_abandoned is not None:
            future.add_done_callback(lambda _: on_abandoned())
        _logger.error("deadline.exceeded", operation=name, timeout_seconds=timeout_seconds)
        raise TimeoutError(f"{name} did not complete within {timeout_seconds}s") from exc


class TransientHTTPStatusError(httpx.HTTPStatusError):
    """5xx or 429 response from an idempotent endpoint; safe to retry."""


def raise_for_transient_status(response: httpx.Response) -> None:
    """Raise ``TransientHTTPStatusError`` for retryable statuses, ``HTTPStatusError`` otherwise."""

    if response.status_code == 429 or response.status_code >= 500:
        raise TransientHTTPStatusError(
            f"Transient status {response.status_code} from {response.request.url}",
            request=response.request,
            response=response,
        )
    response.raise_for_status()


def retry_transient(
    operation: Callable[[], T],
    *,
    name: str,
    max_attempts: int = 3,
    backoff_seconds: float = 0.5,
    transient: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS + (TransientHTTPStatusError,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation``, retrying only ``transient`` failures.

    Only use for idempotent calls (embeddings, index reads). Generation calls
    must never go through here.
    """

    attempts = max(1, max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except transient as exc:
            if attempt == attempts:
                _logger.error("retry.exhausted", operation=name, attempts=attempts, error=str(exc))
                raise
            delay = backoff_seconds * (2 ** (attempt - 1)) * (0.5 + random.random())
            _logger.warning(
                "retry.transient_failure",
                operation=name,
                attempt=attempt,
                delay_seconds=round(delay, 3),
                error=str(exc),
            )
            sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
