"""Fire-and-forget usage metering."""

from __future__ import annotations

import queue
import threading
from typing import Iterable, Optional

from kbchat.metrics.observability import PipelineMetrics, get_logger
from kbchat.models import UsageEvent, UsageEventType
from kbchat.storage.usage import UsageEventRepository

_STOP = object()


class UsageMeter:
    """Records token usage on a background worker.

    ``record`` only enqueues. Persistence failures are logged and counted,
    never raised, so a metering problem cannot fail the request that caused it.
    """

    def __init__(self, repository: UsageEventRepository, *, max_queue_size: int = 10000) -> None:
        self._repository = repository
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=max_queue_size)
        self._logger = get_logger("usage")
        self._worker = threading.Thread(target=self._run, name="kbchat-usage-meter", daemon=True)
        self._closed = False
        self._worker.start()

    def record(
        self,
        user_id: str,
        provider: str,
        model_name: str,
        token_count: int,
        event_type: UsageEventType,
    ) -> None:
        try:
            event = UsageEvent(user_id, provider, model_name, int(token_count), UsageEventType(event_type))
        except (TypeError, ValueError) as exc:
            PipelineMetrics.usage_failures.inc()
            self._logger.error("usage.invalid_event", event_type=str(event_type), user_id=user_id, error=str(exc))
            return
        self.record_event(event)

    def record_event(self, event: UsageEvent) -> None:
        if self._closed:
            self._logger.warning("usage.meter_closed", event_type=event.event_type.value)
            return
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            PipelineMetrics.usage_failures.inc()
            self._logger.error("usage.queue_full", event_type=event.event_type.value, user_id=event.user_id)

    def record_many(self, events: Iterable[UsageEvent]) -> None:
        for event in events:
            self.record_event(event)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued event has been handled. Returns False on timeout."""

        if timeout is None:
            self._queue.join()
            return True
        done = threading.Event()

        def _wait() -> None:
            self._queue.join()
            done.set()

        threading.Thread(target=_wait, daemon=True).start()
        return done.wait(timeout)

    def close(self, timeout: float = 5.0) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put(_STOP)
        self._worker.join(timeout)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._persist(item)  # type: ignore[arg-type]
            finally:
                self._queue.task_done()

    def _persist(self, event: UsageEvent) -> None:
        try:
            self._repository.insert(event)
        except Exception as exc:
            PipelineMetrics.usage_failures.inc()
            self._logger.error(
                "usage.record_failed",
                event_type=event.event_type.value,
                user_id=event.user_id,
                provider=event.provider,
                model=event.model_name,
                token_count=event.token_count,
                error=str(exc),
            )
            return
        PipelineMetrics.observe_usage(event.event_type.value, event.provider, event.token_count)
        self._logger.debug(
            "usage.recorded",
            event_type=event.event_type.value,
            user_id=event.user_id,
            provider=event.provider,
            token_count=event.token_count,
        )
