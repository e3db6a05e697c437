from __future__ import annotations

from prometheus_client import REGISTRY

from kbchat.metrics.usage import UsageMeter
from kbchat.models import UsageEvent, UsageEventType
from kbchat.storage.usage import UsageEventRepository


def _failures() -> float:
    return REGISTRY.get_sample_value("kbchat_usage_record_failures_total") or 0.0


def test_recorded_events_are_persisted(usage_meter, database):
    usage_meter.record("alice", "openai", "text-embedding-3-small", 120, UsageEventType.CREATE_DOCUMENT_INDEX)
    usage_meter.record("alice", "OPENAI", "gpt-4o-mini", 30, UsageEventType.LLM_INPUT)
    usage_meter.record("alice", "OPENAI", "gpt-4o-mini", 12, UsageEventType.LLM_INPUT)
    assert usage_meter.flush(timeout=5)

    totals = UsageEventRepository(database).totals(user_id="alice")
    assert totals == {"CREATE_DOCUMENT_INDEX": 120, "LLM_INPUT": 42}


def test_persistence_failures_are_swallowed():
    class BrokenRepository:
        def insert(self, event: UsageEvent) -> None:
            raise RuntimeError("database is locked")

    meter = UsageMeter(BrokenRepository())  # type: ignore[arg-type]
    before = _failures()
    try:
        meter.record("alice", "OPENAI", "gpt-4o-mini", 5, UsageEventType.LLM_OUTPUT)
        assert meter.flush(timeout=5)
    finally:
        meter.close()

    assert _failures() == before + 1


def test_worker_keeps_running_after_a_failure(database):
    class FlakyRepository(UsageEventRepository):
        def __init__(self) -> None:
            super().__init__(database)
            self.failed = False

        def insert(self, event: UsageEvent) -> None:
            if not self.failed:
                self.failed = True
                raise RuntimeError("transient")
            super().insert(event)

    repository = FlakyRepository()
    meter = UsageMeter(repository)
    try:
        meter.record("alice", "OPENAI", "gpt-4o-mini", 1, UsageEventType.LLM_OUTPUT)
        meter.record("alice", "OPENAI", "gpt-4o-mini", 7, UsageEventType.LLM_OUTPUT)
        meter.flush()
    finally:
        meter.close()

    assert repository.totals(user_id="alice") == {"LLM_OUTPUT": 7}


def test_records_after_close_are_dropped(database):
    meter = UsageMeter(UsageEventRepository(database))
    meter.close()
    meter.record("alice", "OPENAI", "gpt-4o-mini", 3, UsageEventType.LLM_OUTPUT)

    assert UsageEventRepository(database).totals() == {}


def test_unknown_event_type_is_dropped_not_raised(usage_meter, database):
    before = _failures()

    usage_meter.record("alice", "OPENAI", "gpt-4o-mini", 5, "NOT_A_TYPE")  # type: ignore[arg-type]
    usage_meter.record("alice", "OPENAI", "gpt-4o-mini", 5, UsageEventType.LLM_OUTPUT)
    assert usage_meter.flush(timeout=5)

    assert _failures() == before + 1
    assert UsageEventRepository(database).totals(user_id="alice") == {"LLM_OUTPUT": 5}
