"""Unit tests for ErrorSink: recording, querying, resolution and backend failures."""

from datetime import datetime, timedelta, timezone
from itertools import count

import pytest

from taxonomy_hub.domain.exceptions import ErrorEntryNotFoundError
from taxonomy_hub.infrastructure.error_sink import ErrorLogStore, ErrorSink, InMemoryErrorLogStore

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def stepping_clock():
    ticks = count()
    return lambda: T0 + timedelta(seconds=next(ticks))


class FlakyStore(InMemoryErrorLogStore):
    """In-memory store whose first ``failures`` writes raise."""

    def __init__(self, failures, exc_type=ConnectionError):
        super().__init__()
        self.failures = failures
        self.exc_type = exc_type
        self.calls = 0

    def add(self, entry):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise self.exc_type("backend unavailable")
        super().add(entry)


def make_sink(store=None, **retry):
    retry.setdefault("sleep", lambda _s: None)
    return ErrorSink(store, clock=stepping_clock(), retry_options=retry)


@pytest.mark.unit
class TestRecordAndGet:
    def test_record_returns_id_and_stores_entry(self):
        sink = make_sink()
        entry_id = sink.record(
            "mapping", "UnknownKey", "Unknown lookup key 'ZZ'", source_id="rule-1", context={"key": "ZZ"}
        )

        entry = sink.get(entry_id)
        assert entry.source == "mapping"
        assert entry.source_id == "rule-1"
        assert entry.context == {"key": "ZZ"}
        assert entry.created_at == T0
        assert not entry.is_resolved

    def test_exception_stack_trace_captured(self):
        sink = make_sink()
        try:
            raise RuntimeError("boom")
        except RuntimeError as exc:
            entry_id = sink.record("pipeline_run", "Crash", "boom", exc=exc)

        assert "RuntimeError: boom" in sink.get(entry_id).stack_trace

    def test_get_unknown_raises(self):
        with pytest.raises(ErrorEntryNotFoundError):
            make_sink().get("missing")

    def test_to_dict_uses_camel_case(self):
        sink = make_sink()
        data = sink.get(sink.record("taxonomy", "DuplicateCodeError", "dup")).to_dict()

        assert data["errorType"] == "DuplicateCodeError"
        assert data["createdAt"] == T0.isoformat()
        assert data["resolvedAt"] is None


@pytest.mark.unit
class TestResolve:
    def test_resolve_sets_timestamp(self):
        sink = make_sink()
        entry_id = sink.record("mapping", "UnknownKey", "x")

        resolved = sink.resolve(entry_id)
        assert resolved.resolved_at == T0 + timedelta(seconds=1)

    def test_resolve_is_idempotent(self):
        sink = make_sink()
        entry_id = sink.record("mapping", "UnknownKey", "x")
        first = sink.resolve(entry_id).resolved_at

        assert sink.resolve(entry_id).resolved_at == first

    def test_resolve_unknown_raises(self):
        with pytest.raises(ErrorEntryNotFoundError):
            make_sink().resolve("missing")


@pytest.mark.unit
class TestQuery:
    def test_filters_combine(self):
        sink = make_sink()
        a = sink.record("pipeline_run", "UnmappedRange", "a", source_id="run-1")
        sink.record("pipeline_run", "UnknownKey", "b", source_id="run-1")
        sink.record("pipeline_run", "UnmappedRange", "c", source_id="run-2")
        sink.record("mapping", "UnmappedRange", "d")

        found = sink.query(source="pipeline_run", error_type="UnmappedRange", source_id="run-1")
        assert [e.id for e in found] == [a]

    def test_oldest_first_and_unresolved_only(self):
        sink = make_sink()
        ids = [sink.record("taxonomy", "E", str(i)) for i in range(3)]
        sink.resolve(ids[1])

        assert [e.id for e in sink.query()] == ids
        assert [e.id for e in sink.query(unresolved_only=True)] == [ids[0], ids[2]]


@pytest.mark.unit
class TestBackendFailures:
    def test_transient_failure_retried(self):
        store = FlakyStore(failures=2)
        sink = make_sink(store, max_attempts=3)
        entry_id = sink.record("mapping", "E", "x")

        assert store.calls == 3
        assert sink.failed_writes == 0
        assert store.get(entry_id) is not None

    def test_exhausted_write_is_buffered_not_raised(self):
        store = FlakyStore(failures=5)
        sink = make_sink(store, max_attempts=2)
        entry_id = sink.record("mapping", "E", "x")

        assert sink.failed_writes == 1
        assert [e.id for e in sink.pending] == [entry_id]
        assert sink.get(entry_id).message == "x"
        assert [e.id for e in sink.query(source="mapping")] == [entry_id]

    def test_non_retryable_failure_buffered_after_one_attempt(self):
        store = FlakyStore(failures=1, exc_type=ValueError)
        sink = make_sink(store, max_attempts=3)
        sink.record("mapping", "E", "x")

        assert store.calls == 1
        assert sink.failed_writes == 1

    def test_flush_pending_moves_entries_to_store(self):
        store = FlakyStore(failures=2)
        sink = make_sink(store, max_attempts=2)
        entry_id = sink.record("mapping", "E", "x")

        assert sink.flush_pending() == 1
        assert sink.pending == []
        assert store.get(entry_id) is not None
        assert sink.failed_writes == 1

    def test_resolve_pending_entry(self):
        sink = make_sink(FlakyStore(failures=9), max_attempts=1)
        entry_id = sink.record("mapping", "E", "x")

        assert sink.resolve(entry_id).is_resolved


@pytest.mark.unit
def test_in_memory_store_satisfies_protocol():
    assert isinstance(InMemoryErrorLogStore(), ErrorLogStore)
