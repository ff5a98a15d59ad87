"""Unit tests for chunk processing and the per-run accumulator."""

import pytest

from taxonomy_hub.domain.pipelines.accumulator import ChunkResult, RecordFailure, RunAccumulator
from taxonomy_hub.domain.pipelines.worker import process_chunk
from taxonomy_hub.domain.validation import ValidationRuleRegistry


GEN_Z = {"type": "range_map", "ranges": [{"min": 16, "max": 24, "value": "Gen Z"}]}


def failure(index):
    return RecordFailure(index=index, record_id=f"r{index}", errors=[{"error_type": "UnmappedRange", "message": "no band"}])


@pytest.mark.unit
class TestRunAccumulator:
    def test_merge_sums_counters(self):
        accumulator = RunAccumulator(error_log_limit=10)
        accumulator.merge(ChunkResult(start=0, processed=3, failed=1, failures=[failure(2)]))
        accumulator.merge(ChunkResult(start=4, processed=4, warned=2, shadowed=5))

        assert (accumulator.processed, accumulator.failed, accumulator.warned) == (7, 1, 2)
        assert accumulator.shadowed == 5
        assert accumulator.chunks == 2

    def test_error_log_is_bounded_with_overflow_summary(self):
        accumulator = RunAccumulator(error_log_limit=3)
        accumulator.merge(ChunkResult(start=0, failed=2, failures=[failure(0), failure(1)]))
        accumulator.merge(ChunkResult(start=2, failed=3, failures=[failure(2), failure(3), failure(4)]))

        log = accumulator.error_log([{"type": "aggregate", "rule_name": "dupes"}])

        assert [entry.get("index") for entry in log[:3]] == [0, 1, 2]
        assert log[3]["type"] == "overflow"
        assert log[3]["omitted"] == 2
        assert log[4]["type"] == "aggregate"

    def test_mark_unprocessed(self):
        accumulator = RunAccumulator(error_log_limit=3)
        accumulator.merge(ChunkResult(start=0, processed=4, failed=1))

        assert accumulator.mark_unprocessed(10) == 5
        assert accumulator.handled == 10


@pytest.mark.unit
class TestProcessChunk:
    def test_maps_validates_and_partitions(self, rule_set):
        rule_set.register_rule(
            "age",
            "demographics",
            "age_group",
            {"type": "range_map", "ranges": [{"min": 16, "max": 24, "value": "Gen Z"}]},
        )
        registry = ValidationRuleRegistry()
        registry.register("p1", {"type": "regex", "field": "email", "pattern": "@"}, "warning")
        engine = registry.engine_for("p1", "respondentId")
        records = [
            {"respondentId": "a", "age": 20, "email": "a@x"},
            {"respondentId": "b", "age": 15},
            {"respondentId": "c", "age": 22, "email": "nope"},
            "not a record",
        ]

        result = process_chunk(records, 10, rule_set, engine, "respondentId")

        assert (result.processed, result.failed, result.warned) == (2, 2, 1)
        assert result.outputs == [
            {"respondentId": "a", "age_group": "Gen Z"},
            {"respondentId": "c", "age_group": "Gen Z"},
        ]
        assert [f.index for f in result.failures] == [11, 13]
        assert result.failures[0].error_type == "UnmappedRange"
        assert result.failures[1].error_type == "InvalidRecord"
        assert dict(result.attribute_values["demographics.age_group"]) == {"Gen Z": 2}

    def test_error_validation_fails_record(self, rule_set):
        registry = ValidationRuleRegistry()
        registry.register("p1", {"type": "not_null", "fields": ["respondentId"]})
        engine = registry.engine_for("p1", "respondentId")

        result = process_chunk([{"respondentId": None}], 0, rule_set, engine, "respondentId")

        assert result.failed == 1
        assert result.failures[0].error_type == "Validation.not_null"

    def test_unexpected_error_fails_only_that_record(self, rule_set, monkeypatch):
        rule_set.register_rule("age", "demographics", "age_group", GEN_Z)
        evaluate = rule_set.evaluate

        def flaky_evaluate(record, groups=None):
            if record["respondentId"] == "b":
                raise RuntimeError("lookup backend gone")
            return evaluate(record, groups)

        monkeypatch.setattr(rule_set, "evaluate", flaky_evaluate)
        engine = ValidationRuleRegistry().engine_for("p1", "respondentId")
        records = [{"respondentId": r, "age": 20} for r in ("a", "b", "c")]

        result = process_chunk(records, 0, rule_set, engine, "respondentId")

        assert (result.processed, result.failed) == (2, 1)
        [crashed] = result.failures
        assert (crashed.index, crashed.record_id) == (1, "b")
        assert crashed.error_type == "RuntimeError"
        assert crashed.message == "lookup backend gone"
        assert [o["respondentId"] for o in result.outputs] == ["a", "c"]

    def test_chunk_uses_the_given_rule_snapshot(self, rule_set):
        rule = rule_set.register_rule("age", "demographics", "age_group", GEN_Z)
        snapshot = rule_set.snapshot()
        rule_set.deactivate_rule(rule.id)
        engine = ValidationRuleRegistry().engine_for("p1", "respondentId")
        records = [{"respondentId": "a", "age": 20}]

        frozen = process_chunk(records, 0, rule_set, engine, "respondentId", snapshot)
        live = process_chunk(records, 0, rule_set, engine, "respondentId")

        assert frozen.outputs == [{"respondentId": "a", "age_group": "Gen Z"}]
        assert live.outputs == [{"respondentId": "a"}]
