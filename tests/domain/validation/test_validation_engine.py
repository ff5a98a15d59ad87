"""Unit tests for per-record and aggregate validation."""

import pytest

from taxonomy_hub.domain.exceptions import ConfigurationError, InvalidRulePayloadError
from taxonomy_hub.domain.types import Severity
from taxonomy_hub.domain.validation import ValidationEngine, ValidationRuleRegistry
from taxonomy_hub.domain.validation.schemas import dump_validation_body, parse_validation_body


def build_engine(*rules, record_id_field="respondentId"):
    registry = ValidationRuleRegistry()
    for rule in rules:
        payload, severity = rule if isinstance(rule, tuple) else (rule, "error")
        registry.register("p1", payload, severity, name=payload["type"])
    return registry.engine_for("p1", record_id_field)


@pytest.mark.unit
class TestValidationSchemas:
    def test_unknown_type_rejected(self):
        with pytest.raises(InvalidRulePayloadError):
            parse_validation_body({"type": "unique", "field": "x"})

    @pytest.mark.parametrize(
        "payload",
        [
            {"type": "not_null", "fields": []},
            {"type": "range", "field": "age"},
            {"type": "range", "field": "age", "min": 10, "max": 1},
            {"type": "regex", "field": "x", "pattern": "("},
            {"type": "enum", "field": "x", "values": []},
            {"type": "threshold", "metric": "count"},
            {"type": "threshold", "metric": "median", "maxValue": 1},
            {"type": "threshold", "metric": "null_rate", "maxValue": 0.1},
            {"type": "threshold", "metric": "duplication_rate", "groupBy": "x", "maxValue": 1},
        ],
    )
    def test_malformed_bodies_rejected(self, payload):
        with pytest.raises(InvalidRulePayloadError):
            parse_validation_body(payload)

    def test_compound_group_by_round_trips(self):
        payload = {
            "type": "threshold",
            "metric": "count",
            "groupBy": ["country", "demographic_segment"],
            "minValue": 30,
        }
        body = parse_validation_body(payload)

        assert body.group_columns == ["country", "demographic_segment"]
        assert dump_validation_body(body) == payload

    @pytest.mark.parametrize("group_by", [[], ["country", "country"], ["  "]])
    def test_bad_group_by_rejected(self, group_by):
        with pytest.raises(InvalidRulePayloadError):
            parse_validation_body(
                {"type": "threshold", "metric": "count", "groupBy": group_by, "minValue": 1}
            )

    def test_threshold_round_trips_with_camel_case_keys(self):
        payload = {"type": "threshold", "metric": "count", "groupBy": "country", "minValue": 30}
        body = parse_validation_body(payload)

        assert body.group_by == "country"
        assert body.group_columns == ["country"]
        assert body.is_aggregate is True
        assert dump_validation_body(body) == payload


@pytest.mark.unit
class TestRecordRules:
    def test_not_null(self):
        engine = build_engine({"type": "not_null", "fields": ["respondentId", "age_group"]})

        assert engine.validate_record({"respondentId": "r1", "age_group": "Gen Z"}) == []
        violations = engine.validate_record({"respondentId": "  ", "age_group": None})
        assert [v.field for v in violations] == ["respondentId", "age_group"]
        assert all(v.severity is Severity.ERROR for v in violations)

    def test_range(self):
        engine = build_engine({"type": "range", "field": "age", "min": 16, "max": 64})

        assert engine.validate_record({"age": 30}) == []
        assert engine.validate_record({}) == []
        assert engine.validate_record({"age": 70})[0].message == "'age' above maximum 64"
        assert engine.validate_record({"age": "old"})[0].message == "'age' is not numeric"

    def test_regex(self):
        engine = build_engine({"type": "regex", "field": "country", "pattern": "^[A-Z]{2}$"})

        assert engine.validate_record({"country": "GB"}) == []
        assert len(engine.validate_record({"country": "gbr"})) == 1

    def test_enum(self):
        engine = build_engine({"type": "enum", "field": "gender", "values": ["Male", "Female"]})

        assert engine.validate_record({"gender": "Female"}) == []
        assert engine.validate_record({"gender": "unknown"})[0].value == "unknown"

    def test_warning_severity_is_carried(self):
        engine = build_engine(({"type": "range", "field": "age", "max": 64}, "warning"))

        (violation,) = engine.validate_record({"age": 99})
        assert violation.severity is Severity.WARNING
        assert violation.is_error is False

    def test_inactive_rules_skipped(self):
        registry = ValidationRuleRegistry()
        rule = registry.register("p1", {"type": "not_null", "fields": ["x"]})
        registry.deactivate(rule.id)

        assert registry.engine_for("p1", "respondentId").validate_record({}) == []

    def test_rules_are_scoped_to_their_pipeline(self):
        registry = ValidationRuleRegistry()
        registry.register("p1", {"type": "not_null", "fields": ["x"]})

        assert registry.engine_for("p2", "respondentId").validate_record({}) == []

    def test_unknown_severity_rejected(self):
        with pytest.raises(ConfigurationError):
            ValidationRuleRegistry().register("p1", {"type": "not_null", "fields": ["x"]}, "fatal")


@pytest.mark.unit
class TestAggregateRules:
    def test_duplication_rate_above_cap(self):
        engine = build_engine({"type": "threshold", "metric": "duplication_rate", "maxValue": 0.05})
        records = [{"respondentId": f"r{i}"} for i in range(94)]
        records += [{"respondentId": f"r{i}"} for i in range(6)]

        (violation,) = engine.validate_aggregate(records)

        assert violation.value == pytest.approx(0.06)
        assert violation.rule_name == "threshold"

    def test_duplication_rate_at_cap_passes(self):
        engine = build_engine({"type": "threshold", "metric": "duplication_rate", "maxValue": 0.05})
        records = [{"respondentId": f"r{i}"} for i in range(95)]
        records += [{"respondentId": f"r{i}"} for i in range(5)]

        assert engine.validate_aggregate(records) == []

    def test_duplication_rate_on_explicit_field(self):
        engine = build_engine(
            {"type": "threshold", "metric": "duplication_rate", "field": "email", "maxValue": 0}
        )

        violations = engine.validate_aggregate([{"email": "a"}, {"email": "a"}, {"email": None}])

        assert violations[0].value == pytest.approx(1 / 3, rel=1e-4)

    def test_group_count_minimum(self):
        engine = build_engine(
            {"type": "threshold", "metric": "count", "groupBy": "country", "minValue": 2}
        )
        records = [{"country": "US"}, {"country": "US"}, {"country": "GB"}]

        (violation,) = engine.validate_aggregate(records)

        assert (violation.group, violation.value) == ("GB", 1)

    def test_group_by_field_missing_from_output(self):
        engine = build_engine(
            {"type": "threshold", "metric": "count", "groupBy": "region", "minValue": 1}
        )

        (violation,) = engine.validate_aggregate([{"country": "US"}])

        assert "region" in violation.message

    def test_compound_group_count_minimum(self):
        engine = build_engine(
            {
                "type": "threshold",
                "metric": "count",
                "groupBy": ["country", "age_group"],
                "minValue": 2,
            }
        )
        records = [
            {"country": "US", "age_group": "Gen Z"},
            {"country": "US", "age_group": "Gen Z"},
            {"country": "US", "age_group": "Gen X"},
            {"country": "GB", "age_group": None},
        ]

        violations = engine.validate_aggregate(records)

        assert [(v.group, v.value) for v in violations] == [
            ({"country": "GB", "age_group": None}, 1),
            ({"country": "US", "age_group": "Gen X"}, 1),
        ]
        assert violations[0].field == "country,age_group"

    def test_compound_group_reports_every_absent_column(self):
        engine = build_engine(
            {
                "type": "threshold",
                "metric": "count",
                "groupBy": ["region", "country", "wave"],
                "minValue": 1,
            }
        )

        violations = engine.validate_aggregate([{"country": "US"}])

        assert [v.field for v in violations] == ["region", "wave"]

    def test_total_count_bounds(self):
        engine = build_engine({"type": "threshold", "metric": "count", "minValue": 3})

        assert len(engine.validate_aggregate([{"a": 1}])) == 1
        assert engine.validate_aggregate([{"a": 1}] * 3) == []

    def test_null_rate(self):
        engine = build_engine(
            {"type": "threshold", "metric": "null_rate", "field": "country", "maxValue": 0.25}
        )
        records = [{"country": "US"}, {"country": None}, {"country": ""}, {"country": "GB"}]

        (violation,) = engine.validate_aggregate(records)

        assert violation.value == pytest.approx(0.5)

    def test_failure_rate_uses_batch_size(self):
        engine = build_engine({"type": "threshold", "metric": "failure_rate", "maxValue": 0.1})

        violations = engine.validate_aggregate([{"a": 1}] * 8, batch_size=10, records_failed=2)

        assert violations[0].value == pytest.approx(0.2)

    def test_warning_threshold_is_reported_not_fatal(self):
        engine = build_engine(
            ({"type": "threshold", "metric": "count", "minValue": 5}, "warning")
        )

        (violation,) = engine.validate_aggregate([])

        assert violation.is_error is False

    def test_record_rules_do_not_run_in_aggregate(self):
        engine = ValidationEngine([])
        assert engine.validate_aggregate([{"x": 1}]) == []
