"""End-to-end scenarios through the TaxonomyEngine facade."""

import pytest

from taxonomy_hub.domain.exceptions import (
    CycleDetectedError,
    InvalidRulePayloadError,
    PipelineNotFoundError,
    TypeMismatchConfigError,
)
from taxonomy_hub.domain.pipelines import RunStatus
from taxonomy_hub.service import TaxonomyEngine


@pytest.mark.integration
class TestMappingScenarios:
    def test_age_maps_to_generation(self, engine):
        result = engine.evaluate({"respondentId": "r1", "age": 30, "country_code": "gb"})

        assert result.values == {"age_group": "Millennials", "country": "United Kingdom"}
        assert result.failures == []

    def test_unmapped_age_fails_only_that_record(self, engine, pipeline_id, records_factory):
        records = records_factory(10)
        records[4]["age"] = 15
        status = engine.get_run_status(engine.submit_run(pipeline_id, records))

        assert status["status"] == "COMPLETED"
        assert status["recordsFailed"] == 1
        assert status["recordsProcessed"] == 9
        assert status["errorLog"][0]["errors"][0]["error_type"] == "UnmappedRange"

    def test_higher_priority_rule_shadows_lower(self, engine):
        first = engine.register_mapping_rule(
            "income",
            "finance",
            "income_bracket",
            {
                "type": "range_map",
                "ranges": [
                    {"min": 0, "max": 29999, "value": "Low"},
                    {"min": 30000, "max": 79999, "value": "Medium"},
                    {"min": 80000, "max": 10000000, "value": "High"},
                ],
            },
            priority=1,
        )
        second = engine.register_mapping_rule(
            "income_band",
            "finance",
            "income_bracket",
            {"type": "lookup", "table": {"l": "Low", "m": "Medium", "h": "High"}},
            priority=2,
        )

        result = engine.evaluate({"income": 45000, "income_band": "h"})
        assert result.values["income_bracket"] == "Medium"
        assert result.applied["income_bracket"] == first.id
        [shadowed] = result.shadowed
        assert shadowed.rule_id == second.id
        assert shadowed.source_present is True

        fallback = engine.evaluate({"income_band": "l"})
        assert fallback.values["income_bracket"] == "Low"
        assert fallback.shadowed == []

    def test_incompatible_rule_rejected_and_logged(self, engine, error_sink):
        with pytest.raises(TypeMismatchConfigError):
            engine.register_mapping_rule(
                "bracket",
                "finance",
                "income_bracket",
                {"type": "lookup", "table": {"x": "Very High"}},
            )
        [entry] = error_sink.query(source="mapping")
        assert entry.error_type == "TypeMismatchConfigError"
        assert entry.context["target"] == "finance.income_bracket"

    def test_shared_attribute_code_outputs_qualified_keys(self, engine, pipeline_id, records_factory):
        engine.register_category("household", "Household")
        engine.register_attribute("household", "country", "string")
        engine.register_mapping_rule("home_country", "household", "country", {"type": "pass_through"})

        run_id = engine.submit_run(pipeline_id, records_factory(2, home_country="Wales"))
        status = engine.get_run_status(run_id)

        assert status["status"] == "COMPLETED"
        assert engine.get_run_output(run_id)[0] == {
            "respondentId": "r0000",
            "age_group": "Gen Z",
            "geography.country": "United States",
            "household.country": "Wales",
        }
        assert status["metrics"]["attribute_values"]["household.country"] == {"Wales": 2}

    def test_cycle_rejected(self, engine):
        with pytest.raises(CycleDetectedError):
            engine.tree.reparent_category("demographics", "geography")


@pytest.mark.integration
class TestValidationScenarios:
    def test_duplicate_rate_above_cap_fails_run(self, engine, pipeline_id, records_factory):
        rule = engine.register_validation_rule(
            pipeline_id,
            {"type": "threshold", "metric": "duplication_rate", "maxValue": 0.05},
            name="duplicate respondents",
        )
        records = records_factory(100)
        for i in range(6):
            records[94 + i]["respondentId"] = records[i]["respondentId"]

        status = engine.get_run_status(engine.submit_run(pipeline_id, records))

        assert status["status"] == "FAILED"
        assert status["recordsProcessed"] == 100
        [entry] = status["errorLog"]
        assert entry["type"] == "aggregate"
        assert entry["rule_id"] == rule.id
        assert entry["rule_name"] == "duplicate respondents"
        assert entry["value"] == 0.06

    def test_duplicate_rate_at_cap_completes(self, engine, pipeline_id, records_factory):
        engine.register_validation_rule(
            pipeline_id, {"type": "threshold", "metric": "duplication_rate", "maxValue": 0.05}
        )
        records = records_factory(100)
        for i in range(5):
            records[95 + i]["respondentId"] = records[i]["respondentId"]

        status = engine.get_run_status(engine.submit_run(pipeline_id, records))
        assert status["status"] == "COMPLETED"

    def test_record_rule_on_mapped_value(self, engine, pipeline_id, records_factory):
        engine.register_validation_rule(
            pipeline_id, {"type": "enum", "field": "age_group", "values": ["Millennials"]}
        )
        records = records_factory(3, age=30)
        records[1]["age"] = 20

        status = engine.get_run_status(engine.submit_run(pipeline_id, records))
        assert status["recordsFailed"] == 1
        assert status["errorLog"][0]["errorType"] == "Validation.enum"

    def test_warning_rule_does_not_fail_record(self, engine, pipeline_id, records_factory):
        engine.register_validation_rule(
            pipeline_id, {"type": "range", "field": "age", "max": 30}, "warning"
        )
        status = engine.get_run_status(engine.submit_run(pipeline_id, records_factory(15)))

        assert status["recordsFailed"] == 0
        assert status["metrics"]["records_warned"] == 4

    def test_unknown_rule_type_rejected(self, engine, pipeline_id, error_sink):
        with pytest.raises(InvalidRulePayloadError):
            engine.register_validation_rule(pipeline_id, {"type": "checksum"})
        assert error_sink.query(source="validation", error_type="InvalidRulePayloadError")

    def test_rule_for_unknown_pipeline(self, engine):
        with pytest.raises(PipelineNotFoundError):
            engine.register_validation_rule("missing", {"type": "not_null", "fields": ["age"]})


@pytest.mark.integration
class TestRunInvariants:
    def test_identical_batches_give_identical_results(
        self, engine_factory, records_factory, settings
    ):
        records = records_factory(57)
        records[13]["country_code"] = "fr"
        outputs = []
        for workers in (1, 4):
            settings.MAX_WORKERS = workers
            engine = engine_factory()
            pipeline_id = engine.coordinator.find_pipeline("survey_core").id
            run_id = engine.submit_run(pipeline_id, records)
            status = engine.get_run_status(run_id)
            outputs.append((engine.get_run_output(run_id), status["errorLog"], status["recordsFailed"]))

        assert outputs[0][0] == outputs[1][0]
        assert outputs[0][2] == outputs[1][2] == 1
        assert [e["index"] for e in outputs[0][1]] == [e["index"] for e in outputs[1][1]] == [13]

    def test_status_only_moves_forward(self, engine, pipeline_id, records_factory):
        run_id = engine.submit_run(pipeline_id, records_factory(3))
        run = engine.coordinator.get_run(run_id)

        assert run.status is RunStatus.COMPLETED
        assert run.created_at <= run.started_at <= run.completed_at
        assert run.records_processed + run.records_failed == run.batch_size

    def test_empty_batch_completes(self, engine, pipeline_id):
        status = engine.get_run_status(engine.submit_run(pipeline_id, []))

        assert status["status"] == "COMPLETED"
        assert status["batchSize"] == 0
        assert status["metrics"]["chunks_processed"] == 0


@pytest.mark.integration
def test_engine_with_sql_error_log(settings, tmp_path):
    settings.ERROR_LOG_DATABASE_URL = f"sqlite:///{tmp_path / 'errors.db'}"
    engine = TaxonomyEngine(settings=settings)
    engine.register_category("demographics", "Demographics")
    with pytest.raises(PipelineNotFoundError):
        engine.register_validation_rule("missing", {"type": "not_null", "fields": ["age"]})

    [entry] = engine.error_sink.query(source="validation")
    assert entry.context == {"pipeline_id": "missing"}
    assert engine.error_sink.store.get(entry.id) is not None
