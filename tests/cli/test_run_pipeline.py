"""Tests for the run_pipeline CLI entry point."""

import json

import pytest

from taxonomy_hub.cli.run_pipeline import main, read_batch

DEFINITIONS_YAML = """
categories:
  - {code: demographics, name: Demographics}
attributes:
  - category: demographics
    code: age_group
    data_type: closed-set
    allowed_values: [Gen Z, Millennials]
mapping_rules:
  - source_field: age
    target: demographics.age_group
    transformation:
      type: range_map
      ranges:
        - {min: 16, max: 24, value: Gen Z}
        - {min: 25, max: 40, value: Millennials}
pipelines:
  - name: survey_core
"""


@pytest.fixture
def definitions(tmp_path):
    path = tmp_path / "definitions.yml"
    path.write_text(DEFINITIONS_YAML, encoding="utf-8")
    return path


def write_csv(path, rows):
    lines = ["respondentId,age"] + [f"{rid},{age}" for rid, age in rows]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


@pytest.mark.unit
class TestReadBatch:
    def test_csv(self, tmp_path):
        records = read_batch(write_csv(tmp_path / "batch.csv", [("r1", 20), ("r2", 30)]))
        assert [r["respondentId"] for r in records] == ["r1", "r2"]

    def test_json_records_envelope(self, tmp_path):
        path = tmp_path / "batch.json"
        path.write_text(json.dumps({"records": [{"respondentId": "r1"}]}), encoding="utf-8")
        assert read_batch(path) == [{"respondentId": "r1"}]

    def test_jsonl(self, tmp_path):
        path = tmp_path / "batch.jsonl"
        path.write_text('{"respondentId": "r1", "age": 20}\n{"respondentId": "r2", "age": 31}\n')
        assert [r["age"] for r in read_batch(path)] == [20, 31]

    def test_unsupported_extension(self, tmp_path):
        with pytest.raises(ValueError, match="Unsupported input format"):
            read_batch(tmp_path / "batch.xlsx")


@pytest.mark.unit
class TestMain:
    def test_completed_run_exits_zero(self, tmp_path, definitions, capsys):
        batch = write_csv(tmp_path / "batch.csv", [("r1", 20), ("r2", 30)])
        output = tmp_path / "status.json"

        code = main(
            [
                "--definitions", str(definitions),
                "--pipeline", "survey_core",
                "--input", str(batch),
                "--output", str(output),
            ]
        )

        assert code == 0
        status = json.loads(capsys.readouterr().out)
        assert status["status"] == "COMPLETED"
        assert status["recordsProcessed"] == 2
        assert json.loads(output.read_text(encoding="utf-8")) == status

    def test_record_failures_still_complete(self, tmp_path, definitions, capsys):
        batch = write_csv(tmp_path / "batch.csv", [("r1", 20), ("r2", 70)])

        code = main(["--definitions", str(definitions), "--pipeline", "survey_core", "--input", str(batch)])

        assert code == 0
        status = json.loads(capsys.readouterr().out)
        assert status["recordsFailed"] == 1
        assert status["errorLog"][0]["errorType"] == "UnmappedRange"

    def test_unknown_pipeline_exits_one(self, tmp_path, definitions, capsys):
        batch = write_csv(tmp_path / "batch.csv", [("r1", 20)])

        code = main(["--definitions", str(definitions), "--pipeline", "nope", "--input", str(batch)])

        assert code == 1
        assert "Unknown pipeline" in capsys.readouterr().err

    def test_missing_definitions_exits_one(self, tmp_path, capsys):
        code = main(
            ["--definitions", str(tmp_path / "none.yml"), "--pipeline", "x", "--input", "x.csv"]
        )

        assert code == 1
        assert "Failed to prepare run" in capsys.readouterr().err
