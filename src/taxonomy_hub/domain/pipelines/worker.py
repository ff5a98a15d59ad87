"""Record-level work: map, check required attributes, validate. Runs on pool threads."""

from __future__ import annotations

from collections import Counter
from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Sequence, Tuple

from taxonomy_hub.domain.mapping.rule_set import MappingRuleSet
from taxonomy_hub.domain.pipelines.accumulator import ChunkResult, RecordFailure
from taxonomy_hub.domain.types import Severity
from taxonomy_hub.domain.validation.engine import ValidationEngine
from taxonomy_hub.utils.logging import get_logger
from taxonomy_hub.utils.values import resolve_field

logger = get_logger(__name__)


def process_chunk(
    records: Sequence[Any],
    start: int,
    rule_set: MappingRuleSet,
    engine: ValidationEngine,
    record_id_field: str,
    groups: Optional[Tuple[Any, ...]] = None,
) -> ChunkResult:
    """
    Process ``records`` (batch positions ``start..``) without touching shared state.

    ``groups`` is the run's ``rule_set.snapshot()``; every record of a run is
    mapped against the same one.
    """
    if groups is None:
        groups = rule_set.snapshot()
    result = ChunkResult(start=start)
    for offset, record in enumerate(records):
        index = start + offset
        try:
            _process_record(result, index, record, rule_set, groups, engine, record_id_field)
        except Exception as exc:
            record_id = None
            if isinstance(record, Mapping):
                _, record_id = resolve_field(record, record_id_field)
            logger.exception(
                "pipeline.record.crashed", index=index, record_id=record_id, error=str(exc)
            )
            _fail(result, index, record_id, type(exc).__name__, str(exc))
    return result


def _fail(result: ChunkResult, index: int, record_id: Any, error_type: str, message: str) -> None:
    result.failed += 1
    result.failures.append(
        RecordFailure(
            index=index,
            record_id=record_id,
            errors=[{"error_type": error_type, "message": message}],
        )
    )


def _process_record(
    result: ChunkResult,
    index: int,
    record: Any,
    rule_set: MappingRuleSet,
    groups: Tuple[Any, ...],
    engine: ValidationEngine,
    record_id_field: str,
) -> None:
    if not isinstance(record, Mapping):
        _fail(
            result,
            index,
            None,
            "InvalidRecord",
            f"Record must be a mapping, got {type(record).__name__}",
        )
        return

    _, record_id = resolve_field(record, record_id_field)
    evaluation = rule_set.evaluate(record, groups)

    errors: List[Dict[str, Any]] = []
    warnings: List[Dict[str, Any]] = []
    for failure in evaluation.failures:
        errors.append(failure.to_dict())
    for failure in evaluation.warnings:
        warnings.append(failure.to_dict())
    for attribute_code in evaluation.missing_required:
        errors.append(
            {
                "error_type": "MissingRequired",
                "attribute": attribute_code,
                "severity": Severity.ERROR.value,
                "message": f"Required attribute '{attribute_code}' has no value",
            }
        )

    view = dict(record)
    view.update(evaluation.values)
    violations = engine.validate_record(view)

    # nothing is counted until the record has been fully evaluated
    result.shadowed += len(evaluation.shadowed)
    for failure in evaluation.failures + evaluation.warnings:
        result.rule_violations[failure.rule_id] += 1
    for violation in violations:
        entry = violation.to_dict()
        entry["error_type"] = f"Validation.{violation.kind}"
        result.rule_violations[violation.rule_id] += 1
        (errors if violation.is_error else warnings).append(entry)

    if warnings:
        result.warned += 1
        result.warnings.append({"index": index, "recordId": record_id, "warnings": warnings})

    if errors:
        result.failed += 1
        result.failures.append(RecordFailure(index=index, record_id=record_id, errors=errors))
        return

    result.processed += 1
    output = {record_id_field: record_id}
    output.update(evaluation.values)
    result.outputs.append(output)
    for key, value in evaluation.values.items():
        target = evaluation.targets.get(key, key)
        result.attribute_values.setdefault(target, Counter())[value] += 1
