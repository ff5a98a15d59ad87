"""
Per-record and aggregate validation.

``ValidationEngine`` is an immutable snapshot of one pipeline's active rules,
taken when a run starts, so rule edits never change a run midway. Record rules
run once per mapped record; threshold rules run once per batch over the
surviving output, built as a pandas DataFrame.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import pandas as pd

from taxonomy_hub.domain.exceptions import TypeMismatchError
from taxonomy_hub.domain.mapping.strategies import to_decimal
from taxonomy_hub.domain.types import Severity
from taxonomy_hub.domain.validation.schemas import (
    EnumCheck,
    NotNullCheck,
    RangeCheck,
    RegexCheck,
    ThresholdCheck,
)
from taxonomy_hub.domain.validation.types import PipelineValidationRule, Violation
from taxonomy_hub.utils.logging import get_logger
from taxonomy_hub.utils.values import is_missing, resolve_field

logger = get_logger(__name__)


def _violation(rule: PipelineValidationRule, message: str, **extra: Any) -> Violation:
    return Violation(
        rule_id=rule.id,
        rule_name=rule.name,
        kind=rule.kind,
        severity=rule.severity,
        message=message,
        **extra,
    )


def _out_of_bounds(
    observed: Any, lower: Optional[Any], upper: Optional[Any]
) -> Optional[str]:
    if lower is not None and observed < lower:
        return f"below minimum {lower}"
    if upper is not None and observed > upper:
        return f"above maximum {upper}"
    return None


# --- Per-record checks ------------------------------------------------------


def check_not_null(rule: PipelineValidationRule, values: Mapping[str, Any]) -> List[Violation]:
    body: NotNullCheck = rule.body
    violations = []
    for name in body.fields:
        _, value = resolve_field(values, name)
        if is_missing(value, blank_is_missing=True):
            violations.append(_violation(rule, f"'{name}' is null or missing", field=name))
    return violations


def check_range(rule: PipelineValidationRule, values: Mapping[str, Any]) -> List[Violation]:
    body: RangeCheck = rule.body
    present, value = resolve_field(values, body.field)
    if not present:
        return []
    try:
        number = to_decimal(value)
    except TypeMismatchError:
        return [_violation(rule, f"'{body.field}' is not numeric", field=body.field, value=value)]
    lower = Decimal(str(body.min)) if body.min is not None else None
    upper = Decimal(str(body.max)) if body.max is not None else None
    problem = _out_of_bounds(number, lower, upper)
    if problem:
        return [_violation(rule, f"'{body.field}' {problem}", field=body.field, value=value)]
    return []


def check_regex(rule: PipelineValidationRule, values: Mapping[str, Any]) -> List[Violation]:
    body: RegexCheck = rule.body
    present, value = resolve_field(values, body.field)
    if present and not body.compiled_pattern.search(str(value)):
        return [
            _violation(
                rule,
                f"'{body.field}' does not match {body.pattern!r}",
                field=body.field,
                value=value,
            )
        ]
    return []


def check_enum(rule: PipelineValidationRule, values: Mapping[str, Any]) -> List[Violation]:
    body: EnumCheck = rule.body
    present, value = resolve_field(values, body.field)
    if present and value not in body.values:
        return [
            _violation(
                rule, f"'{body.field}' is not one of the allowed values", field=body.field, value=value
            )
        ]
    return []


RECORD_CHECKS: Dict[str, Callable[[PipelineValidationRule, Mapping[str, Any]], List[Violation]]] = {
    "not_null": check_not_null,
    "range": check_range,
    "regex": check_regex,
    "enum": check_enum,
}


# --- Aggregate metrics ------------------------------------------------------


class BatchContext:
    """Run-level facts the aggregate metrics need beyond the output frame."""

    def __init__(self, batch_size: int, records_failed: int, record_id_field: str):
        self.batch_size = batch_size
        self.records_failed = records_failed
        self.record_id_field = record_id_field


def _rate(numerator: int, denominator: int) -> float:
    return float(numerator) / denominator if denominator else 0.0


def check_threshold(
    rule: PipelineValidationRule, frame: pd.DataFrame, context: BatchContext
) -> List[Violation]:
    body: ThresholdCheck = rule.body
    lower, upper = body.min_value, body.max_value
    rows = len(frame)

    if body.metric == "count":
        columns = body.group_columns
        if not columns or rows == 0:
            problem = _out_of_bounds(rows, lower, upper)
            if problem:
                return [_violation(rule, f"record count {rows} {problem}", value=rows)]
            return []
        absent = [column for column in columns if column not in frame.columns]
        if absent:
            return [
                _violation(
                    rule,
                    f"group-by field '{column}' is absent from the output",
                    field=column,
                )
                for column in absent
            ]
        sizes = frame.groupby(columns, dropna=False, sort=False).size()
        violations = []
        for group, size in sizes.items():
            values = group if isinstance(group, tuple) else (group,)
            values = tuple(None if is_missing(v) else v for v in values)
            # single-column groups keep the bare value, compound groups map column -> value
            group_key = values[0] if len(columns) == 1 else dict(zip(columns, values))
            label = ", ".join(f"{c}={v!r}" for c, v in zip(columns, values))
            problem = _out_of_bounds(int(size), lower, upper)
            if problem:
                violations.append(
                    _violation(
                        rule,
                        f"group {label} has {int(size)} records, {problem}",
                        field=",".join(columns),
                        value=int(size),
                        group=group_key,
                    )
                )
        violations.sort(key=lambda v: repr(v.group))
        return violations

    if body.metric == "duplication_rate":
        field = body.field or context.record_id_field
        if rows and field not in frame.columns:
            return [
                _violation(rule, f"field '{field}' is absent from the output", field=field)
            ]
        duplicates = int(frame[field].dropna().duplicated(keep="first").sum()) if rows else 0
        observed = _rate(duplicates, rows)
        label = f"duplication rate of '{field}'"
    elif body.metric == "null_rate":
        field = body.field
        if field in frame.columns:
            nulls = int(frame[field].map(lambda v: is_missing(v, blank_is_missing=True)).sum())
        else:
            nulls = rows
        observed = _rate(nulls, rows)
        label = f"null rate of '{field}'"
    else:
        field = None
        observed = _rate(context.records_failed, context.batch_size)
        label = "record failure rate"

    observed = round(observed, 6)
    problem = _out_of_bounds(observed, lower, upper)
    if problem:
        return [_violation(rule, f"{label} {observed:.2%} {problem}", field=field, value=observed)]
    return []


class ValidationEngine:
    """Evaluates one pipeline's validation rules with severity semantics."""

    def __init__(
        self,
        rules: Iterable[PipelineValidationRule],
        record_id_field: str = "respondentId",
    ) -> None:
        active = sorted((r for r in rules if r.is_active), key=lambda r: r.sequence)
        self.record_rules = tuple(r for r in active if not r.is_aggregate)
        self.aggregate_rules = tuple(r for r in active if r.is_aggregate)
        self.record_id_field = record_id_field

    def validate_record(self, values: Mapping[str, Any]) -> List[Violation]:
        """Run every per-record rule; the caller decides disposition by severity."""
        violations: List[Violation] = []
        for rule in self.record_rules:
            violations.extend(RECORD_CHECKS[rule.kind](rule, values))
        return violations

    def validate_aggregate(
        self,
        records: Sequence[Mapping[str, Any]],
        *,
        batch_size: Optional[int] = None,
        records_failed: int = 0,
    ) -> List[Violation]:
        """
        Run threshold rules over the batch output.

        Must only be called once every record of the batch has been mapped and
        validated. ``batch_size`` defaults to ``len(records) + records_failed``.
        """
        if not self.aggregate_rules:
            return []
        frame = pd.DataFrame.from_records(list(records))
        context = BatchContext(
            batch_size=batch_size if batch_size is not None else len(records) + records_failed,
            records_failed=records_failed,
            record_id_field=self.record_id_field,
        )
        violations: List[Violation] = []
        for rule in self.aggregate_rules:
            found = check_threshold(rule, frame, context)
            for violation in found:
                log = logger.error if violation.severity is Severity.ERROR else logger.warning
                log(
                    "validation.aggregate.violation",
                    rule_id=rule.id,
                    rule_name=rule.name,
                    metric=rule.body.metric,
                    observed=violation.value,
                    severity=violation.severity.value,
                )
            violations.extend(found)
        return violations
