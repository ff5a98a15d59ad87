"""Validation rule records and violation results."""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from taxonomy_hub.domain.types import Severity
from taxonomy_hub.domain.validation.schemas import dump_validation_body


@dataclass(frozen=True)
class PipelineValidationRule:
    """
    A validation rule owned by one pipeline.

    Attributes:
        id: Rule identifier
        pipeline_id: Owning pipeline
        name: Human-readable label (shows up in errorLog entries)
        body: Typed rule body (see ``validation.schemas``)
        severity: ``error`` fails the record (or run, for thresholds); ``warning`` logs
        is_active: Inactive rules are never evaluated
        sequence: Registration order, evaluation follows it
    """

    id: str
    pipeline_id: str
    name: str
    body: Any
    severity: Severity = Severity.ERROR
    is_active: bool = True
    sequence: int = 0

    @property
    def kind(self) -> str:
        return self.body.type

    @property
    def is_aggregate(self) -> bool:
        return self.body.is_aggregate

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pipelineId": self.pipeline_id,
            "name": self.name,
            "rule": dump_validation_body(self.body),
            "severity": self.severity.value,
            "isActive": self.is_active,
        }


@dataclass(frozen=True)
class Violation:
    """
    One failed validation check.

    Attributes:
        rule_id: Violated rule
        rule_name: Violated rule's name
        kind: Rule kind (``not_null``, ``threshold``, ...) or ``missing_required``
        severity: Severity inherited from the rule
        message: Human-readable description
        field: Checked field, when the rule targets one
        value: Offending value (record rules) or observed metric (thresholds)
        group: Group key for grouped ``count`` thresholds
    """

    rule_id: str
    rule_name: str
    kind: str
    severity: Severity
    message: str
    field: Optional[str] = None
    value: Any = None
    group: Any = None

    @property
    def is_error(self) -> bool:
        return self.severity is Severity.ERROR

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "kind": self.kind,
            "severity": self.severity.value,
            "message": self.message,
        }
        if self.field is not None:
            data["field"] = self.field
        if self.value is not None:
            data["value"] = self.value
        if self.group is not None:
            data["group"] = self.group
        return data
