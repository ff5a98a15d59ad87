"""Mapping rule records and per-record evaluation results."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from taxonomy_hub.domain.mapping.schemas import dump_transformation_rule
from taxonomy_hub.domain.types import Severity

TargetKey = Tuple[str, str]


@dataclass(frozen=True)
class MappingRule:
    """
    One raw field -> one taxonomy attribute transformation.

    Attributes:
        id: Rule identifier
        name: Human-readable label
        source_field: Field name (or dotted path) on the raw record
        target_category_code: Category owning the target attribute
        target_attribute_code: Target attribute code
        transformation_rule: Typed body as registered (persisted form)
        priority: Lower values are evaluated first
        is_active: Inactive rules never take part in evaluation
        severity: Disposition of a record whose transformation fails
        sequence: Registration order, used to break priority ties
        resolved_rule: Body used for evaluation (named lookups inlined)
    """

    id: str
    name: str
    source_field: str
    target_category_code: str
    target_attribute_code: str
    transformation_rule: Any
    priority: int
    is_active: bool = True
    severity: Severity = Severity.ERROR
    sequence: int = 0
    resolved_rule: Any = None

    @property
    def target(self) -> TargetKey:
        return (self.target_category_code, self.target_attribute_code)

    @property
    def rule_type(self) -> str:
        return self.transformation_rule.type

    @property
    def identity(self) -> Tuple[str, str, str, int]:
        return (
            self.source_field,
            self.target_category_code,
            self.target_attribute_code,
            self.priority,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "sourceField": self.source_field,
            "targetCategoryCode": self.target_category_code,
            "targetAttributeCode": self.target_attribute_code,
            "transformationRule": dump_transformation_rule(self.transformation_rule),
            "priority": self.priority,
            "isActive": self.is_active,
            "severity": self.severity.value,
        }


@dataclass(frozen=True)
class ShadowedRule:
    """A lower-ranked rule skipped because another rule resolved its target."""

    rule_id: str
    attribute_code: str
    applied_rule_id: str
    source_present: bool


@dataclass(frozen=True)
class TransformFailure:
    rule_id: str
    attribute_code: str
    source_field: str
    error_type: str
    message: str
    raw_value: Any = None
    severity: Severity = Severity.ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "attribute": self.attribute_code,
            "source_field": self.source_field,
            "error_type": self.error_type,
            "message": self.message,
            "raw_value": self.raw_value,
            "severity": self.severity.value,
        }


@dataclass
class EvaluationResult:
    """
    Outcome of mapping one raw record.

    Attributes:
        values: output key -> mapped value (attribute code, qualified on a code clash)
        applied: output key -> id of the rule that produced it
        targets: output key -> ``category.attribute`` of each mapped value
        shadowed: lower-ranked rules skipped per target (diagnostic only)
        failures: error-severity transformation failures (record fails)
        warnings: warning-severity transformation failures (attribute omitted)
        missing_required: required attributes no rule could populate
    """

    values: Dict[str, Any] = field(default_factory=dict)
    applied: Dict[str, str] = field(default_factory=dict)
    targets: Dict[str, str] = field(default_factory=dict)
    shadowed: List[ShadowedRule] = field(default_factory=list)
    failures: List[TransformFailure] = field(default_factory=list)
    warnings: List[TransformFailure] = field(default_factory=list)
    missing_required: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def shadowed_rule_ids(self) -> List[str]:
        return [entry.rule_id for entry in self.shadowed]

    def rule_for(self, attribute_code: str) -> Optional[str]:
        return self.applied.get(attribute_code)
