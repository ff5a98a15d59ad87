"""
Mapping rule registry and per-record evaluation.

Rules are validated against the taxonomy when they are registered (fail fast on
configuration, not on data). Evaluation groups active rules by target
attribute, orders each group by ``(priority, registration order)`` and applies
only the first rule whose source field is present; every lower-ranked rule in
that group is reported as shadowed. Outputs are keyed by attribute code, or by
``category.attribute`` where two mapped categories share an attribute code.
"""

from __future__ import annotations

import numbers
import re
import uuid
from collections import Counter
from dataclasses import replace
from itertools import count
from threading import RLock
from typing import Any, Dict, List, Mapping, Optional, Tuple

from taxonomy_hub.domain.exceptions import (
    CategoryNotFoundError,
    ConfigurationError,
    RuleConflictError,
    TransformError,
    TypeMismatchConfigError,
    TypeMismatchError,
    ValidationFailedError,
)
from taxonomy_hub.domain.mapping.models import (
    EvaluationResult,
    MappingRule,
    ShadowedRule,
    TargetKey,
    TransformFailure,
)
from taxonomy_hub.domain.mapping.schemas import (
    LookupRule,
    NumericRule,
    PassThroughRule,
    parse_transformation_rule,
)
from taxonomy_hub.domain.mapping.strategies import apply_transformation
from taxonomy_hub.domain.taxonomy.models import AttributeDataType, TaxonomyAttribute
from taxonomy_hub.domain.taxonomy.tree import TaxonomyTree
from taxonomy_hub.domain.types import Record, Severity
from taxonomy_hub.utils.logging import get_logger
from taxonomy_hub.utils.values import resolve_field

logger = get_logger(__name__)

_Group = Tuple[str, TaxonomyAttribute, Tuple[MappingRule, ...]]


def _label_fits(attribute: TaxonomyAttribute, label: Any) -> bool:
    dtype = attribute.data_type
    if dtype is AttributeDataType.CLOSED_SET:
        return label in attribute.allowed_values
    if dtype is AttributeDataType.STRING:
        return isinstance(label, str)
    if dtype is AttributeDataType.NUMBER:
        return isinstance(label, numbers.Real) and not isinstance(label, bool)
    return isinstance(label, bool)


def conform_to_attribute(attribute: TaxonomyAttribute, value: Any) -> Any:
    """
    Check a mapped value against its attribute's domain.

    Raises:
        TypeMismatchError: Value has the wrong type for the attribute
        ValidationFailedError: Value is outside the attribute's bounds or set
    """
    dtype = attribute.data_type
    rules = attribute.validation_rules

    if dtype is AttributeDataType.CLOSED_SET:
        if value not in attribute.allowed_values:
            raise ValidationFailedError(
                f"{value!r} is not an allowed value of '{attribute.code}'", value
            )
    elif dtype is AttributeDataType.BOOLEAN:
        if not isinstance(value, bool):
            raise TypeMismatchError(f"'{attribute.code}' expects a boolean", value)
    elif dtype is AttributeDataType.NUMBER:
        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            raise TypeMismatchError(f"'{attribute.code}' expects a number", value)
        if rules.get("min") is not None and value < rules["min"]:
            raise ValidationFailedError(
                f"{value!r} is below the minimum of '{attribute.code}'", value
            )
        if rules.get("max") is not None and value > rules["max"]:
            raise ValidationFailedError(
                f"{value!r} is above the maximum of '{attribute.code}'", value
            )
    else:
        if not isinstance(value, str):
            raise TypeMismatchError(f"'{attribute.code}' expects a string", value)
        pattern = rules.get("pattern")
        if pattern is not None:
            if not re.search(pattern, value):
                raise ValidationFailedError(
                    f"{value!r} does not match the pattern of '{attribute.code}'", value
                )
    return value


class MappingRuleSet:
    """Resolves, orders and applies mapping rules for incoming records."""

    def __init__(
        self,
        tree: TaxonomyTree,
        lookup_tables: Optional[Mapping[str, Mapping[str, Any]]] = None,
    ) -> None:
        self._tree = tree
        self._lock = RLock()
        self._rules: Dict[str, MappingRule] = {}
        self._lookup_tables: Dict[str, Dict[str, Any]] = {
            name: dict(table) for name, table in (lookup_tables or {}).items()
        }
        self._sequence = count()
        self._groups: Optional[Tuple[_Group, ...]] = None

    # --- Registration -----------------------------------------------------
    def register_lookup_table(self, name: str, table: Mapping[str, Any]) -> None:
        """Make a named table available to ``lookup`` rules registered afterwards."""
        if not name:
            raise ConfigurationError("Lookup table name cannot be empty")
        with self._lock:
            self._lookup_tables[name] = dict(table)

    def register_rule(
        self,
        source_field: str,
        target_category_code: str,
        target_attribute_code: str,
        transformation_rule: Any,
        priority: int = 1,
        *,
        name: Optional[str] = None,
        is_active: bool = True,
        severity: Any = Severity.ERROR,
        rule_id: Optional[str] = None,
    ) -> MappingRule:
        """
        Validate and register a mapping rule.

        Raises:
            InvalidRulePayloadError: Unknown or malformed transformation payload
            CategoryNotFoundError: Target category unknown or inactive
            AttributeNotFoundError: Target attribute unknown
            TypeMismatchConfigError: Rule output cannot populate the attribute
            RuleConflictError: Identical active rule or duplicate rule id
        """
        if not source_field or not str(source_field).strip():
            raise ConfigurationError("Mapping rule source_field cannot be empty")
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ConfigurationError(f"Mapping rule priority must be an integer: {priority!r}")
        try:
            severity = Severity(severity)
        except ValueError:
            raise ConfigurationError(f"Unknown severity {severity!r}") from None

        body = parse_transformation_rule(transformation_rule)
        attribute = self._tree.resolve(target_category_code, target_attribute_code)
        if not self._tree.get_category(target_category_code).is_active:
            raise CategoryNotFoundError(target_category_code, reason="is inactive")

        with self._lock:
            resolved = self._resolve_lookup(body)
            self._check_compatibility(attribute, resolved)

            rule = MappingRule(
                id=rule_id or str(uuid.uuid4()),
                name=name or f"{source_field} -> {attribute.qualified_code}",
                source_field=str(source_field).strip(),
                target_category_code=target_category_code,
                target_attribute_code=target_attribute_code,
                transformation_rule=body,
                priority=priority,
                is_active=is_active,
                severity=severity,
                sequence=next(self._sequence),
                resolved_rule=resolved,
            )
            if rule.id in self._rules:
                raise RuleConflictError("Rule id already registered", rule.id)
            if is_active:
                self._check_conflicts(rule)
            self._rules[rule.id] = rule
            self._groups = None

        logger.info(
            "mapping.rule.registered",
            rule_id=rule.id,
            source_field=rule.source_field,
            target=attribute.qualified_code,
            rule_type=body.type,
            priority=priority,
        )
        return rule

    def deactivate_rule(self, rule_id: str) -> MappingRule:
        with self._lock:
            rule = self.get_rule(rule_id)
            updated = replace(rule, is_active=False)
            self._rules[rule_id] = updated
            self._groups = None
        logger.info("mapping.rule.deactivated", rule_id=rule_id)
        return updated

    def get_rule(self, rule_id: str) -> MappingRule:
        try:
            return self._rules[rule_id]
        except KeyError:
            raise ConfigurationError(f"Mapping rule '{rule_id}' does not exist") from None

    def rules(self, active_only: bool = False) -> List[MappingRule]:
        ordered = sorted(self._rules.values(), key=lambda r: r.sequence)
        return [rule for rule in ordered if rule.is_active or not active_only]

    def _resolve_lookup(self, body: Any) -> Any:
        if not isinstance(body, LookupRule) or body.lookup_table is None:
            return body
        table = self._lookup_tables.get(body.lookup_table)
        if table is None:
            raise ConfigurationError(
                f"Lookup table '{body.lookup_table}' is not registered"
            )
        return LookupRule(table=table, normalize=body.normalize)

    @staticmethod
    def _check_compatibility(attribute: TaxonomyAttribute, body: Any) -> None:
        if isinstance(body, NumericRule):
            if attribute.data_type is not AttributeDataType.NUMBER:
                raise TypeMismatchConfigError(
                    f"numeric rules need a number attribute; "
                    f"'{attribute.qualified_code}' is {attribute.data_type.value}"
                )
            return
        if isinstance(body, PassThroughRule):
            return
        bad = [label for label in body.labels() if not _label_fits(attribute, label)]
        if bad:
            raise TypeMismatchConfigError(
                f"Rule produces values {bad!r} that '{attribute.qualified_code}' "
                f"({attribute.data_type.value}) cannot hold"
            )

    def _check_conflicts(self, rule: MappingRule) -> None:
        for existing in self._rules.values():
            if not existing.is_active:
                continue
            if existing.identity == rule.identity:
                raise RuleConflictError(
                    "An identical active mapping rule already exists", existing.id
                )

    # --- Evaluation -------------------------------------------------------
    def snapshot(self) -> Tuple[_Group, ...]:
        """
        Active rules grouped by target, in evaluation order.

        Each group is ``(output_key, attribute, rules)``. The output key is the
        attribute code, or ``category.attribute`` when two active targets share
        a code. The tuple is never mutated; registration and deactivation build
        a new one, so a caller holding it keeps one consistent rule set.
        """
        groups = self._groups
        if groups is not None:
            return groups
        with self._lock:
            if self._groups is None:
                by_target: Dict[TargetKey, List[MappingRule]] = {}
                for rule in self._rules.values():
                    if rule.is_active:
                        by_target.setdefault(rule.target, []).append(rule)
                built = []
                for target, rules in by_target.items():
                    ordered = tuple(sorted(rules, key=lambda r: (r.priority, r.sequence)))
                    built.append((self._tree.resolve(*target), ordered))
                built.sort(key=lambda group: group[0].qualified_code)
                codes = Counter(attribute.code for attribute, _ in built)
                self._groups = tuple(
                    (
                        attribute.qualified_code if codes[attribute.code] > 1 else attribute.code,
                        attribute,
                        rules,
                    )
                    for attribute, rules in built
                )
            return self._groups

    def evaluate(
        self, record: Record, groups: Optional[Tuple[_Group, ...]] = None
    ) -> EvaluationResult:
        """
        Map one raw record into attribute values.

        ``groups`` is a ``snapshot()`` to evaluate against; the current rules
        are used when omitted. Transformation failures never raise:
        error-severity failures land in ``failures`` (the record fails),
        warning-severity ones in ``warnings``.
        """
        result = EvaluationResult()
        for key, attribute, rules in self.snapshot() if groups is None else groups:
            applied: Optional[MappingRule] = None
            for rule in rules:
                present, raw_value = resolve_field(record, rule.source_field)
                if applied is not None:
                    result.shadowed.append(
                        ShadowedRule(
                            rule_id=rule.id,
                            attribute_code=key,
                            applied_rule_id=applied.id,
                            source_present=present,
                        )
                    )
                    continue
                if not present:
                    continue

                applied = rule
                result.applied[key] = rule.id
                try:
                    value = apply_transformation(raw_value, rule.resolved_rule)
                    result.values[key] = conform_to_attribute(attribute, value)
                    result.targets[key] = attribute.qualified_code
                except TransformError as exc:
                    failure = TransformFailure(
                        rule_id=rule.id,
                        attribute_code=key,
                        source_field=rule.source_field,
                        error_type=exc.error_type,
                        message=str(exc),
                        raw_value=raw_value,
                        severity=rule.severity,
                    )
                    if rule.severity is Severity.ERROR:
                        result.failures.append(failure)
                    else:
                        result.warnings.append(failure)

            if applied is None and attribute.is_required:
                result.missing_required.append(key)
        return result
