"""Mapping rules and transformation strategies."""

from taxonomy_hub.domain.mapping.models import (
    EvaluationResult,
    MappingRule,
    ShadowedRule,
    TransformFailure,
)
from taxonomy_hub.domain.mapping.rule_set import MappingRuleSet
from taxonomy_hub.domain.mapping.schemas import parse_transformation_rule
from taxonomy_hub.domain.mapping.strategies import apply_transformation

__all__ = [
    "EvaluationResult",
    "MappingRule",
    "MappingRuleSet",
    "ShadowedRule",
    "TransformFailure",
    "apply_transformation",
    "parse_transformation_rule",
]
