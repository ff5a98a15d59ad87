"""Per-record and aggregate validation."""

from taxonomy_hub.domain.validation.engine import ValidationEngine
from taxonomy_hub.domain.validation.registry import ValidationRuleRegistry
from taxonomy_hub.domain.validation.schemas import parse_validation_body
from taxonomy_hub.domain.validation.types import PipelineValidationRule, Violation

__all__ = [
    "PipelineValidationRule",
    "ValidationEngine",
    "ValidationRuleRegistry",
    "Violation",
    "parse_validation_body",
]
