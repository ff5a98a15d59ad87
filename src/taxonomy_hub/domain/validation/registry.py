"""Per-pipeline store of validation rules."""

import uuid
from dataclasses import replace
from itertools import count
from threading import RLock
from typing import Any, Dict, List, Optional

from taxonomy_hub.domain.exceptions import ConfigurationError
from taxonomy_hub.domain.types import Severity
from taxonomy_hub.domain.validation.engine import ValidationEngine
from taxonomy_hub.domain.validation.schemas import dump_validation_body, parse_validation_body
from taxonomy_hub.domain.validation.types import PipelineValidationRule
from taxonomy_hub.utils.logging import get_logger

logger = get_logger(__name__)


class ValidationRuleRegistry:
    """
    Holds validation rules keyed by pipeline id.

    Pipeline existence is checked by the caller; the registry only validates
    rule payloads.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._rules: Dict[str, PipelineValidationRule] = {}
        self._sequence = count()

    def register(
        self,
        pipeline_id: str,
        rule: Any,
        severity: Any = Severity.ERROR,
        *,
        name: Optional[str] = None,
        is_active: bool = True,
        rule_id: Optional[str] = None,
    ) -> PipelineValidationRule:
        """
        Raises:
            InvalidRulePayloadError: Unknown ``type`` tag or malformed body
            ConfigurationError: Unknown severity or duplicate rule id
        """
        body = parse_validation_body(rule)
        try:
            severity = Severity(severity)
        except ValueError:
            raise ConfigurationError(f"Unknown severity {severity!r}") from None

        with self._lock:
            rule_id = rule_id or str(uuid.uuid4())
            if rule_id in self._rules:
                raise ConfigurationError(f"Validation rule '{rule_id}' already exists")
            registered = PipelineValidationRule(
                id=rule_id,
                pipeline_id=pipeline_id,
                name=name or f"{body.type}:{rule_id[:8]}",
                body=body,
                severity=severity,
                is_active=is_active,
                sequence=next(self._sequence),
            )
            self._rules[rule_id] = registered

        logger.info(
            "validation.rule.registered",
            pipeline_id=pipeline_id,
            rule_id=rule_id,
            rule_type=body.type,
            severity=severity.value,
            rule=dump_validation_body(body),
        )
        return registered

    def get(self, rule_id: str) -> PipelineValidationRule:
        try:
            return self._rules[rule_id]
        except KeyError:
            raise ConfigurationError(f"Validation rule '{rule_id}' does not exist") from None

    def deactivate(self, rule_id: str) -> PipelineValidationRule:
        with self._lock:
            updated = replace(self.get(rule_id), is_active=False)
            self._rules[rule_id] = updated
        logger.info("validation.rule.deactivated", rule_id=rule_id)
        return updated

    def rules_for(self, pipeline_id: str, active_only: bool = False) -> List[PipelineValidationRule]:
        with self._lock:
            rules = [r for r in self._rules.values() if r.pipeline_id == pipeline_id]
        rules.sort(key=lambda r: r.sequence)
        return [r for r in rules if r.is_active or not active_only]

    def engine_for(self, pipeline_id: str, record_id_field: str) -> ValidationEngine:
        """Snapshot the pipeline's active rules for one run."""
        return ValidationEngine(self.rules_for(pipeline_id, active_only=True), record_id_field)
