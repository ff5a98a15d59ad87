"""
Engine facade consumed by scheduling and orchestration collaborators.

Wires the taxonomy tree, mapping rules, validation rules, error sink and run
coordinator together and exposes the registration and run API. Configuration
failures are raised to the caller and also written to the error sink.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional

import sqlalchemy as sa

from taxonomy_hub.config import Settings, get_settings
from taxonomy_hub.domain.exceptions import ConfigurationError
from taxonomy_hub.domain.mapping import EvaluationResult, MappingRule, MappingRuleSet
from taxonomy_hub.domain.pipelines import DataPipeline, PipelineRunCoordinator
from taxonomy_hub.domain.taxonomy import TaxonomyAttribute, TaxonomyCategory, TaxonomyTree
from taxonomy_hub.domain.validation import PipelineValidationRule, ValidationRuleRegistry
from taxonomy_hub.infrastructure.error_sink import ErrorSink
from taxonomy_hub.io.repositories import ErrorLogRepository
from taxonomy_hub.utils.logging import get_logger

logger = get_logger(__name__)


def build_error_sink(settings: Settings) -> ErrorSink:
    """In-memory sink, or one backed by ``error_log`` when a database URL is configured."""
    url = settings.ERROR_LOG_DATABASE_URL
    if not url:
        return ErrorSink()
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    engine = sa.create_engine(url, connect_args=connect_args)
    repository = ErrorLogRepository(engine.connect())
    repository.ensure_table()
    return ErrorSink(store=repository)


class TaxonomyEngine:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        error_sink: Optional[ErrorSink] = None,
        **coordinator_options: Any,
    ) -> None:
        """
        Args:
            settings: Engine settings (``get_settings()`` when omitted)
            error_sink: Shared sink (built from settings when omitted)
            coordinator_options: ``clock``, ``now`` and ``retry_options`` for the coordinator
        """
        self.settings = settings or get_settings()
        self.error_sink = error_sink if error_sink is not None else build_error_sink(self.settings)
        self.tree = TaxonomyTree()
        self.rule_set = MappingRuleSet(self.tree)
        self.validation_rules = ValidationRuleRegistry()
        self.coordinator = PipelineRunCoordinator(
            self.rule_set,
            self.validation_rules,
            self.error_sink,
            self.settings,
            **coordinator_options,
        )

    @contextmanager
    def _reporting(self, source: str, **context: Any) -> Iterator[None]:
        try:
            yield
        except ConfigurationError as exc:
            self.error_sink.record(
                source,
                type(exc).__name__,
                str(exc),
                context={k: v for k, v in context.items() if v is not None},
            )
            raise

    # --- Taxonomy -----------------------------------------------------------
    def register_category(
        self,
        code: str,
        name: str,
        parent_code: Optional[str] = None,
        description: Optional[str] = None,
    ) -> TaxonomyCategory:
        with self._reporting("taxonomy", code=code, parent_code=parent_code):
            return self.tree.add_category(code, name, parent_code, description)

    def register_attribute(
        self,
        category_code: str,
        code: str,
        data_type: Any,
        rules: Optional[Mapping[str, Any]] = None,
        **options: Any,
    ) -> TaxonomyAttribute:
        with self._reporting("taxonomy", category_code=category_code, code=code):
            return self.tree.add_attribute(category_code, code, data_type, rules, **options)

    # --- Mapping ------------------------------------------------------------
    def register_lookup_table(self, name: str, table: Mapping[str, Any]) -> None:
        with self._reporting("mapping", lookup_table=name):
            self.rule_set.register_lookup_table(name, table)

    def register_mapping_rule(
        self,
        source_field: str,
        target_category_code: str,
        target_attribute_code: str,
        transformation_rule: Any,
        priority: int = 1,
        **options: Any,
    ) -> MappingRule:
        with self._reporting(
            "mapping",
            source_field=source_field,
            target=f"{target_category_code}.{target_attribute_code}",
        ):
            return self.rule_set.register_rule(
                source_field,
                target_category_code,
                target_attribute_code,
                transformation_rule,
                priority,
                **options,
            )

    def deactivate_mapping_rule(self, rule_id: str) -> MappingRule:
        return self.rule_set.deactivate_rule(rule_id)

    def evaluate(self, record: Mapping[str, Any]) -> EvaluationResult:
        return self.rule_set.evaluate(dict(record))

    # --- Pipelines ----------------------------------------------------------
    def register_pipeline(
        self,
        name: str,
        pipeline_type: Any = "TRANSFORMATION",
        configuration: Optional[Mapping[str, Any]] = None,
        schedule: Optional[str] = None,
        **options: Any,
    ) -> DataPipeline:
        with self._reporting("pipeline", name=name):
            return self.coordinator.register_pipeline(
                name, pipeline_type, configuration, schedule, **options
            )

    def register_validation_rule(
        self,
        pipeline_id: str,
        rule: Any,
        severity: Any = "error",
        **options: Any,
    ) -> PipelineValidationRule:
        """
        Raises:
            PipelineNotFoundError: Unknown pipeline
            InvalidRulePayloadError: Unknown ``type`` or malformed body
        """
        with self._reporting("validation", pipeline_id=pipeline_id):
            self.coordinator.get_pipeline(pipeline_id)
            return self.validation_rules.register(pipeline_id, rule, severity, **options)

    # --- Runs ---------------------------------------------------------------
    def submit_run(self, pipeline_id: str, batch: Any, *, wait: bool = True) -> str:
        return self.coordinator.submit(pipeline_id, batch, wait=wait)

    def get_run_status(self, run_id: str) -> Dict[str, Any]:
        return self.coordinator.status(run_id)

    def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        return self.coordinator.wait(run_id, timeout)

    def get_run_output(self, run_id: str) -> List[Dict[str, Any]]:
        return self.coordinator.run_output(run_id)

    def cancel_run(self, run_id: str) -> bool:
        return self.coordinator.cancel(run_id)

    def list_runs(self, pipeline_id: Optional[str] = None, status: Any = None) -> List[Dict[str, Any]]:
        return self.coordinator.list_runs(pipeline_id, status)

    def run_statistics(self, pipeline_id: str) -> Dict[str, Any]:
        return self.coordinator.run_statistics(pipeline_id)
