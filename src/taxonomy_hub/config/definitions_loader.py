"""
Declarative engine definitions loaded from YAML.

A definitions file describes the taxonomy, named lookup tables, mapping rules,
pipelines and their validation rules. Sections are applied in that order and
entries within a section in file order (parents before children).

Example:
    categories:
      - {code: demographics, name: Demographics}
    attributes:
      - category: demographics
        code: age_group
        data_type: closed-set
        allowed_values: [Gen Z, Millennials, Gen X]
    mapping_rules:
      - source_field: age
        target: demographics.age_group
        transformation:
          type: range_map
          ranges:
            - {min: 16, max: 24, value: Gen Z}
    pipelines:
      - name: gwi_core
        type: TRANSFORMATION
        validation_rules:
          - name: duplicate respondents
            rule: {type: threshold, metric: duplication_rate, maxValue: 0.05}
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from taxonomy_hub.domain.exceptions import ConfigurationError
from taxonomy_hub.utils.logging import get_logger

if TYPE_CHECKING:
    from taxonomy_hub.domain.pipelines import DataPipeline
    from taxonomy_hub.service import TaxonomyEngine

logger = get_logger(__name__)


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class CategoryDefinition(_Section):
    code: str
    name: str
    parent: Optional[str] = Field(default=None, alias="parent_code")
    description: Optional[str] = None


class AttributeDefinition(_Section):
    category: str
    code: str
    data_type: str
    name: Optional[str] = None
    allowed_values: Optional[List[Any]] = None
    rules: Optional[Dict[str, Any]] = None
    is_required: bool = False


class MappingRuleDefinition(_Section):
    """``target`` is ``category.attribute``; the split fields are accepted too."""

    source_field: str
    transformation: Dict[str, Any]
    target: Optional[str] = None
    target_category: Optional[str] = None
    target_attribute: Optional[str] = None
    priority: int = 1
    name: Optional[str] = None
    severity: str = "error"
    is_active: bool = True
    id: Optional[str] = None

    @model_validator(mode="after")
    def split_target(self) -> "MappingRuleDefinition":
        if self.target is not None:
            category, _, attribute = self.target.partition(".")
            if not category or not attribute:
                raise ValueError(f"target must look like 'category.attribute': {self.target!r}")
            self.target_category, self.target_attribute = category, attribute
        if not self.target_category or not self.target_attribute:
            raise ValueError("mapping rule needs 'target' or target_category/target_attribute")
        return self


class ValidationRuleDefinition(_Section):
    rule: Dict[str, Any]
    name: Optional[str] = None
    severity: str = "error"
    is_active: bool = True
    id: Optional[str] = None


class PipelineDefinition(_Section):
    name: str
    type: str = "TRANSFORMATION"
    schedule: Optional[str] = None
    configuration: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    description: Optional[str] = None
    id: Optional[str] = None
    validation_rules: List[ValidationRuleDefinition] = Field(default_factory=list)


class Definitions(_Section):
    categories: List[CategoryDefinition] = Field(default_factory=list)
    attributes: List[AttributeDefinition] = Field(default_factory=list)
    lookup_tables: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    mapping_rules: List[MappingRuleDefinition] = Field(default_factory=list)
    pipelines: List[PipelineDefinition] = Field(default_factory=list)


def parse_definitions(data: Any, source: str = "<memory>") -> Definitions:
    """
    Raises:
        ConfigurationError: Document is not a mapping or fails schema validation
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Definitions in {source} must be a mapping at top level")
    try:
        return Definitions.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid definitions in {source}: {exc}") from exc


def load_definitions(path: Union[str, Path]) -> Definitions:
    """
    Read and validate a definitions file.

    Raises:
        ConfigurationError: File missing, invalid YAML or invalid structure
    """
    file_path = Path(path)
    if not file_path.exists():
        raise ConfigurationError(f"Definitions file not found: {file_path}")
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {file_path.name}: {exc}") from exc

    definitions = parse_definitions(data, source=file_path.name)
    logger.info(
        "definitions.loaded",
        file_path=str(file_path),
        categories=len(definitions.categories),
        attributes=len(definitions.attributes),
        mapping_rules=len(definitions.mapping_rules),
        pipelines=len(definitions.pipelines),
    )
    return definitions


def apply_definitions(
    engine: "TaxonomyEngine", definitions: Definitions
) -> Dict[str, "DataPipeline"]:
    """Register everything on ``engine``; returns the created pipelines by name."""
    for category in definitions.categories:
        engine.register_category(
            category.code, category.name, category.parent, category.description
        )
    for attribute in definitions.attributes:
        engine.register_attribute(
            attribute.category,
            attribute.code,
            attribute.data_type,
            attribute.rules,
            name=attribute.name,
            allowed_values=attribute.allowed_values,
            is_required=attribute.is_required,
        )
    for name, table in definitions.lookup_tables.items():
        engine.register_lookup_table(name, table)
    for rule in definitions.mapping_rules:
        engine.register_mapping_rule(
            rule.source_field,
            rule.target_category,
            rule.target_attribute,
            rule.transformation,
            rule.priority,
            name=rule.name,
            severity=rule.severity,
            is_active=rule.is_active,
            rule_id=rule.id,
        )

    pipelines: Dict[str, "DataPipeline"] = {}
    for item in definitions.pipelines:
        pipeline = engine.register_pipeline(
            item.name,
            item.type,
            item.configuration,
            item.schedule,
            is_active=item.is_active,
            description=item.description,
            pipeline_id=item.id,
        )
        for rule in item.validation_rules:
            engine.register_validation_rule(
                pipeline.id,
                rule.rule,
                rule.severity,
                name=rule.name,
                is_active=rule.is_active,
                rule_id=rule.id,
            )
        pipelines[pipeline.name] = pipeline
    return pipelines
