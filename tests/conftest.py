"""Shared fixtures: settings without .env, a seeded taxonomy and an engine with a demo pipeline."""

from __future__ import annotations

from typing import Any, Dict, List

import pytest

from taxonomy_hub.config.settings import Settings
from taxonomy_hub.domain.mapping import MappingRuleSet
from taxonomy_hub.domain.taxonomy import TaxonomyTree
from taxonomy_hub.infrastructure.error_sink import ErrorSink
from taxonomy_hub.service import TaxonomyEngine

GENERATION_RANGES = {
    "type": "range_map",
    "ranges": [
        {"min": 16, "max": 24, "value": "Gen Z"},
        {"min": 25, "max": 40, "value": "Millennials"},
        {"min": 41, "max": 56, "value": "Gen X"},
    ],
}

COUNTRY_TABLE = {"US": "United States", "GB": "United Kingdom", "DE": "Germany"}

INCOME_BRACKETS = ["Low", "Medium", "High"]


def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        MAX_WORKERS=2,
        CHUNK_SIZE=10,
        ERROR_LOG_LIMIT=100,
        RETRY_MAX_ATTEMPTS=3,
        RETRY_BACKOFF_BASE=0.0,
    )


def seed_taxonomy(tree: TaxonomyTree) -> TaxonomyTree:
    tree.add_category("demographics", "Demographics")
    tree.add_category("geography", "Geography", parent_code="demographics")
    tree.add_category("finance", "Finance")
    tree.add_attribute(
        "demographics",
        "age_group",
        "closed-set",
        allowed_values=["Gen Z", "Millennials", "Gen X"],
    )
    tree.add_attribute("demographics", "age", "number", {"min": 0, "max": 120})
    tree.add_attribute(
        "geography", "country", "closed-set", allowed_values=list(COUNTRY_TABLE.values())
    )
    tree.add_attribute(
        "finance", "income_bracket", "closed-set", allowed_values=INCOME_BRACKETS
    )
    tree.add_attribute("finance", "screen_hours", "number", {"min": 0, "max": 24})
    return tree


@pytest.fixture
def tree() -> TaxonomyTree:
    return seed_taxonomy(TaxonomyTree())


@pytest.fixture
def rule_set(tree: TaxonomyTree) -> MappingRuleSet:
    return MappingRuleSet(tree)


@pytest.fixture
def error_sink() -> ErrorSink:
    return ErrorSink(retry_options={"sleep": no_sleep})


def seed_engine(engine: TaxonomyEngine) -> TaxonomyEngine:
    """Demo taxonomy, age and country mapping rules and a ``survey_core`` pipeline."""
    seed_taxonomy(engine.tree)
    engine.register_mapping_rule("age", "demographics", "age_group", GENERATION_RANGES, 1)
    engine.register_mapping_rule(
        "country_code",
        "geography",
        "country",
        {"type": "lookup", "table": COUNTRY_TABLE, "normalize": "uppercase"},
        1,
    )
    engine.register_pipeline("survey_core", "TRANSFORMATION", {"chunk_size": 10})
    return engine


@pytest.fixture
def engine_factory(settings: Settings, error_sink: ErrorSink):
    """Build seeded engines; keyword arguments go to the run coordinator."""

    def build(**coordinator_options: Any) -> TaxonomyEngine:
        coordinator_options.setdefault("retry_options", {"sleep": no_sleep})
        sink = coordinator_options.pop("error_sink", error_sink)
        return seed_engine(
            TaxonomyEngine(settings=settings, error_sink=sink, **coordinator_options)
        )

    return build


@pytest.fixture
def engine(engine_factory) -> TaxonomyEngine:
    return engine_factory()


@pytest.fixture
def pipeline_id(engine: TaxonomyEngine) -> str:
    return engine.coordinator.find_pipeline("survey_core").id


def make_records(count: int, **overrides: Any) -> List[Dict[str, Any]]:
    records = []
    for i in range(count):
        record = {"respondentId": f"r{i:04d}", "age": 20 + (i % 30), "country_code": "us"}
        record.update(overrides)
        records.append(record)
    return records


@pytest.fixture
def records_factory():
    return make_records
