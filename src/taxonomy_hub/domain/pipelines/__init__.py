"""Pipelines, run state machine and the run coordinator."""

from taxonomy_hub.domain.pipelines.config import PipelineConfiguration, validate_schedule
from taxonomy_hub.domain.pipelines.coordinator import PipelineRunCoordinator
from taxonomy_hub.domain.pipelines.types import DataPipeline, PipelineRun, PipelineType, RunStatus

__all__ = [
    "DataPipeline",
    "PipelineConfiguration",
    "PipelineRun",
    "PipelineRunCoordinator",
    "PipelineType",
    "RunStatus",
    "validate_schedule",
]
