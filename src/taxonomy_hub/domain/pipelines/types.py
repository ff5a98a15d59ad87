"""
Pipeline and run records.

``PipelineRun`` is owned by the coordinator: only the coordinator mutates it,
always under its lock, and callers only ever see deep-copied snapshots.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from taxonomy_hub.domain.exceptions import InvalidTransitionError
from taxonomy_hub.domain.pipelines.config import PipelineConfiguration


class PipelineType(str, Enum):
    ETL = "ETL"
    AGGREGATION = "AGGREGATION"
    EXPORT = "EXPORT"
    SYNC = "SYNC"
    TRANSFORMATION = "TRANSFORMATION"


class RunStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)

    @property
    def is_active(self) -> bool:
        return not self.is_terminal

    def can_transition(self, target: "RunStatus") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS: Dict[RunStatus, FrozenSet[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING}),
    RunStatus.RUNNING: frozenset({RunStatus.COMPLETED, RunStatus.FAILED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
}


@dataclass(frozen=True)
class DataPipeline:
    """
    A registered pipeline.

    Attributes:
        id: Pipeline identifier
        name: Unique pipeline name
        type: Pipeline kind
        configuration: Validated configuration (opaque beyond the engine's fields)
        schedule: Five-field cron expression, None for on-demand
        is_active: Inactive pipelines reject new runs
        description: Optional free text
    """

    id: str
    name: str
    type: PipelineType
    configuration: PipelineConfiguration
    schedule: Optional[str] = None
    is_active: bool = True
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "configuration": self.configuration.model_dump(mode="json", exclude_none=True),
            "schedule": self.schedule,
            "isActive": self.is_active,
            "description": self.description,
        }


@dataclass
class PipelineRun:
    id: str
    pipeline_id: str
    created_at: datetime
    status: RunStatus = RunStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    batch_size: int = 0
    records_processed: int = 0
    records_failed: int = 0
    error_log: List[Dict[str, Any]] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)
    sequence: int = 0

    def transition(self, target: RunStatus, at: datetime) -> None:
        """
        Raises:
            InvalidTransitionError: ``target`` is not reachable from the current status
        """
        if not self.status.can_transition(target):
            raise InvalidTransitionError(self.id, self.status.value, target.value)
        self.status = target
        if target is RunStatus.RUNNING:
            self.started_at = at
        elif target.is_terminal:
            self.completed_at = at

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pipelineId": self.pipeline_id,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "batchSize": self.batch_size,
            "recordsProcessed": self.records_processed,
            "recordsFailed": self.records_failed,
            "errorLog": copy.deepcopy(self.error_log),
            "metrics": copy.deepcopy(self.metrics),
        }

    def snapshot(self) -> "PipelineRun":
        return copy.deepcopy(self)
