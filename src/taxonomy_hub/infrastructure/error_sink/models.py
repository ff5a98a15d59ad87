"""Error log entry record."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ErrorEntry:
    """
    One structured error surfaced to operators.

    Attributes:
        id: Entry identifier
        source: Reporting component (``pipeline_run``, ``mapping``, ``taxonomy``, ...)
        source_id: Identifier within the source (run id, rule id, ...)
        error_type: Classification (``UnmappedRange``, ``threshold``, ``cancelled``, ...)
        message: Human-readable description
        context: Free-form structured details
        created_at: When the error was recorded
        stack_trace: Formatted traceback for infrastructure errors
        resolved_at: When an operator resolved it (None while open)
    """

    id: str
    source: str
    error_type: str
    message: str
    created_at: datetime
    source_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def resolved(self, when: datetime) -> "ErrorEntry":
        return replace(self, resolved_at=when)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "sourceId": self.source_id,
            "errorType": self.error_type,
            "message": self.message,
            "stackTrace": self.stack_trace,
            "context": copy.deepcopy(self.context),
            "createdAt": self.created_at.isoformat(),
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
        }
