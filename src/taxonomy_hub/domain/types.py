"""Shared domain types."""

from enum import Enum
from typing import Any, Dict

# Raw input record as delivered by the batch source
Record = Dict[str, Any]


class Severity(str, Enum):
    """Validation severity: error is fatal to the record (or run), warning only logs."""

    ERROR = "error"
    WARNING = "warning"
