"""
Pipeline configuration payload and schedule validation.

The configuration payload describes source/transform/destination for the
surrounding platform; the engine only reads the fields declared here and keeps
everything else untouched.
"""

import re
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from taxonomy_hub.domain.exceptions import ConfigurationError


class PipelineConfiguration(BaseModel):
    """
    Example:
        >>> PipelineConfiguration.model_validate(
        ...     {"source": {"type": "csv"}, "timeout_seconds": 300, "chunk_size": 1000}
        ... ).chunk_size
        1000
    """

    model_config = ConfigDict(extra="allow")

    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    chunk_size: Optional[int] = Field(default=None, ge=1)
    max_workers: Optional[int] = Field(default=None, ge=1)
    record_id_field: Optional[str] = None

    @field_validator("record_id_field")
    @classmethod
    def validate_record_id_field(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            raise ValueError("record_id_field cannot be blank")
        return v


# (name, lowest, highest) per cron field
_CRON_FIELDS: Tuple[Tuple[str, int, int], ...] = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day-of-month", 1, 31),
    ("month", 1, 12),
    ("day-of-week", 0, 7),
)
_CRON_ITEM = re.compile(r"^(\*|(\d+)(?:-(\d+))?)(?:/(\d+))?$")


def validate_schedule(schedule: Optional[str]) -> Optional[str]:
    """
    Check a five-field cron expression (None means on-demand).

    Raises:
        ConfigurationError: Wrong field count, bad syntax or out-of-range values
    """
    if schedule is None:
        return None
    text = schedule.strip()
    if not text:
        return None
    parts = text.split()
    if len(parts) != len(_CRON_FIELDS):
        raise ConfigurationError(
            f"Cron schedule must have 5 fields, got {len(parts)}: {schedule!r}"
        )
    for part, (name, low, high) in zip(parts, _CRON_FIELDS):
        for item in part.split(","):
            match = _CRON_ITEM.match(item)
            if match is None:
                raise ConfigurationError(f"Invalid cron {name} field {part!r}")
            _, start, end, step = match.groups()
            numbers = [int(n) for n in (start, end) if n is not None]
            if any(n < low or n > high for n in numbers):
                raise ConfigurationError(
                    f"Cron {name} value out of range {low}-{high}: {item!r}"
                )
            if len(numbers) == 2 and numbers[0] > numbers[1]:
                raise ConfigurationError(f"Cron {name} range is reversed: {item!r}")
            if step is not None and int(step) == 0:
                raise ConfigurationError(f"Cron {name} step cannot be zero: {item!r}")
    return " ".join(parts)
