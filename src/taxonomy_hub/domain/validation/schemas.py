"""
Typed schemas for pipeline validation rule bodies.

Per-record kinds: ``not_null``, ``range``, ``regex``, ``enum``.
Aggregate kind: ``threshold`` (evaluated once per batch, after the barrier).

Payload examples:
    {"type": "not_null", "fields": ["respondentId", "age_group"]}
    {"type": "range", "field": "age", "min": 16, "max": 64}
    {"type": "regex", "field": "country", "pattern": "^[A-Z]{2}$"}
    {"type": "enum", "field": "gender", "values": ["Male", "Female", "Other"]}
    {"type": "threshold", "metric": "count", "groupBy": "country", "minValue": 30}
    {"type": "threshold", "metric": "count", "groupBy": ["country", "age_group"], "minValue": 30}
    {"type": "threshold", "metric": "duplication_rate", "maxValue": 0.05}
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)
from typing_extensions import Annotated

from taxonomy_hub.domain.exceptions import InvalidRulePayloadError

Number = Union[int, float]

RECORD_RULE_TYPES = ("not_null", "range", "regex", "enum")
AGGREGATE_RULE_TYPES = ("threshold",)
VALIDATION_TYPES = RECORD_RULE_TYPES + AGGREGATE_RULE_TYPES

ThresholdMetric = Literal["count", "duplication_rate", "null_rate", "failure_rate"]


class _Body(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @property
    def is_aggregate(self) -> bool:
        return self.type in AGGREGATE_RULE_TYPES  # type: ignore[attr-defined]


class NotNullCheck(_Body):
    type: Literal["not_null"] = "not_null"
    fields: List[str] = Field(..., min_length=1)


class RangeCheck(_Body):
    type: Literal["range"] = "range"
    field: str
    min: Optional[Number] = None
    max: Optional[Number] = None

    @model_validator(mode="after")
    def check_bounds(self) -> "RangeCheck":
        if self.min is None and self.max is None:
            raise ValueError("range rule needs at least one of 'min' or 'max'")
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError(f"min ({self.min}) exceeds max ({self.max})")
        return self


class RegexCheck(_Body):
    type: Literal["regex"] = "regex"
    field: str
    pattern: str

    _compiled: Optional[Any] = PrivateAttr(default=None)

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as exc:
            raise ValueError(f"invalid pattern {v!r}: {exc}") from exc
        return v

    def model_post_init(self, __context: Any) -> None:
        self._compiled = re.compile(self.pattern)

    @property
    def compiled_pattern(self) -> "re.Pattern[str]":
        return self._compiled


class EnumCheck(_Body):
    type: Literal["enum"] = "enum"
    field: str
    values: List[Any] = Field(..., min_length=1)


class ThresholdCheck(_Body):
    """
    Batch-level metric bounded by ``minValue`` and/or ``maxValue``.

    ``count`` compares each ``groupBy`` group's size (or the total when no
    grouping is configured); the ``*_rate`` metrics are fractions in [0, 1].
    """

    type: Literal["threshold"] = "threshold"
    metric: ThresholdMetric
    min_value: Optional[Number] = Field(default=None, alias="minValue")
    max_value: Optional[Number] = Field(default=None, alias="maxValue")
    group_by: Optional[Union[str, List[str]]] = Field(default=None, alias="groupBy")
    field: Optional[str] = None

    @field_validator("group_by")
    @classmethod
    def group_by_not_empty(cls, value: Optional[Union[str, List[str]]]) -> Any:
        if value is not None:
            columns = [value] if isinstance(value, str) else value
            if not columns or any(not column.strip() for column in columns):
                raise ValueError("'groupBy' needs at least one non-blank column")
            if len(set(columns)) != len(columns):
                raise ValueError("'groupBy' lists a column twice")
        return value

    @model_validator(mode="after")
    def check_shape(self) -> "ThresholdCheck":
        if self.min_value is None and self.max_value is None:
            raise ValueError("threshold rule needs at least one of 'minValue' or 'maxValue'")
        if (
            self.min_value is not None
            and self.max_value is not None
            and self.min_value > self.max_value
        ):
            raise ValueError(
                f"minValue ({self.min_value}) exceeds maxValue ({self.max_value})"
            )
        if self.metric == "null_rate" and not self.field:
            raise ValueError("null_rate threshold needs a 'field'")
        if self.group_by is not None and self.metric != "count":
            raise ValueError("'groupBy' is only supported for the count metric")
        return self

    @property
    def group_columns(self) -> List[str]:
        """``groupBy`` as a column list (a single name is stored as given)."""
        if self.group_by is None:
            return []
        return [self.group_by] if isinstance(self.group_by, str) else list(self.group_by)


ValidationBody = Annotated[
    Union[NotNullCheck, RangeCheck, RegexCheck, EnumCheck, ThresholdCheck],
    Field(discriminator="type"),
]

_ADAPTER: TypeAdapter = TypeAdapter(ValidationBody)
_BODY_CLASSES = (NotNullCheck, RangeCheck, RegexCheck, EnumCheck, ThresholdCheck)


def parse_validation_body(payload: Union[Mapping[str, Any], BaseModel]) -> Any:
    """
    Validate a discriminated validation payload into its typed body.

    Raises:
        InvalidRulePayloadError: Unknown ``type`` tag or a malformed body
    """
    if isinstance(payload, _BODY_CLASSES):
        return payload
    if not isinstance(payload, Mapping):
        raise InvalidRulePayloadError(
            f"Validation rule must be a mapping, got {type(payload).__name__}"
        )
    rule_type = payload.get("type")
    if rule_type not in VALIDATION_TYPES:
        raise InvalidRulePayloadError(
            f"Unknown validation rule type {rule_type!r}; "
            f"expected one of {', '.join(VALIDATION_TYPES)}",
            payload=dict(payload),
        )
    try:
        return _ADAPTER.validate_python(dict(payload))
    except ValidationError as exc:
        raise InvalidRulePayloadError(
            f"Invalid '{rule_type}' validation rule: {exc}", payload=dict(payload)
        ) from exc


def dump_validation_body(body: BaseModel) -> Dict[str, Any]:
    return body.model_dump(mode="json", by_alias=True, exclude_none=True)
