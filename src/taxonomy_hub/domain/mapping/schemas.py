"""
Typed schemas for mapping-rule transformation payloads.

A transformation rule is persisted as a discriminated payload: a ``type`` tag
plus a type-specific body. Each tag has exactly one schema below; the payload
is validated against it when the rule is registered, so evaluation never has
to shape-check. Unknown tags are rejected, never coerced.

Payload examples:
    {"type": "range_map", "ranges": [{"min": 16, "max": 24, "value": "Gen Z"}]}
    {"type": "lookup", "table": {"US": "United States"}, "normalize": "uppercase"}
    {"type": "lookup", "lookup_table": "country_codes", "normalize": "uppercase"}
    {"type": "pass_through", "validation": {"min": 0, "max": 10}}
    {"type": "numeric", "round": 1, "clamp": {"min": 0, "max": 24}}
    {"type": "number", "round": 2}
"""

from __future__ import annotations

import re
from decimal import Decimal
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

TRANSFORMATION_TYPES = ("range_map", "lookup", "pass_through", "numeric")

# Stored tags accepted for an existing type; the tag is kept as written.
TYPE_ALIASES = {"number": "numeric"}


def canonical_type(rule_type: str) -> str:
    return TYPE_ALIASES.get(rule_type, rule_type)


def _decimal(value: Number) -> Decimal:
    return Decimal(str(value))


class _Body(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RangeBand(_Body):
    """Inclusive ``[min, max]`` band mapped to a label."""

    min: Number
    max: Number
    value: Any

    @model_validator(mode="after")
    def check_order(self) -> "RangeBand":
        if self.min > self.max:
            raise ValueError(f"range min ({self.min}) exceeds max ({self.max})")
        return self


class RangeMapRule(_Body):
    type: Literal["range_map"] = "range_map"
    ranges: List[RangeBand] = Field(..., min_length=1)

    _lower_bounds: List[Decimal] = PrivateAttr(default_factory=list)
    _upper_bounds: List[Decimal] = PrivateAttr(default_factory=list)

    @field_validator("ranges")
    @classmethod
    def check_sorted_and_disjoint(cls, v: List[RangeBand]) -> List[RangeBand]:
        for previous, current in zip(v, v[1:]):
            if current.min < previous.min:
                raise ValueError("ranges must be sorted ascending by lower bound")
            if current.min <= previous.max:
                raise ValueError(
                    f"ranges overlap: [{previous.min}, {previous.max}] and "
                    f"[{current.min}, {current.max}]"
                )
        return v

    def model_post_init(self, __context: Any) -> None:
        self._lower_bounds = [_decimal(band.min) for band in self.ranges]
        self._upper_bounds = [_decimal(band.max) for band in self.ranges]

    @property
    def lower_bounds(self) -> List[Decimal]:
        return self._lower_bounds

    @property
    def upper_bounds(self) -> List[Decimal]:
        return self._upper_bounds

    def labels(self) -> List[Any]:
        return [band.value for band in self.ranges]


NormalizeMode = Literal["uppercase", "lowercase", "none"]


def normalize_key(value: Any, mode: str) -> str:
    text = str(value).strip()
    if mode == "uppercase":
        return text.upper()
    if mode == "lowercase":
        return text.lower()
    return text


class LookupRule(_Body):
    """
    Normalized key -> value table.

    Either an inline ``table`` or a ``lookup_table`` name; named tables are
    swapped for their inline contents when the rule is registered.
    """

    type: Literal["lookup"] = "lookup"
    table: Optional[Dict[str, Any]] = None
    lookup_table: Optional[str] = None
    normalize: NormalizeMode = "none"

    @model_validator(mode="after")
    def check_source(self) -> "LookupRule":
        if (self.table is None) == (self.lookup_table is None):
            raise ValueError("exactly one of 'table' or 'lookup_table' is required")
        if self.table is not None:
            normalized: Dict[str, Any] = {}
            for key, value in self.table.items():
                norm = normalize_key(key, self.normalize)
                if norm in normalized and normalized[norm] != value:
                    raise ValueError(
                        f"lookup keys collide after '{self.normalize}' normalization: {key!r}"
                    )
                normalized[norm] = value
            self.table = normalized
        return self

    def labels(self) -> List[Any]:
        return list((self.table or {}).values())


class PassThroughValidation(_Body):
    min: Optional[Number] = None
    max: Optional[Number] = None
    pattern: Optional[str] = None

    _compiled: Optional[Any] = PrivateAttr(default=None)

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            try:
                re.compile(v)
            except re.error as exc:
                raise ValueError(f"invalid pattern {v!r}: {exc}") from exc
        return v

    @model_validator(mode="after")
    def check_bounds(self) -> "PassThroughValidation":
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError(f"min ({self.min}) exceeds max ({self.max})")
        return self

    def model_post_init(self, __context: Any) -> None:
        if self.pattern is not None:
            self._compiled = re.compile(self.pattern)

    @property
    def compiled_pattern(self) -> Optional["re.Pattern[str]"]:
        return self._compiled


class PassThroughRule(_Body):
    type: Literal["pass_through"] = "pass_through"
    validation: PassThroughValidation = Field(default_factory=PassThroughValidation)


class Clamp(_Body):
    min: Optional[Number] = None
    max: Optional[Number] = None

    @model_validator(mode="after")
    def check_bounds(self) -> "Clamp":
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError(f"clamp min ({self.min}) exceeds max ({self.max})")
        return self


class NumericRule(_Body):
    """Round to ``round`` decimal places, then clamp into ``[clamp.min, clamp.max]``."""

    type: Literal["numeric", "number"] = "numeric"
    round: Optional[int] = Field(default=None, ge=0, le=12)
    clamp: Optional[Clamp] = None


TransformationRule = Annotated[
    Union[RangeMapRule, LookupRule, PassThroughRule, NumericRule],
    Field(discriminator="type"),
]

_ADAPTER: TypeAdapter = TypeAdapter(TransformationRule)


def parse_transformation_rule(payload: Union[Mapping[str, Any], BaseModel]) -> Any:
    """
    Validate a discriminated transformation payload into its typed body.

    Raises:
        InvalidRulePayloadError: Unknown ``type`` tag or a malformed body
    """
    if isinstance(payload, (RangeMapRule, LookupRule, PassThroughRule, NumericRule)):
        return payload
    if not isinstance(payload, Mapping):
        raise InvalidRulePayloadError(
            f"Transformation rule must be a mapping, got {type(payload).__name__}"
        )
    rule_type = payload.get("type")
    if rule_type not in TRANSFORMATION_TYPES + tuple(TYPE_ALIASES):
        raise InvalidRulePayloadError(
            f"Unknown transformation rule type {rule_type!r}; "
            f"expected one of {', '.join(TRANSFORMATION_TYPES)}",
            payload=dict(payload),
        )
    try:
        return _ADAPTER.validate_python(dict(payload))
    except ValidationError as exc:
        raise InvalidRulePayloadError(
            f"Invalid '{rule_type}' transformation rule: {exc}", payload=dict(payload)
        ) from exc


def dump_transformation_rule(body: BaseModel) -> Dict[str, Any]:
    """Serialize a typed body back to its persisted payload form."""
    return body.model_dump(mode="json", exclude_none=True)
