"""
Transformation strategies, one pure function per mapping-rule kind.

Every strategy takes ``(raw_value, rule_body)`` and either returns the mapped
value or raises a ``TransformError`` subclass. No strategy keeps state, reads
the clock or mutates its inputs, so identical input and configuration always
produce identical output.
"""

from __future__ import annotations

import math
import numbers
from bisect import bisect_right
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, localcontext
from typing import Any, Callable, Dict

from taxonomy_hub.domain.exceptions import (
    TypeMismatchError,
    UnknownKeyError,
    UnmappedRangeError,
    ValidationFailedError,
)
from taxonomy_hub.domain.mapping.schemas import (
    TRANSFORMATION_TYPES,
    canonical_type,
    LookupRule,
    NumericRule,
    PassThroughRule,
    RangeMapRule,
    normalize_key,
)


def to_decimal(raw_value: Any) -> Decimal:
    """
    Coerce a raw numeric value (or numeric string) into a finite Decimal.

    Raises:
        TypeMismatchError: For booleans, non-numeric strings, NaN and infinity
    """
    if isinstance(raw_value, bool) or raw_value is None:
        raise TypeMismatchError(f"Expected a number, got {raw_value!r}", raw_value)

    if isinstance(raw_value, Decimal):
        value = raw_value
    elif isinstance(raw_value, numbers.Real):
        if isinstance(raw_value, float) and not math.isfinite(raw_value):
            raise TypeMismatchError(f"Expected a finite number, got {raw_value!r}", raw_value)
        value = Decimal(str(raw_value))
    elif isinstance(raw_value, str):
        try:
            value = Decimal(raw_value.strip())
        except InvalidOperation:
            raise TypeMismatchError(
                f"Expected a number, got {raw_value!r}", raw_value
            ) from None
    else:
        raise TypeMismatchError(
            f"Expected a number, got {type(raw_value).__name__}", raw_value
        )

    if not value.is_finite():
        raise TypeMismatchError(f"Expected a finite number, got {raw_value!r}", raw_value)
    return value


def apply_range_map(raw_value: Any, rule: RangeMapRule) -> Any:
    """Binary-search the pre-sorted, disjoint bands for the one containing the value."""
    value = to_decimal(raw_value)
    index = bisect_right(rule.lower_bounds, value) - 1
    if index >= 0 and value <= rule.upper_bounds[index]:
        return rule.ranges[index].value
    raise UnmappedRangeError(f"Value {raw_value!r} falls in no configured range", raw_value)


def apply_lookup(raw_value: Any, rule: LookupRule) -> Any:
    if rule.table is None:
        raise UnknownKeyError(
            f"Lookup table '{rule.lookup_table}' was never resolved", raw_value
        )
    key = normalize_key(raw_value, rule.normalize)
    try:
        return rule.table[key]
    except KeyError:
        raise UnknownKeyError(f"Unknown lookup key {key!r}", raw_value) from None


def apply_pass_through(raw_value: Any, rule: PassThroughRule) -> Any:
    bounds = rule.validation
    if bounds.min is not None or bounds.max is not None:
        value = to_decimal(raw_value)
        if bounds.min is not None and value < Decimal(str(bounds.min)):
            raise ValidationFailedError(
                f"Value {raw_value!r} is below minimum {bounds.min}", raw_value
            )
        if bounds.max is not None and value > Decimal(str(bounds.max)):
            raise ValidationFailedError(
                f"Value {raw_value!r} is above maximum {bounds.max}", raw_value
            )
    pattern = bounds.compiled_pattern
    if pattern is not None and not pattern.search(str(raw_value)):
        raise ValidationFailedError(
            f"Value {raw_value!r} does not match pattern {bounds.pattern!r}", raw_value
        )
    return raw_value


def apply_numeric(raw_value: Any, rule: NumericRule) -> float:
    """Round half-up to the configured precision, then clamp."""
    value = to_decimal(raw_value)
    if rule.round is not None:
        with localcontext() as ctx:
            # quantize needs every integer digit plus the requested places
            ctx.prec = max(ctx.prec, value.adjusted() + rule.round + 2)
            try:
                value = value.quantize(Decimal(1).scaleb(-rule.round), rounding=ROUND_HALF_UP)
            except InvalidOperation:
                raise TypeMismatchError(
                    f"Cannot round {raw_value!r} to {rule.round} places", raw_value
                ) from None
    if rule.clamp is not None:
        if rule.clamp.min is not None:
            value = max(value, Decimal(str(rule.clamp.min)))
        if rule.clamp.max is not None:
            value = min(value, Decimal(str(rule.clamp.max)))
    return float(value)


STRATEGIES: Dict[str, Callable[[Any, Any], Any]] = {
    "range_map": apply_range_map,
    "lookup": apply_lookup,
    "pass_through": apply_pass_through,
    "numeric": apply_numeric,
}

assert set(STRATEGIES) == set(TRANSFORMATION_TYPES)


def apply_transformation(raw_value: Any, rule: Any) -> Any:
    """Dispatch on the rule body's ``type`` discriminator."""
    return STRATEGIES[canonical_type(rule.type)](raw_value, rule)
