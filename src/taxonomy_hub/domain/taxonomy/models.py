"""
Taxonomy data model: categories, attributes and attribute rule payloads.

Categories and attributes are immutable value objects; the owning
``TaxonomyTree`` replaces them wholesale when a structural change bumps the
version.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

CODE_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")


class AttributeDataType(str, Enum):
    """Value domain of a taxonomy attribute."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    CLOSED_SET = "closed-set"

    @classmethod
    def parse(cls, value: Any) -> "AttributeDataType":
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        # definitions exported from the survey tool call closed sets "enum"
        if text == "enum":
            return cls.CLOSED_SET
        return cls(text)


@dataclass(frozen=True)
class TaxonomyCategory:
    id: str
    code: str
    name: str
    parent_id: Optional[str] = None
    description: Optional[str] = None
    is_active: bool = True
    version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "parentId": self.parent_id,
            "description": self.description,
            "isActive": self.is_active,
            "version": self.version,
        }


@dataclass(frozen=True)
class TaxonomyAttribute:
    """
    A canonical output attribute owned by one category.

    Attributes:
        id: Attribute identifier
        category_id: Identifier of the owning category
        category_code: Code of the owning category (lookup key)
        code: Code unique within the owning category
        name: Display name
        data_type: Value domain
        allowed_values: Closed set of labels (closed-set attributes only)
        validation_rules: Type-specific bounds/pattern payload
        is_required: Whether every mapped record must carry a value
    """

    id: str
    category_id: str
    category_code: str
    code: str
    name: str
    data_type: AttributeDataType
    allowed_values: Tuple[Any, ...] = ()
    validation_rules: Dict[str, Any] = field(default_factory=dict)
    is_required: bool = False

    @property
    def qualified_code(self) -> str:
        return f"{self.category_code}.{self.code}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "categoryId": self.category_id,
            "categoryCode": self.category_code,
            "code": self.code,
            "name": self.name,
            "dataType": self.data_type.value,
            "allowedValues": list(self.allowed_values) or None,
            "validationRules": dict(self.validation_rules) or None,
            "isRequired": self.is_required,
        }


# ---------------------------------------------------------------------------
# Attribute rule payloads, one schema per data type
# ---------------------------------------------------------------------------


class NumberAttributeRules(BaseModel):
    """Bounds for ``number`` attributes, e.g. ``{"min": 0, "max": 24, "decimals": 1}``."""

    model_config = ConfigDict(extra="allow")

    min: Optional[float] = None
    max: Optional[float] = None
    decimals: Optional[int] = Field(default=None, ge=0, le=12)

    @model_validator(mode="after")
    def check_bounds(self) -> "NumberAttributeRules":
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError(f"min ({self.min}) must not exceed max ({self.max})")
        return self


class StringAttributeRules(BaseModel):
    """Pattern for ``string`` attributes, e.g. ``{"pattern": "^[A-Z]{2}$"}``."""

    model_config = ConfigDict(extra="allow")

    pattern: Optional[str] = None

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            try:
                re.compile(v)
            except re.error as exc:
                raise ValueError(f"Invalid pattern {v!r}: {exc}") from exc
        return v


ATTRIBUTE_RULE_SCHEMAS = {
    AttributeDataType.NUMBER: NumberAttributeRules,
    AttributeDataType.STRING: StringAttributeRules,
}
