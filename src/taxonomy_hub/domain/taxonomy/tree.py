"""
Hierarchical category/attribute registry.

Categories live in an arena keyed by their unique code, with an explicit
``child code -> parent code`` index. No category holds a reference to another
category object, so the only way to walk the hierarchy is through the tree's
own lookups, and cycles are rejected by a bounded ancestor walk at insertion
or re-parenting time.

Example:
    >>> tree = TaxonomyTree()
    >>> tree.add_category("demographics", "Demographics")
    >>> tree.add_category("age_groups", "Age Groups", parent_code="demographics")
    >>> tree.add_attribute(
    ...     "age_groups", "age_group", "closed-set",
    ...     allowed_values=["Gen Z", "Millennials"],
    ... )
    >>> tree.resolve("age_groups", "age_group").data_type
    <AttributeDataType.CLOSED_SET: 'closed-set'>
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from threading import RLock
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import ValidationError

from taxonomy_hub.domain.exceptions import (
    AttributeNotFoundError,
    CategoryNotFoundError,
    ConfigurationError,
    CycleDetectedError,
    DuplicateCodeError,
    ParentNotFoundError,
)
from taxonomy_hub.domain.taxonomy.models import (
    ATTRIBUTE_RULE_SCHEMAS,
    CODE_PATTERN,
    AttributeDataType,
    TaxonomyAttribute,
    TaxonomyCategory,
)
from taxonomy_hub.utils.logging import get_logger

logger = get_logger(__name__)


def validate_code(code: str, kind: str = "category") -> str:
    if not isinstance(code, str) or not CODE_PATTERN.match(code):
        raise ConfigurationError(
            f"Invalid {kind} code {code!r}: must match {CODE_PATTERN.pattern}"
        )
    return code


class TaxonomyTree:
    """Owns taxonomy categories and attributes and their hierarchy invariants."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._categories: Dict[str, TaxonomyCategory] = {}
        self._parent_index: Dict[str, Optional[str]] = {}
        # category code -> attribute code -> attribute
        self._attributes: Dict[str, Dict[str, TaxonomyAttribute]] = {}

    # --- Categories -------------------------------------------------------
    def add_category(
        self,
        code: str,
        name: str,
        parent_code: Optional[str] = None,
        description: Optional[str] = None,
    ) -> TaxonomyCategory:
        """
        Register a new category, optionally under an existing active parent.

        Raises:
            DuplicateCodeError: If the code is already registered
            ParentNotFoundError: If the parent is unknown or inactive
            CycleDetectedError: If the ancestor walk reaches the new code
        """
        validate_code(code)
        if not name or not str(name).strip():
            raise ConfigurationError("Category name cannot be empty")

        with self._lock:
            if code in self._categories:
                raise DuplicateCodeError(code, scope="category")

            parent_id = None
            if parent_code is not None:
                parent = self._categories.get(parent_code)
                if parent is None:
                    raise ParentNotFoundError(parent_code)
                if not parent.is_active:
                    raise ParentNotFoundError(parent_code, reason="is inactive")
                # a fresh code cannot already be an ancestor; checked regardless
                self._check_cycle(code, parent_code)
                parent_id = parent.id

            category = TaxonomyCategory(
                id=str(uuid.uuid4()),
                code=code,
                name=str(name).strip(),
                parent_id=parent_id,
                description=description,
            )
            self._categories[code] = category
            self._parent_index[code] = parent_code
            self._attributes[code] = {}

        logger.info(
            "taxonomy.category.added", code=code, parent_code=parent_code
        )
        return category

    def update_category(
        self,
        code: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> TaxonomyCategory:
        """Rename or re-describe a category. Codes are immutable."""
        with self._lock:
            current = self.get_category(code)
            changes: Dict[str, Any] = {}
            if name is not None:
                if not name.strip():
                    raise ConfigurationError("Category name cannot be empty")
                changes["name"] = name.strip()
            if description is not None:
                changes["description"] = description
            if not changes:
                return current
            updated = replace(current, version=current.version + 1, **changes)
            self._categories[code] = updated
        return updated

    def reparent_category(
        self, code: str, new_parent_code: Optional[str]
    ) -> TaxonomyCategory:
        """
        Move a category (and its subtree) under a new parent.

        Raises:
            CycleDetectedError: If the new parent is the category itself or one
                of its descendants
        """
        with self._lock:
            current = self.get_category(code)
            parent_id = None
            if new_parent_code is not None:
                parent = self._categories.get(new_parent_code)
                if parent is None:
                    raise ParentNotFoundError(new_parent_code)
                if not parent.is_active:
                    raise ParentNotFoundError(new_parent_code, reason="is inactive")
                self._check_cycle(code, new_parent_code)
                parent_id = parent.id

            updated = replace(
                current, parent_id=parent_id, version=current.version + 1
            )
            self._categories[code] = updated
            self._parent_index[code] = new_parent_code

        logger.info(
            "taxonomy.category.reparented", code=code, parent_code=new_parent_code
        )
        return updated

    def deactivate_category(self, code: str) -> TaxonomyCategory:
        with self._lock:
            current = self.get_category(code)
            if not current.is_active:
                return current
            updated = replace(current, is_active=False, version=current.version + 1)
            self._categories[code] = updated
        logger.info("taxonomy.category.deactivated", code=code)
        return updated

    def get_category(self, code: str) -> TaxonomyCategory:
        category = self._categories.get(code)
        if category is None:
            raise CategoryNotFoundError(code)
        return category

    def has_category(self, code: str) -> bool:
        return code in self._categories

    def categories(self, active_only: bool = False) -> List[TaxonomyCategory]:
        return [
            category
            for category in self._categories.values()
            if category.is_active or not active_only
        ]

    def parent_code(self, code: str) -> Optional[str]:
        self.get_category(code)
        return self._parent_index.get(code)

    def children(self, code: Optional[str], active_only: bool = False) -> List[TaxonomyCategory]:
        """Direct children of ``code`` (root categories when ``code`` is None)."""
        if code is not None:
            self.get_category(code)
        return [
            self._categories[child]
            for child, parent in self._parent_index.items()
            if parent == code and (self._categories[child].is_active or not active_only)
        ]

    def ancestors(self, code: str) -> List[str]:
        """Ancestor codes from the direct parent up to the root."""
        self.get_category(code)
        chain: List[str] = []
        current = self._parent_index.get(code)
        # the index is acyclic; the bound guards against a corrupted index
        for _ in range(len(self._categories)):
            if current is None:
                return chain
            chain.append(current)
            current = self._parent_index.get(current)
        raise CycleDetectedError(code, chain[-1] if chain else code)

    def _check_cycle(self, code: str, parent_code: str) -> None:
        current: Optional[str] = parent_code
        for _ in range(len(self._categories) + 1):
            if current is None:
                return
            if current == code:
                raise CycleDetectedError(code, parent_code)
            current = self._parent_index.get(current)
        raise CycleDetectedError(code, parent_code)

    # --- Attributes -------------------------------------------------------
    def add_attribute(
        self,
        category_code: str,
        code: str,
        data_type: Any,
        rules: Optional[Mapping[str, Any]] = None,
        *,
        name: Optional[str] = None,
        allowed_values: Optional[Iterable[Any]] = None,
        is_required: bool = False,
    ) -> TaxonomyAttribute:
        """
        Register an attribute under an existing category.

        ``rules`` is validated against the schema for ``data_type``:
        ``number`` takes ``{min, max, decimals}``, ``string`` takes
        ``{pattern}``; ``closed-set`` needs ``allowed_values``.

        Raises:
            CategoryNotFoundError: If the owning category is unknown
            DuplicateCodeError: If the code exists within the category
            ConfigurationError: If the data type or its rules are invalid
        """
        validate_code(code, kind="attribute")
        try:
            dtype = AttributeDataType.parse(data_type)
        except ValueError:
            raise ConfigurationError(f"Unknown attribute data type {data_type!r}") from None

        validation_rules = self._validate_attribute_rules(dtype, rules)
        values = self._validate_allowed_values(dtype, allowed_values)

        with self._lock:
            category = self.get_category(category_code)
            owned = self._attributes[category_code]
            if code in owned:
                raise DuplicateCodeError(code, scope=f"attribute:{category_code}")

            attribute = TaxonomyAttribute(
                id=str(uuid.uuid4()),
                category_id=category.id,
                category_code=category_code,
                code=code,
                name=name or code.replace("_", " ").title(),
                data_type=dtype,
                allowed_values=values,
                validation_rules=validation_rules,
                is_required=is_required,
            )
            owned[code] = attribute

        logger.info(
            "taxonomy.attribute.added",
            category_code=category_code,
            code=code,
            data_type=dtype.value,
        )
        return attribute

    def resolve(self, category_code: str, attribute_code: str) -> TaxonomyAttribute:
        """
        Look up an attribute by its category and attribute codes.

        Raises:
            CategoryNotFoundError: If the category is unknown
            AttributeNotFoundError: If the category has no such attribute
        """
        owned = self._attributes.get(category_code)
        if owned is None:
            raise CategoryNotFoundError(category_code)
        attribute = owned.get(attribute_code)
        if attribute is None:
            raise AttributeNotFoundError(category_code, attribute_code)
        return attribute

    def attributes(self, category_code: str) -> List[TaxonomyAttribute]:
        self.get_category(category_code)
        return list(self._attributes[category_code].values())

    def to_tree(self, active_only: bool = False) -> List[Dict[str, Any]]:
        """Nested view: root categories with their children and attributes."""

        def build(category: TaxonomyCategory) -> Dict[str, Any]:
            node = category.to_dict()
            node["attributes"] = [
                attribute.to_dict()
                for attribute in self._attributes[category.code].values()
            ]
            node["children"] = [
                build(child) for child in self.children(category.code, active_only)
            ]
            return node

        return [build(root) for root in self.children(None, active_only)]

    @staticmethod
    def _validate_attribute_rules(
        dtype: AttributeDataType, rules: Optional[Mapping[str, Any]]
    ) -> Dict[str, Any]:
        if not rules:
            return {}
        schema = ATTRIBUTE_RULE_SCHEMAS.get(dtype)
        if schema is None:
            raise ConfigurationError(
                f"Attributes of type '{dtype.value}' take no validation rules"
            )
        try:
            return schema.model_validate(dict(rules)).model_dump(exclude_none=True)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid validation rules for '{dtype.value}' attribute: {exc}"
            ) from exc

    @staticmethod
    def _validate_allowed_values(
        dtype: AttributeDataType, allowed_values: Optional[Iterable[Any]]
    ) -> tuple:
        values = tuple(allowed_values or ())
        if dtype is AttributeDataType.CLOSED_SET:
            if not values:
                raise ConfigurationError("closed-set attributes require allowed_values")
            try:
                distinct = set(values)
            except TypeError:
                raise ConfigurationError(
                    "allowed_values must be scalar labels (strings, numbers or booleans)"
                ) from None
            if len(distinct) != len(values):
                raise ConfigurationError("allowed_values must not contain duplicates")
        elif values:
            raise ConfigurationError(
                f"allowed_values only apply to closed-set attributes, not '{dtype.value}'"
            )
        return values
