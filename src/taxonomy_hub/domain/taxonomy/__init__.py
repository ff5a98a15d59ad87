"""Taxonomy categories, attributes and the tree that owns them."""

from taxonomy_hub.domain.taxonomy.models import (
    AttributeDataType,
    TaxonomyAttribute,
    TaxonomyCategory,
)
from taxonomy_hub.domain.taxonomy.tree import TaxonomyTree

__all__ = [
    "AttributeDataType",
    "TaxonomyAttribute",
    "TaxonomyCategory",
    "TaxonomyTree",
]
