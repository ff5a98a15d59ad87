"""TaxonomyHub: taxonomy-driven mapping and validation engine."""

__version__ = "0.1.0"
