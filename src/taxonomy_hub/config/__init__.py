"""Configuration management for TaxonomyHub.

Usage:
    >>> from taxonomy_hub.config import get_settings
    >>> settings = get_settings()
    >>> settings.MAX_WORKERS
    4
"""

from taxonomy_hub.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
