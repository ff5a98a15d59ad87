"""Structured error log shared by every engine component."""

from taxonomy_hub.infrastructure.error_sink.models import ErrorEntry
from taxonomy_hub.infrastructure.error_sink.sink import ErrorSink
from taxonomy_hub.infrastructure.error_sink.stores import ErrorLogStore, InMemoryErrorLogStore

__all__ = ["ErrorEntry", "ErrorLogStore", "ErrorSink", "InMemoryErrorLogStore"]
