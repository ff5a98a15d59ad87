"""Storage backends for the error sink."""

from __future__ import annotations

from datetime import datetime
from threading import Lock
from typing import Dict, List, Optional

from typing_extensions import Protocol, runtime_checkable

from taxonomy_hub.infrastructure.error_sink.models import ErrorEntry


@runtime_checkable
class ErrorLogStore(Protocol):
    """Backend contract. Implementations may raise; the sink retries."""

    def add(self, entry: ErrorEntry) -> None: ...

    def get(self, entry_id: str) -> Optional[ErrorEntry]: ...

    def mark_resolved(self, entry_id: str, resolved_at: datetime) -> bool: ...

    def query(
        self,
        source: Optional[str] = None,
        error_type: Optional[str] = None,
        source_id: Optional[str] = None,
        unresolved_only: bool = False,
    ) -> List[ErrorEntry]: ...


class InMemoryErrorLogStore:
    """Process-local store, the default backend."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: Dict[str, ErrorEntry] = {}

    def add(self, entry: ErrorEntry) -> None:
        with self._lock:
            self._entries[entry.id] = entry

    def get(self, entry_id: str) -> Optional[ErrorEntry]:
        return self._entries.get(entry_id)

    def mark_resolved(self, entry_id: str, resolved_at: datetime) -> bool:
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return False
            if not entry.is_resolved:
                self._entries[entry_id] = entry.resolved(resolved_at)
            return True

    def query(
        self,
        source: Optional[str] = None,
        error_type: Optional[str] = None,
        source_id: Optional[str] = None,
        unresolved_only: bool = False,
    ) -> List[ErrorEntry]:
        with self._lock:
            entries = list(self._entries.values())
        return [
            entry
            for entry in entries
            if (source is None or entry.source == source)
            and (error_type is None or entry.error_type == error_type)
            and (source_id is None or entry.source_id == source_id)
            and not (unresolved_only and entry.is_resolved)
        ]

    def __len__(self) -> int:
        return len(self._entries)
