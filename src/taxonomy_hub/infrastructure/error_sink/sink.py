"""
Shared, queryable error log.

Every component reports errors through one ``ErrorSink``. ``record`` never
raises: backend writes are retried with bounded backoff and an entry whose
write still fails is kept in a local pending buffer (and counted) so nothing is
silently dropped. ``flush_pending`` retries the buffer later.
"""

from __future__ import annotations

import traceback
import uuid
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional

from taxonomy_hub.domain.exceptions import ErrorEntryNotFoundError
from taxonomy_hub.infrastructure.error_sink.models import ErrorEntry
from taxonomy_hub.infrastructure.error_sink.stores import ErrorLogStore, InMemoryErrorLogStore
from taxonomy_hub.utils.logging import get_logger
from taxonomy_hub.utils.retry import call_with_retry

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ErrorSink:
    def __init__(
        self,
        store: Optional[ErrorLogStore] = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
        retry_options: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Args:
            store: Backend (in-memory when omitted)
            clock: Timestamp source for ``createdAt`` / ``resolvedAt``
            retry_options: Overrides passed to ``call_with_retry``
                (``max_attempts``, ``backoff_base``, ``sleep``, ...)
        """
        self.store = store if store is not None else InMemoryErrorLogStore()
        self._clock = clock
        self._retry_options = dict(retry_options or {})
        self._lock = Lock()
        self._pending: Dict[str, ErrorEntry] = {}
        self._failed_writes = 0

    @property
    def failed_writes(self) -> int:
        """Writes that exhausted their retries (monotonic counter)."""
        return self._failed_writes

    @property
    def pending(self) -> List[ErrorEntry]:
        with self._lock:
            return list(self._pending.values())

    def record(
        self,
        source: str,
        error_type: str,
        message: str,
        *,
        source_id: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
        stack_trace: Optional[str] = None,
        exc: Optional[BaseException] = None,
    ) -> str:
        """Store a new entry and return its id. Never raises on backend failure."""
        if stack_trace is None and exc is not None:
            stack_trace = "".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            )
        entry = ErrorEntry(
            id=str(uuid.uuid4()),
            source=source,
            source_id=source_id,
            error_type=error_type,
            message=message,
            context=dict(context or {}),
            stack_trace=stack_trace,
            created_at=self._clock(),
        )
        self._write(entry)
        return entry.id

    def _write(self, entry: ErrorEntry) -> bool:
        try:
            call_with_retry(
                lambda: self.store.add(entry),
                operation="error_sink.write",
                entry_id=entry.id,
                **self._retry_options,
            )
        except Exception as exc:
            # Contract: recording an error must not raise into the caller.
            with self._lock:
                self._pending[entry.id] = entry
                self._failed_writes += 1
            logger.error(
                "error_sink.write_failed",
                entry_id=entry.id,
                source=entry.source,
                source_id=entry.source_id,
                error_type=entry.error_type,
                entry_message=entry.message,
                error=str(exc),
            )
            return False
        return True

    def flush_pending(self) -> int:
        """Retry buffered entries; returns how many reached the backend."""
        flushed = 0
        for entry in self.pending:
            try:
                self.store.add(entry)
            except Exception as exc:
                logger.warning("error_sink.flush_failed", entry_id=entry.id, error=str(exc))
                continue
            with self._lock:
                self._pending.pop(entry.id, None)
            flushed += 1
        if flushed:
            logger.info("error_sink.flushed", count=flushed)
        return flushed

    def get(self, entry_id: str) -> ErrorEntry:
        with self._lock:
            pending = self._pending.get(entry_id)
        if pending is not None:
            return pending
        entry = self.store.get(entry_id)
        if entry is None:
            raise ErrorEntryNotFoundError(entry_id)
        return entry

    def resolve(self, entry_id: str) -> ErrorEntry:
        """
        Mark an entry resolved (idempotent).

        Raises:
            ErrorEntryNotFoundError: No entry with that id
        """
        now = self._clock()
        with self._lock:
            pending = self._pending.get(entry_id)
            if pending is not None:
                if not pending.is_resolved:
                    self._pending[entry_id] = pending.resolved(now)
                return self._pending[entry_id]

        if not self.store.mark_resolved(entry_id, now):
            raise ErrorEntryNotFoundError(entry_id)
        logger.info("error_sink.resolved", entry_id=entry_id)
        return self.get(entry_id)

    def query(
        self,
        source: Optional[str] = None,
        error_type: Optional[str] = None,
        source_id: Optional[str] = None,
        unresolved_only: bool = False,
    ) -> List[ErrorEntry]:
        """Entries matching every given filter, oldest first."""
        entries = {
            entry.id: entry
            for entry in self.store.query(
                source=source,
                error_type=error_type,
                source_id=source_id,
                unresolved_only=unresolved_only,
            )
        }
        for entry in self.pending:
            if (
                (source is None or entry.source == source)
                and (error_type is None or entry.error_type == error_type)
                and (source_id is None or entry.source_id == source_id)
                and not (unresolved_only and entry.is_resolved)
            ):
                entries[entry.id] = entry
        return sorted(entries.values(), key=lambda e: e.created_at)
