"""
Error log repository backed by a SQL table.

Implements the error sink store contract on top of a SQLAlchemy connection.
Errors from the database propagate so the sink can retry them.
"""

from __future__ import annotations

import json
from datetime import datetime
from threading import Lock
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Connection

from taxonomy_hub.infrastructure.error_sink.models import ErrorEntry
from taxonomy_hub.utils.logging import get_logger

logger = get_logger(__name__)

TABLE_NAME = "error_log"

_COLUMNS = (
    "id, source, source_id, error_type, message, stack_trace, context, "
    "created_at, resolved_at"
)


def _to_text(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_text(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class ErrorLogRepository:
    """
    Repository for ``error_log`` rows.

    Usage:
        engine = sa.create_engine(settings.ERROR_LOG_DATABASE_URL)
        repo = ErrorLogRepository(engine.connect())
        repo.ensure_table()
        sink = ErrorSink(store=repo)
    """

    def __init__(self, conn: Connection):
        """
        Args:
            conn: SQLAlchemy connection, used exclusively by this repository
        """
        self.conn = conn
        # one connection, serialized across worker and caller threads
        self._lock = Lock()

    def ensure_table(self) -> None:
        with self._lock:
            self.conn.execute(
                sa.text(
                    f"""
                    CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
                        id VARCHAR(36) PRIMARY KEY,
                        source VARCHAR(64) NOT NULL,
                        source_id VARCHAR(128),
                        error_type VARCHAR(64) NOT NULL,
                        message TEXT NOT NULL,
                        stack_trace TEXT,
                        context TEXT NOT NULL,
                        created_at VARCHAR(40) NOT NULL,
                        resolved_at VARCHAR(40)
                    )
                    """
                )
            )
            self.conn.commit()
        logger.info("error_log.table_ready", table=TABLE_NAME)

    def add(self, entry: ErrorEntry) -> None:
        with self._lock:
            self.conn.execute(
                sa.text(
                    f"""
                    INSERT INTO {TABLE_NAME} ({_COLUMNS})
                    VALUES (:id, :source, :source_id, :error_type, :message,
                            :stack_trace, :context, :created_at, :resolved_at)
                    """
                ),
                {
                    "id": entry.id,
                    "source": entry.source,
                    "source_id": entry.source_id,
                    "error_type": entry.error_type,
                    "message": entry.message,
                    "stack_trace": entry.stack_trace,
                    "context": json.dumps(entry.context, default=str, sort_keys=True),
                    "created_at": _to_text(entry.created_at),
                    "resolved_at": _to_text(entry.resolved_at),
                },
            )
            self.conn.commit()

    def get(self, entry_id: str) -> Optional[ErrorEntry]:
        with self._lock:
            row = self.conn.execute(
                sa.text(f"SELECT {_COLUMNS} FROM {TABLE_NAME} WHERE id = :id"),
                {"id": entry_id},
            ).fetchone()
        return self._row_to_entry(row) if row is not None else None

    def mark_resolved(self, entry_id: str, resolved_at: datetime) -> bool:
        with self._lock:
            exists = self.conn.execute(
                sa.text(f"SELECT 1 FROM {TABLE_NAME} WHERE id = :id"), {"id": entry_id}
            ).fetchone()
            if exists is None:
                return False
            self.conn.execute(
                sa.text(
                    f"""
                    UPDATE {TABLE_NAME} SET resolved_at = :resolved_at
                    WHERE id = :id AND resolved_at IS NULL
                    """
                ),
                {"id": entry_id, "resolved_at": _to_text(resolved_at)},
            )
            self.conn.commit()
        return True

    def query(
        self,
        source: Optional[str] = None,
        error_type: Optional[str] = None,
        source_id: Optional[str] = None,
        unresolved_only: bool = False,
    ) -> List[ErrorEntry]:
        clauses = []
        params: Dict[str, Any] = {}
        for column, value in (
            ("source", source),
            ("error_type", error_type),
            ("source_id", source_id),
        ):
            if value is not None:
                clauses.append(f"{column} = :{column}")
                params[column] = value
        if unresolved_only:
            clauses.append("resolved_at IS NULL")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._lock:
            rows = self.conn.execute(
                sa.text(
                    f"SELECT {_COLUMNS} FROM {TABLE_NAME} {where} ORDER BY created_at, id"
                ),
                params,
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    @staticmethod
    def _row_to_entry(row: Any) -> ErrorEntry:
        return ErrorEntry(
            id=row[0],
            source=row[1],
            source_id=row[2],
            error_type=row[3],
            message=row[4],
            stack_trace=row[5],
            context=json.loads(row[6]) if row[6] else {},
            created_at=_from_text(row[7]),
            resolved_at=_from_text(row[8]),
        )
