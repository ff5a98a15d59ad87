"""
Per-run accumulator.

Workers never touch run state: each chunk is reduced into a ``ChunkResult``
and the coordinator thread merges those, in chunk order, into the run's
``RunAccumulator``.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from taxonomy_hub.domain.types import Record


@dataclass(frozen=True)
class RecordFailure:
    """A record excluded from the output, with every error that caused it."""

    index: int
    record_id: Any
    errors: List[Dict[str, Any]]

    @property
    def error_type(self) -> str:
        return self.errors[0]["error_type"] if self.errors else "RecordFailed"

    @property
    def message(self) -> str:
        return "; ".join(error["message"] for error in self.errors)

    def to_log_entry(self) -> Dict[str, Any]:
        return {
            "type": "record",
            "index": self.index,
            "recordId": self.record_id,
            "errorType": self.error_type,
            "errors": list(self.errors),
        }


@dataclass
class ChunkResult:
    start: int
    processed: int = 0
    failed: int = 0
    warned: int = 0
    shadowed: int = 0
    outputs: List[Record] = field(default_factory=list)
    failures: List[RecordFailure] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    rule_violations: Counter = field(default_factory=Counter)
    attribute_values: Dict[str, Counter] = field(default_factory=dict)

    @property
    def handled(self) -> int:
        return self.processed + self.failed


class RunAccumulator:
    """Reduction target for chunk results; owned by a single run."""

    def __init__(self, error_log_limit: int):
        self.error_log_limit = error_log_limit
        self.processed = 0
        self.failed = 0
        self.warned = 0
        self.shadowed = 0
        self.chunks = 0
        self.outputs: List[Record] = []
        self.failure_entries: List[Dict[str, Any]] = []
        self.failures_omitted = 0
        self.rule_violations: Counter = Counter()
        self.attribute_values: Dict[str, Counter] = {}

    @property
    def handled(self) -> int:
        return self.processed + self.failed

    def merge(self, chunk: ChunkResult) -> None:
        self.processed += chunk.processed
        self.failed += chunk.failed
        self.warned += chunk.warned
        self.shadowed += chunk.shadowed
        self.chunks += 1
        self.outputs.extend(chunk.outputs)
        self.rule_violations.update(chunk.rule_violations)
        for attribute, counts in chunk.attribute_values.items():
            self.attribute_values.setdefault(attribute, Counter()).update(counts)

        room = max(self.error_log_limit - len(self.failure_entries), 0)
        self.failure_entries.extend(f.to_log_entry() for f in chunk.failures[:room])
        self.failures_omitted += max(len(chunk.failures) - room, 0)

    def mark_unprocessed(self, batch_size: int) -> int:
        """Count every record never handed to a worker as failed."""
        remaining = max(batch_size - self.handled, 0)
        self.failed += remaining
        return remaining

    def error_log(self, run_entries: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
        entries = list(self.failure_entries)
        if self.failures_omitted:
            entries.append(
                {
                    "type": "overflow",
                    "omitted": self.failures_omitted,
                    "message": (
                        f"{self.failures_omitted} further record failures not listed "
                        f"(limit {self.error_log_limit})"
                    ),
                }
            )
        entries.extend(run_entries or [])
        return entries

    def metrics(self) -> Dict[str, Any]:
        return {
            "records_output": len(self.outputs),
            "records_warned": self.warned,
            "shadowed_rules": self.shadowed,
            "chunks_processed": self.chunks,
            "rule_violations": dict(sorted(self.rule_violations.items())),
            "attribute_values": {
                attribute: {str(value): n for value, n in sorted(counts.items(), key=lambda kv: str(kv[0]))}
                for attribute, counts in sorted(self.attribute_values.items())
            },
        }
