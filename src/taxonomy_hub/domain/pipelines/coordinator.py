"""
Pipeline registry and run coordinator.

A run moves PENDING -> RUNNING -> COMPLETED | FAILED. Records are split into
chunks and processed on a thread pool in waves of ``max_workers`` chunks;
cancellation and the per-run timeout are checked between waves (and once more
after the last one), never inside a record. Aggregate validation starts only
after every chunk has been merged. Mapping and validation rules are frozen
when the run starts.

Usage:
    >>> coordinator = PipelineRunCoordinator(rule_set, validation_rules, ErrorSink())
    >>> pipeline = coordinator.register_pipeline("gwi_core", "TRANSFORMATION")
    >>> run_id = coordinator.submit(pipeline.id, records)
    >>> coordinator.status(run_id)["status"]
    'COMPLETED'
"""

from __future__ import annotations

import copy
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timezone
from itertools import count
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import pandas as pd

from taxonomy_hub.config import Settings, get_settings
from taxonomy_hub.domain.exceptions import (
    AlreadyRunningError,
    ConfigurationError,
    DuplicateCodeError,
    PipelineInactiveError,
    PipelineNotFoundError,
    RunNotFoundError,
)
from taxonomy_hub.domain.mapping.rule_set import MappingRuleSet
from taxonomy_hub.domain.pipelines.accumulator import RunAccumulator
from taxonomy_hub.domain.pipelines.config import PipelineConfiguration, validate_schedule
from taxonomy_hub.domain.pipelines.types import DataPipeline, PipelineRun, PipelineType, RunStatus
from taxonomy_hub.domain.pipelines.worker import process_chunk
from taxonomy_hub.domain.types import Record
from taxonomy_hub.domain.validation.registry import ValidationRuleRegistry
from taxonomy_hub.infrastructure.error_sink import ErrorSink
from taxonomy_hub.utils.logging import get_logger
from taxonomy_hub.utils.retry import call_with_retry

logger = get_logger(__name__)

ERROR_SOURCE = "pipeline_run"

BatchSource = Union[Sequence[Any], pd.DataFrame, Callable[[], Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _materialize(batch: Any) -> List[Any]:
    if isinstance(batch, pd.DataFrame):
        return batch.to_dict(orient="records")
    if isinstance(batch, Mapping) or isinstance(batch, (str, bytes)):
        raise TypeError(f"Batch must be a sequence of records, got {type(batch).__name__}")
    return list(batch)


class _RunControl:
    """Cross-thread handles for one run."""

    def __init__(self) -> None:
        self.cancel_requested = threading.Event()
        self.done = threading.Event()
        self.thread: Optional[threading.Thread] = None


class PipelineRunCoordinator:
    def __init__(
        self,
        rule_set: MappingRuleSet,
        validation_rules: ValidationRuleRegistry,
        error_sink: ErrorSink,
        settings: Optional[Settings] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
        retry_options: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Args:
            rule_set: Mapping rules applied to every record
            validation_rules: Source of each pipeline's validation rules
            error_sink: Sole error reporting channel
            settings: Engine defaults (``get_settings()`` when omitted)
            clock: Monotonic clock for timeouts and durations
            now: Wall clock for run timestamps
            retry_options: Overrides for batch-read retries (``sleep``, ``max_attempts``, ...)
        """
        self.rule_set = rule_set
        self.validation_rules = validation_rules
        self.error_sink = error_sink
        self.settings = settings or get_settings()
        self._clock = clock
        self._now = now
        self._retry_options = dict(retry_options or {})
        self._lock = threading.RLock()
        self._pipelines: Dict[str, DataPipeline] = {}
        self._runs: Dict[str, PipelineRun] = {}
        self._controls: Dict[str, _RunControl] = {}
        self._outputs: Dict[str, List[Record]] = {}
        self._run_sequence = count()

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------
    def register_pipeline(
        self,
        name: str,
        pipeline_type: Union[str, PipelineType],
        configuration: Optional[Mapping[str, Any]] = None,
        schedule: Optional[str] = None,
        *,
        is_active: bool = True,
        description: Optional[str] = None,
        pipeline_id: Optional[str] = None,
    ) -> DataPipeline:
        """
        Raises:
            ConfigurationError: Blank name, unknown type, bad configuration or schedule
            DuplicateCodeError: Name or id already registered
        """
        if not name or not name.strip():
            raise ConfigurationError("Pipeline name cannot be empty")
        try:
            kind = PipelineType(str(getattr(pipeline_type, "value", pipeline_type)).upper())
        except ValueError:
            raise ConfigurationError(f"Unknown pipeline type {pipeline_type!r}") from None
        try:
            config = PipelineConfiguration.model_validate(dict(configuration or {}))
        except ValueError as exc:
            raise ConfigurationError(f"Invalid configuration for pipeline '{name}': {exc}") from exc

        pipeline = DataPipeline(
            id=pipeline_id or str(uuid.uuid4()),
            name=name.strip(),
            type=kind,
            configuration=config,
            schedule=validate_schedule(schedule),
            is_active=is_active,
            description=description,
        )
        with self._lock:
            if pipeline.id in self._pipelines:
                raise DuplicateCodeError(pipeline.id, scope="pipeline id")
            if any(p.name == pipeline.name for p in self._pipelines.values()):
                raise DuplicateCodeError(pipeline.name, scope="pipeline")
            self._pipelines[pipeline.id] = pipeline

        logger.info(
            "pipeline.registered",
            pipeline_id=pipeline.id,
            name=pipeline.name,
            type=kind.value,
            schedule=pipeline.schedule,
        )
        return pipeline

    def get_pipeline(self, pipeline_id: str) -> DataPipeline:
        try:
            return self._pipelines[pipeline_id]
        except KeyError:
            raise PipelineNotFoundError(pipeline_id) from None

    def find_pipeline(self, name: str) -> DataPipeline:
        for pipeline in self._pipelines.values():
            if pipeline.name == name:
                return pipeline
        raise PipelineNotFoundError(name)

    def pipelines(self) -> List[DataPipeline]:
        return sorted(self._pipelines.values(), key=lambda p: p.name)

    def set_pipeline_active(self, pipeline_id: str, is_active: bool) -> DataPipeline:
        with self._lock:
            pipeline = replace(self.get_pipeline(pipeline_id), is_active=is_active)
            self._pipelines[pipeline_id] = pipeline
        logger.info("pipeline.activation_changed", pipeline_id=pipeline_id, is_active=is_active)
        return pipeline

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------
    def submit(self, pipeline_id: str, batch: BatchSource, *, wait: bool = True) -> str:
        """
        Create a run for ``batch`` and execute it.

        ``batch`` is a sequence of records, a DataFrame, or a zero-argument
        callable returning either (read with retries). With ``wait=False`` the
        run executes on a background thread and the id is returned at once.

        Raises:
            PipelineNotFoundError: Unknown pipeline
            PipelineInactiveError: Pipeline is deactivated
            AlreadyRunningError: Pipeline has a PENDING or RUNNING run
        """
        pipeline = self.get_pipeline(pipeline_id)
        if not pipeline.is_active:
            raise PipelineInactiveError(pipeline_id)

        with self._lock:
            for run in self._runs.values():
                if run.pipeline_id == pipeline_id and run.status.is_active:
                    raise AlreadyRunningError(pipeline_id, run.id)
            run = PipelineRun(
                id=str(uuid.uuid4()),
                pipeline_id=pipeline_id,
                created_at=self._now(),
                sequence=next(self._run_sequence),
            )
            self._runs[run.id] = run
            control = _RunControl()
            self._controls[run.id] = control

        logger.info("pipeline.run.submitted", pipeline_id=pipeline_id, run_id=run.id, wait=wait)
        if wait:
            self._execute(pipeline, run, batch, control)
        else:
            thread = threading.Thread(
                target=self._execute,
                args=(pipeline, run, batch, control),
                name=f"thub-run-{run.id[:8]}",
                daemon=True,
            )
            control.thread = thread
            thread.start()
        return run.id

    def _get_run(self, run_id: str) -> PipelineRun:
        try:
            return self._runs[run_id]
        except KeyError:
            raise RunNotFoundError(run_id) from None

    def get_run(self, run_id: str) -> PipelineRun:
        """Deep-copied snapshot of the run."""
        with self._lock:
            return self._get_run(run_id).snapshot()

    def status(self, run_id: str) -> Dict[str, Any]:
        """``{status, recordsProcessed, recordsFailed, metrics, errorLog, ...}`` snapshot."""
        with self._lock:
            return self._get_run(run_id).to_dict()

    def wait(self, run_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Block until the run is terminal (or ``timeout`` elapses); returns its status."""
        with self._lock:
            self._get_run(run_id)
            control = self._controls[run_id]
        control.done.wait(timeout)
        return self.status(run_id)

    def run_output(self, run_id: str) -> List[Record]:
        """Mapped records of a finished run in batch order; empty while running."""
        with self._lock:
            self._get_run(run_id)
            return copy.deepcopy(self._outputs.get(run_id, []))

    def cancel(self, run_id: str) -> bool:
        """
        Request cooperative cancellation.

        Returns False when the run is already terminal. The run fails at the
        next chunk boundary with a ``cancelled`` errorLog entry.
        """
        with self._lock:
            run = self._get_run(run_id)
            if run.status.is_terminal:
                return False
            self._controls[run_id].cancel_requested.set()
        logger.info("pipeline.run.cancel_requested", pipeline_id=run.pipeline_id, run_id=run_id)
        return True

    def list_runs(
        self, pipeline_id: Optional[str] = None, status: Optional[Union[str, RunStatus]] = None
    ) -> List[Dict[str, Any]]:
        """Runs newest first, optionally filtered by pipeline and status."""
        wanted = RunStatus(status) if status is not None else None
        with self._lock:
            runs = [
                run
                for run in self._runs.values()
                if (pipeline_id is None or run.pipeline_id == pipeline_id)
                and (wanted is None or run.status is wanted)
            ]
            runs.sort(key=lambda r: r.sequence, reverse=True)
            return [run.to_dict() for run in runs]

    def run_statistics(self, pipeline_id: str) -> Dict[str, Any]:
        self.get_pipeline(pipeline_id)
        with self._lock:
            runs = [r for r in self._runs.values() if r.pipeline_id == pipeline_id]
            completed = [r for r in runs if r.status is RunStatus.COMPLETED]
            failed = [r for r in runs if r.status is RunStatus.FAILED]
            durations = [r.duration_seconds for r in completed + failed if r.duration_seconds is not None]
            finished = len(completed) + len(failed)
            return {
                "pipelineId": pipeline_id,
                "totalRuns": len(runs),
                "completed": len(completed),
                "failed": len(failed),
                "active": len(runs) - finished,
                "successRate": round(len(completed) / finished, 4) if finished else 0.0,
                "averageDurationSeconds": (
                    round(sum(durations) / len(durations), 3) if durations else None
                ),
                "recordsProcessed": sum(r.records_processed for r in runs),
                "recordsFailed": sum(r.records_failed for r in runs),
            }

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    def _execute(
        self,
        pipeline: DataPipeline,
        run: PipelineRun,
        batch: BatchSource,
        control: _RunControl,
    ) -> None:
        log = logger.bind(pipeline_id=pipeline.id, run_id=run.id)
        config = pipeline.configuration
        settings = self.settings
        record_id_field = config.record_id_field or settings.RECORD_ID_FIELD
        chunk_size = config.chunk_size or settings.CHUNK_SIZE
        max_workers = config.max_workers or settings.MAX_WORKERS
        timeout = config.timeout_seconds or settings.RUN_TIMEOUT_SECONDS

        started = self._clock()
        sink_failures_before = self.error_sink.failed_writes
        accumulator = RunAccumulator(settings.ERROR_LOG_LIMIT)
        run_entries: List[Dict[str, Any]] = []
        fatal = False
        final = RunStatus.FAILED
        metrics: Dict[str, Any] = {}

        with self._lock:
            run.transition(RunStatus.RUNNING, self._now())
        log.info("pipeline.run.started", chunk_size=chunk_size, max_workers=max_workers)

        try:
            try:
                # rules are frozen when the run starts
                engine = self.validation_rules.engine_for(pipeline.id, record_id_field)
                groups = self.rule_set.snapshot()
                try:
                    records = self._read_batch(batch, run)
                except Exception as exc:
                    fatal = True
                    run_entries.append(self._infrastructure_entry(run, "BatchReadError", exc))
                    log.error("pipeline.run.batch_read_failed", error=str(exc))
                    records = []

                batch_size = len(records)
                with self._lock:
                    run.batch_size = batch_size

                chunks = [
                    (start, records[start : start + chunk_size])
                    for start in range(0, batch_size, chunk_size)
                ]
                deadline = started + timeout if timeout else None
                stop_reason: Optional[str] = None

                if not fatal:
                    with ThreadPoolExecutor(
                        max_workers=max_workers, thread_name_prefix="thub-worker"
                    ) as pool:
                        for wave_start in range(0, len(chunks), max_workers):
                            stop_reason = self._stop_reason(control, deadline)
                            if stop_reason:
                                break
                            wave = chunks[wave_start : wave_start + max_workers]
                            futures = [
                                pool.submit(
                                    process_chunk,
                                    chunk,
                                    start,
                                    self.rule_set,
                                    engine,
                                    record_id_field,
                                    groups,
                                )
                                for start, chunk in wave
                            ]
                            # merge in submission order so results are deterministic
                            for future in futures:
                                chunk_result = future.result()
                                accumulator.merge(chunk_result)
                                self._report_chunk(run, chunk_result, log)
                            with self._lock:
                                run.records_processed = accumulator.processed
                                run.records_failed = accumulator.failed
                    if not stop_reason:
                        # a cancel or timeout during the last wave still stops the run
                        stop_reason = self._stop_reason(control, deadline)

                if stop_reason:
                    fatal = True
                    unprocessed = accumulator.mark_unprocessed(batch_size)
                    run_entries.append(self._stop_entry(run, stop_reason, unprocessed, timeout))
                    log.warning(f"pipeline.run.{stop_reason}", unprocessed=unprocessed)
                elif not fatal:
                    # barrier reached: every record has been mapped and validated
                    for violation in engine.validate_aggregate(
                        accumulator.outputs,
                        batch_size=batch_size,
                        records_failed=accumulator.failed,
                    ):
                        if not violation.is_error:
                            continue
                        fatal = True
                        entry = {"type": "aggregate", **violation.to_dict()}
                        self.error_sink.record(
                            ERROR_SOURCE,
                            "ThresholdViolation",
                            f"Rule '{violation.rule_name}' violated: {violation.message}",
                            source_id=run.id,
                            context={"pipeline_id": pipeline.id, **entry},
                        )
                        run_entries.append(entry)
            except Exception as exc:
                fatal = True
                unprocessed = accumulator.mark_unprocessed(run.batch_size)
                entry = self._infrastructure_entry(run, type(exc).__name__, exc)
                entry["unprocessed"] = unprocessed
                run_entries.append(entry)
                log.exception("pipeline.run.crashed", error=str(exc))

            sink_failures = self.error_sink.failed_writes - sink_failures_before
            if sink_failures > 0:
                fatal = True
                run_entries.append(
                    {
                        "type": "infrastructure",
                        "errorType": "ErrorSinkWriteFailed",
                        "message": f"{sink_failures} error log writes failed after retries",
                    }
                )
                log.error("pipeline.run.error_sink_failed", failed_writes=sink_failures)

            metrics = {
                "records_total": run.batch_size,
                **accumulator.metrics(),
                "duration_ms": int(round((self._clock() - started) * 1000)),
            }
            final = RunStatus.FAILED if fatal else RunStatus.COMPLETED
        finally:
            # every path ends terminal and releases waiters
            with self._lock:
                run.records_processed = accumulator.processed
                run.records_failed = accumulator.failed
                run.error_log = accumulator.error_log(run_entries)
                run.metrics = metrics
                run.transition(final, self._now())
                self._outputs[run.id] = accumulator.outputs
            control.done.set()

        log_method = log.info if final is RunStatus.COMPLETED else log.error
        log_method(
            "pipeline.run.finished",
            status=final.value,
            records_processed=run.records_processed,
            records_failed=run.records_failed,
            duration_ms=metrics["duration_ms"],
        )

    def _read_batch(self, batch: BatchSource, run: PipelineRun) -> List[Any]:
        if callable(batch):
            return call_with_retry(
                lambda: _materialize(batch()),
                operation="batch.read",
                run_id=run.id,
                **self._retry_options,
            )
        return _materialize(batch)

    def _stop_reason(self, control: _RunControl, deadline: Optional[float]) -> Optional[str]:
        if control.cancel_requested.is_set():
            return "cancelled"
        if deadline is not None and self._clock() >= deadline:
            return "timeout"
        return None

    def _report_chunk(self, run: PipelineRun, chunk_result: Any, log: Any) -> None:
        for failure in chunk_result.failures:
            self.error_sink.record(
                ERROR_SOURCE,
                failure.error_type,
                failure.message,
                source_id=run.id,
                context={
                    "pipeline_id": run.pipeline_id,
                    "index": failure.index,
                    "record_id": failure.record_id,
                    "errors": failure.errors,
                },
            )
        for warning in chunk_result.warnings:
            log.warning("validation.record.warning", **warning)

    def _stop_entry(
        self, run: PipelineRun, reason: str, unprocessed: int, timeout: Optional[float]
    ) -> Dict[str, Any]:
        if reason == "timeout":
            message = f"Run exceeded its {timeout}s timeout; {unprocessed} records not processed"
        else:
            message = f"Run cancelled; {unprocessed} records not processed"
        self.error_sink.record(
            ERROR_SOURCE,
            reason,
            message,
            source_id=run.id,
            context={"pipeline_id": run.pipeline_id, "unprocessed": unprocessed},
        )
        return {"type": reason, "message": message, "unprocessed": unprocessed}

    def _infrastructure_entry(
        self, run: PipelineRun, error_type: str, exc: BaseException
    ) -> Dict[str, Any]:
        self.error_sink.record(
            ERROR_SOURCE,
            error_type,
            str(exc),
            source_id=run.id,
            context={"pipeline_id": run.pipeline_id},
            exc=exc,
        )
        return {"type": "infrastructure", "errorType": error_type, "message": str(exc)}
