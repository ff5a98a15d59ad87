"""
CLI for running one pipeline over a batch file.

Usage:
    PYTHONPATH=src python -m taxonomy_hub.cli.run_pipeline \
        --definitions config/definitions.yml --pipeline gwi_core --input batch.csv

    # JSON input (a list of records, or {"records": [...]}) and status written to a file
    PYTHONPATH=src python -m taxonomy_hub.cli.run_pipeline \
        --definitions config/definitions.yml --pipeline gwi_core \
        --input batch.json --output run_status.json

Prints the run status as JSON. Exit code 0 when the run COMPLETED, 1 otherwise.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from taxonomy_hub.config.definitions_loader import apply_definitions, load_definitions
from taxonomy_hub.domain.exceptions import TaxonomyHubError
from taxonomy_hub.domain.pipelines import RunStatus
from taxonomy_hub.service import TaxonomyEngine
from taxonomy_hub.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


def read_batch(path: Path) -> List[Dict[str, Any]]:
    """
    Load input records from ``.csv``, ``.json`` or ``.jsonl``.

    Raises:
        ValueError: Unsupported extension or unexpected JSON shape
    """
    suffix = path.suffix.lower()
    if suffix == ".csv":
        return pd.read_csv(path).to_dict(orient="records")
    if suffix == ".jsonl":
        return pd.read_json(path, lines=True).to_dict(orient="records")
    if suffix == ".json":
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, dict) and isinstance(data.get("records"), list):
            data = data["records"]
        if not isinstance(data, list):
            raise ValueError("JSON input must be a list of records or {'records': [...]}")
        return data
    raise ValueError(f"Unsupported input format '{suffix}' (expected .csv, .json or .jsonl)")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code (0 when the run completed, 1 otherwise).
    """
    parser = argparse.ArgumentParser(
        description="Run a taxonomy mapping pipeline over a batch file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--definitions", required=True, help="YAML definitions file")
    parser.add_argument("--pipeline", required=True, help="Pipeline name from the definitions")
    parser.add_argument("--input", required=True, help="Batch file (.csv, .json, .jsonl)")
    parser.add_argument("--output", default=None, help="Also write the status JSON here")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
        default=None,
        help="Override THUB_LOG_LEVEL for this invocation",
    )
    parser.add_argument(
        "--console-logs",
        action="store_true",
        help="Human-readable log lines instead of JSON",
    )
    args = parser.parse_args(argv)

    if args.log_level or args.console_logs:
        configure_logging(args.log_level, log_format="console" if args.console_logs else None)

    try:
        engine = TaxonomyEngine()
        pipelines = apply_definitions(engine, load_definitions(args.definitions))
        if args.pipeline not in pipelines:
            print(f"Unknown pipeline '{args.pipeline}'", file=sys.stderr)
            return 1
        records = read_batch(Path(args.input))
    except (TaxonomyHubError, OSError, ValueError) as e:
        print(f"Failed to prepare run: {e}", file=sys.stderr)
        logger.error("run_pipeline.setup_failed", error=str(e), error_type=type(e).__name__)
        return 1

    try:
        run_id = engine.submit_run(pipelines[args.pipeline].id, records)
    except TaxonomyHubError as e:
        print(f"Run rejected: {e}", file=sys.stderr)
        return 1

    status = engine.get_run_status(run_id)
    rendered = json.dumps(status, indent=2, ensure_ascii=False, default=str)
    print(rendered)
    if args.output:
        Path(args.output).write_text(rendered + "\n", encoding="utf-8")

    return 0 if status["status"] == RunStatus.COMPLETED.value else 1


if __name__ == "__main__":
    sys.exit(main())
