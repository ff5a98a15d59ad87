"""Unit tests for log sanitization and logging configuration."""

import json
import logging

import pytest

from taxonomy_hub.utils.logging import (
    REDACTED_VALUE,
    configure_logging,
    get_logger,
    sanitize_for_logging,
)


@pytest.fixture
def restore_logging():
    yield
    configure_logging()


@pytest.mark.unit
def test_sensitive_keys_are_redacted_recursively():
    data = {
        "ERROR_LOG_DATABASE_URL": "postgresql://user:pw@host/db",
        "pipeline_id": "p-1",
        "source": {"api_key": "abc", "table": "error_log"},
    }

    sanitized = sanitize_for_logging(data)

    assert sanitized["ERROR_LOG_DATABASE_URL"] == REDACTED_VALUE
    assert sanitized["pipeline_id"] == "p-1"
    assert sanitized["source"] == {"api_key": REDACTED_VALUE, "table": "error_log"}


@pytest.mark.unit
def test_entries_inside_lists_are_redacted():
    warnings = [{"rule_id": "r-1", "access_token": "t0k3n"}, "plain"]

    sanitized = sanitize_for_logging({"warnings": warnings, "exc_info": (None, None, None)})

    assert sanitized["warnings"] == [{"rule_id": "r-1", "access_token": REDACTED_VALUE}, "plain"]
    assert sanitized["exc_info"] == (None, None, None)
    assert warnings[0]["access_token"] == "t0k3n"


@pytest.mark.unit
def test_get_logger_binds_context():
    logger = get_logger("taxonomy_hub.tests").bind(run_id="r-1")
    logger.info("pipeline.run.started", chunk_size=10)


@pytest.mark.unit
def test_file_logging_writes_json_lines(tmp_path, restore_logging):
    configure_logging("DEBUG", log_file_dir=str(tmp_path))

    get_logger("taxonomy_hub.tests").debug("mapping.rule.registered", rule_id="m-1", secret="x")
    for handler in logging.getLogger().handlers:
        handler.flush()

    [log_file] = list(tmp_path.glob("taxonomyhub-*.log"))
    [line] = [json.loads(l) for l in log_file.read_text(encoding="utf-8").splitlines() if l]
    assert line["event"] == "mapping.rule.registered"
    assert line["level"] == "debug"
    assert line["rule_id"] == "m-1"
    assert line["secret"] == REDACTED_VALUE


@pytest.mark.unit
def test_reconfiguring_replaces_handlers(restore_logging):
    root = logging.getLogger()
    configure_logging("INFO")
    before = len(root.handlers)

    configure_logging("WARNING", log_format="console")

    assert len(root.handlers) == before
    assert root.level == logging.WARNING
