"""Structured logging for the engine, built on structlog.

Events are dotted names (``pipeline.run.started``) with keyword context and are
rendered as one JSON object per line, or human-readable with ``console``.
Keys that look like credentials are redacted, including inside the nested
dicts and lists that run warnings and error entries carry.

Configured from ``taxonomy_hub.config.settings``:
- LOG_LEVEL: DEBUG, INFO, WARNING, ERROR or CRITICAL. Default: INFO
- LOG_FORMAT: ``json`` or ``console``. Default: json
- LOG_FILE_DIR: when set, also write ``taxonomyhub-YYYYMMDD.log`` there,
  rotated at midnight and kept for 30 days

Usage:
    >>> from taxonomy_hub.utils.logging import get_logger
    >>> logger = get_logger(__name__)
    >>> logger.info("pipeline.run.started", pipeline_id="p-1", run_id="r-1")
"""

import logging
import os
import re
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, List, MutableMapping, Optional

import structlog
from structlog.types import EventDict, Processor

from taxonomy_hub.config import get_settings

SENSITIVE_PATTERNS = [
    re.compile(r".*password.*", re.IGNORECASE),
    re.compile(r".*token.*", re.IGNORECASE),
    re.compile(r".*api_key.*", re.IGNORECASE),
    re.compile(r".*secret.*", re.IGNORECASE),
    re.compile(r"^.*DATABASE_URL$", re.IGNORECASE),
]

REDACTED_VALUE = "[REDACTED]"

_installed_handlers: List[logging.Handler] = []


def _is_sensitive(key: Any) -> bool:
    return any(pattern.match(str(key)) for pattern in SENSITIVE_PATTERNS)


def sanitize_for_logging(data: Any) -> Any:
    """Redact sensitive keys in a dict, recursing into nested dicts and lists.

    Example:
        >>> sanitize_for_logging({"password": "secret123", "user": "admin"})
        {'password': '[REDACTED]', 'user': 'admin'}
    """
    if isinstance(data, dict):
        return {
            key: REDACTED_VALUE if _is_sensitive(key) else sanitize_for_logging(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [sanitize_for_logging(item) for item in data]
    return data


def sanitization_processor(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> MutableMapping[str, Any]:
    return sanitize_for_logging(dict(event_dict))


def _settings_value(name: str, default: Any) -> Any:
    try:
        return getattr(get_settings(), name)
    except Exception:
        # invalid THUB_* values must not stop logging from coming up
        return os.getenv(f"THUB_{name}", default)


def configure_logging(
    level: Optional[str] = None,
    *,
    log_format: Optional[str] = None,
    log_file_dir: Optional[str] = None,
) -> None:
    """
    (Re)configure stdlib handlers and the structlog processor chain.

    Arguments override the settings; calling again replaces the handlers a
    previous call installed.
    """
    level_name = (level or _settings_value("LOG_LEVEL", "INFO")).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)
    log_format = (log_format or _settings_value("LOG_FORMAT", "json")).lower()
    log_file_dir = log_file_dir or _settings_value("LOG_FILE_DIR", None)

    root = logging.getLogger()
    for handler in _installed_handlers:
        root.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file_dir:
        log_dir = Path(log_file_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        date_str = datetime.now().strftime("%Y%m%d")
        handlers.append(
            TimedRotatingFileHandler(
                filename=str(log_dir / f"taxonomyhub-{date_str}.log"),
                when="midnight",
                interval=1,
                backupCount=30,
                encoding="utf-8",
            )
        )
    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(handler)
        _installed_handlers.append(handler)
    root.setLevel(numeric_level)

    processors: List[Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        sanitization_processor,
        structlog.processors.StackInfoRenderer(),
    ]
    if log_format == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


configure_logging()


def get_logger(name: str) -> Any:
    """structlog BoundLogger for ``name`` (usually the caller's ``__name__``)."""
    return structlog.get_logger(name)
