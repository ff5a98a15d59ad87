"""
Bounded exponential-backoff retries for infrastructure collaborators.

Only exceptions whose class path (``module.ClassName``, checked along the MRO)
is listed as retryable are retried; everything else propagates immediately.
"""

from __future__ import annotations

import time
from typing import Callable, Iterable, Optional, TypeVar

from taxonomy_hub.config import get_settings
from taxonomy_hub.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def exception_class_path(exc_type: type) -> str:
    return f"{exc_type.__module__}.{exc_type.__name__}"


def is_retryable_error(exception: BaseException, retryable_exceptions: Iterable[str]) -> bool:
    """
    Examples:
        >>> is_retryable_error(ConnectionResetError(), ("builtins.ConnectionError",))
        True
        >>> is_retryable_error(ValueError(), ("builtins.ConnectionError",))
        False
    """
    allowed = set(retryable_exceptions)
    return any(exception_class_path(cls) in allowed for cls in type(exception).__mro__)


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before retry number ``attempt`` (1-based): ``base * 2**(attempt-1)``, capped."""
    return min(base * (2 ** (attempt - 1)), cap)


def call_with_retry(
    func: Callable[[], T],
    *,
    operation: str,
    max_attempts: Optional[int] = None,
    backoff_base: Optional[float] = None,
    backoff_cap: Optional[float] = None,
    retryable_exceptions: Optional[Iterable[str]] = None,
    sleep: Callable[[float], None] = time.sleep,
    **log_context,
) -> T:
    """
    Call ``func`` until it succeeds or the retry budget is exhausted.

    Unset policy arguments fall back to settings. The last exception is
    re-raised once attempts run out or when it is not retryable.
    """
    settings = get_settings()
    max_attempts = max_attempts or settings.RETRY_MAX_ATTEMPTS
    base = settings.RETRY_BACKOFF_BASE if backoff_base is None else backoff_base
    cap = settings.RETRY_BACKOFF_CAP if backoff_cap is None else backoff_cap
    retryable = tuple(
        settings.RETRYABLE_EXCEPTIONS if retryable_exceptions is None else retryable_exceptions
    )

    attempt = 1
    while True:
        try:
            result = func()
        except Exception as exc:
            if not is_retryable_error(exc, retryable):
                raise
            if attempt >= max_attempts:
                logger.error(
                    "retry.exhausted",
                    operation=operation,
                    attempts=attempt,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    **log_context,
                )
                raise
            delay = backoff_delay(attempt, base, cap)
            logger.warning(
                "retry.scheduled",
                operation=operation,
                attempt=attempt,
                max_attempts=max_attempts,
                delay_seconds=round(delay, 2),
                error=str(exc),
                **log_context,
            )
            sleep(delay)
            attempt += 1
            continue

        if attempt > 1:
            logger.info("retry.succeeded", operation=operation, attempts=attempt, **log_context)
        return result
