"""Retry utilities for storage operations.

Retries only TransientStorageError (dropped connections, lock timeouts).
Apply it to reads and to conditional writes that are safe to repeat;
never to increments.
"""

from __future__ import annotations

from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from hookline.exceptions import TransientStorageError
from hookline.logging import get_logger

logger = get_logger(__name__)


def _log_retry(retry_state: RetryCallState) -> None:
    """Log retry attempts with context."""
    logger.warning(
        "storage_retry",
        attempt=retry_state.attempt_number,
        fn_name=retry_state.fn.__name__ if retry_state.fn else "unknown",
        exception=str(retry_state.outcome.exception()) if retry_state.outcome else None,
    )


storage_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
    retry=retry_if_exception_type(TransientStorageError),
    before_sleep=_log_retry,
    reraise=True,
)
