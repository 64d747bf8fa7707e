"""Tenacity retry wrapper driven by RetryConfig."""

from __future__ import annotations

from collections.abc import Callable

import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig

logger = structlog.get_logger()


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "operation_retrying",
        operation=getattr(state.fn, "__qualname__", repr(state.fn)),
        attempt=state.attempt_number,
        error=str(exc),
    )


def with_retry(
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[BaseException], ...] = (Exception,),
    retry_if: Callable[[BaseException], bool] | None = None,
) -> Callable:
    """Return a tenacity retry decorator configured from *config*.

    Retries only exceptions of *retryable_exceptions*, or, when
    *retry_if* is given, exceptions for which it returns True.  The last
    exception is re-raised once ``max_attempts`` is exhausted.

    Usage::

        @with_retry(config.retry, retryable_exceptions=(OSError,))
        async def connect() -> None: ...
    """
    condition = (
        retry_if_exception(retry_if)
        if retry_if is not None
        else retry_if_exception_type(retryable_exceptions)
    )
    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.multiplier,
            min=config.initial_wait_seconds,
            max=config.max_wait_seconds,
        ),
        retry=condition,
        before_sleep=_log_retry,
        reraise=True,
    )
