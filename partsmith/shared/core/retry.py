"""
Lock-wait retry discipline.

Batch data movement (migrate, undo) takes NOWAIT locks before touching rows.
A lock that is not free is retried a fixed number of times with the wait
time divided evenly between attempts, then reported to the caller.
"""
import asyncio
from typing import Any, Awaitable, Callable
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from partsmith.shared.core.exceptions import LockNotAvailableError
from partsmith.shared.core.ops_metrics import LOCK_WAIT_EXHAUSTED

logger = structlog.get_logger()

LOCK_WAIT_ATTEMPTS = 5


def _log_lock_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "lock_not_available_will_retry",
        attempt=retry_state.attempt_number,
        max_attempts=LOCK_WAIT_ATTEMPTS,
        error=str(exc) if exc else None,
    )


async def acquire_with_lock_wait(
    acquire: Callable[[], Awaitable[Any]],
    lock_wait_seconds: float,
    *,
    operation: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> bool:
    """
    Run a NOWAIT lock attempt up to five times.

    Returns True once `acquire` completes without raising LockNotAvailableError
    and False after the last attempt fails. Any other error propagates.
    """
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(LOCK_WAIT_ATTEMPTS),
            wait=wait_fixed(lock_wait_seconds / LOCK_WAIT_ATTEMPTS),
            retry=retry_if_exception_type(LockNotAvailableError),
            before_sleep=_log_lock_retry,
            sleep=sleep,
            reraise=True,
        ):
            with attempt:
                await acquire()
    except LockNotAvailableError as e:
        LOCK_WAIT_EXHAUSTED.labels(operation=operation).inc()
        logger.error(
            "lock_wait_exhausted",
            operation=operation,
            total_attempts=LOCK_WAIT_ATTEMPTS,
            lock_wait_seconds=lock_wait_seconds,
            error=str(e),
        )
        return False
    return True
