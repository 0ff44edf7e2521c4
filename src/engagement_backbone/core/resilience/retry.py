"""
Retry Policies

Bounded local retry for transient failures, built on tenacity, plus the
retryable/terminal decision that workers apply when a job raises.

Retry schedule (defaults):
    attempt 1: immediate
    attempt 2: ~1.0s (+ up to 25% jitter)
    attempt 3: ~2.0s
    attempt 4: ~4.0s
    capped at 10s between attempts
"""

import errno
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from engagement_backbone.core.exceptions import (
    BrokerUnavailableError,
    ConfigurationError,
    DbFatalError,
    DbTransientError,
    ExternalApi4xxError,
    ExternalApi5xxError,
    NonRetryableJobError,
)
from engagement_backbone.core.logging.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

TRANSIENT_ERRNOS = frozenset(
    {
        errno.ECONNRESET,
        errno.ETIMEDOUT,
        errno.ECONNREFUSED,
        errno.EPIPE,
        errno.EHOSTUNREACH,
        errno.ENETUNREACH,
    }
)

TERMINAL_ERRORS: tuple[type[BaseException], ...] = (
    NonRetryableJobError,
    ExternalApi4xxError,
    DbFatalError,
    ConfigurationError,
)


def is_transient_error(exc: BaseException) -> bool:
    """
    Decide whether an error is worth a local retry.

    Transient: broker connection/timeouts, database connection resets and pool
    exhaustion, catalog 5xx/429/timeouts, socket-level resets and refusals.
    """
    if isinstance(exc, (BrokerUnavailableError, DbTransientError, ExternalApi5xxError)):
        return True
    if isinstance(exc, (RedisConnectionError, RedisTimeoutError)):
        return True
    if isinstance(exc, (httpx.TransportError, httpx.TimeoutException)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    if isinstance(exc, OSError) and exc.errno in TRANSIENT_ERRNOS:
        return True
    return isinstance(exc, (ConnectionError, TimeoutError))


def is_retryable(exc: BaseException) -> bool:
    """
    Decide whether a failed job gets another attempt.

    A worker that throws surfaces as retryable; an explicit terminal outcome
    (see TERMINAL_ERRORS) does not.
    """
    return not isinstance(exc, TERMINAL_ERRORS)


def is_db_transient(exc: BaseException) -> bool:
    """Retry predicate for one database unit of work."""
    return isinstance(exc, DbTransientError)


async def retry_async(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = 3,
    initial_ms: int = 1000,
    max_ms: int = 10000,
    multiplier: float = 2.0,
    jitter: float = 0.25,
    retry_on: Callable[[BaseException], bool] = is_transient_error,
    stage: str = "RETRY",
    **kwargs: Any,
) -> T:
    """
    Call an async function, retrying transient failures with backoff.

    STAGE-R: Local retry

    Args:
        fn: Coroutine function to call
        max_retries: Retries after the first attempt
        initial_ms: First backoff delay
        max_ms: Backoff ceiling
        multiplier: Exponential base
        jitter: Fraction of the initial delay added as random jitter
        retry_on: Predicate selecting retryable exceptions

    Returns:
        Result of fn

    Raises:
        The last exception once retries are exhausted or for non-retryable errors
    """
    initial = initial_ms / 1000
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential_jitter(
            initial=initial,
            max=max_ms / 1000,
            exp_base=multiplier,
            jitter=initial * jitter,
        ),
        retry=retry_if_exception(retry_on),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            "Transient failure, retrying",
            stage=stage,
            attempt=retry_state.attempt_number,
            delay=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
            error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        ),
    )
    async for attempt in retrying:
        with attempt:
            return await fn(*args, **kwargs)
    raise AssertionError("unreachable")  # pragma: no cover
