"""
Tenacity retry decorators shared by the fetch client and the event webhook.
"""

from collections.abc import Callable

from tenacity import (
    RetryCallState,
    before_log,
    retry,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_random_exponential,
)

from comicrawl.utils.logging import get_logger

logger = get_logger(__name__)


def _custom_before_sleep(retry_state: RetryCallState) -> None:
    """
    Custom before_sleep callback with detailed logging.

    Logs retry attempt information including attempt number,
    time elapsed, and the exception that triggered the retry.
    """
    exception = retry_state.outcome.exception() if retry_state.outcome else None
    logger.info(
        "Retrying after failure",
        function=getattr(retry_state.fn, "__name__", str(retry_state.fn)),
        attempt=retry_state.attempt_number,
        elapsed=f"{retry_state.seconds_since_start:.2f}s",
        next_wait=f"{retry_state.next_action.sleep:.2f}s" if retry_state.next_action else "N/A",
        error=str(exception) if exception else "unknown",
    )


def create_retry_decorator(
    max_attempts: int = 3,
    max_delay: float = 60,
    min_wait: float = 1,
    max_wait: float = 10,
    retry_exceptions: tuple[type[BaseException], ...] = (ConnectionError, TimeoutError),
    retry_when: Callable[[BaseException], bool] | None = None,
):
    """
    Create a Tenacity retry decorator.

    Uses wait_random_exponential (jitter) to prevent thundering herd
    and combined stop conditions (attempts or total delay, whichever
    comes first).

    Args:
        max_attempts: Maximum number of attempts
        max_delay: Maximum total time to spend retrying (seconds)
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)
        retry_exceptions: Exception types that trigger a retry
        retry_when: Predicate on the exception; overrides ``retry_exceptions``

    Example:
        >>> @create_retry_decorator(max_attempts=5, max_delay=30)
        ... async def my_flaky_function():
        ...     pass
    """
    condition = (
        retry_if_exception(retry_when)
        if retry_when is not None
        else retry_if_exception_type(retry_exceptions)
    )
    return retry(
        stop=(stop_after_attempt(max_attempts) | stop_after_delay(max_delay)),
        wait=wait_random_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=condition,
        before_sleep=_custom_before_sleep,
        before=before_log(logger, log_level=10),
        # Reraise the original exception (not RetryError)
        reraise=True,
    )
