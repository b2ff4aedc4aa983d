"""Retry utilities with exponential backoff."""

import time
from typing import Any, Callable, Tuple, Type

import structlog

log = structlog.stdlib.get_logger()


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (zero-based), capped at ``max_delay``."""
    return min(base_delay * (2**attempt), max_delay)


def retry_call(
    func: Callable[..., Any],
    *args: Any,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    operation: str | None = None,
    **kwargs: Any,
) -> Any:
    """
    Call ``func`` and retry it with exponential backoff.

    Only exceptions listed in ``exceptions`` are retried; anything else
    propagates on the first occurrence. After ``max_retries`` retries the
    last exception is re-raised.

    Args:
        func: Callable to invoke
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        exceptions: Tuple of exception types to catch and retry
        sleep: Function used to wait between attempts
        operation: Name used in log events (defaults to the function name)

    Returns:
        Whatever ``func`` returns
    """
    name = operation or getattr(func, "__name__", "call")

    for attempt in range(max_retries + 1):
        try:
            return func(*args, **kwargs)
        except exceptions as e:
            if attempt == max_retries:
                log.error(
                    "max_retries_reached",
                    operation=name,
                    max_retries=max_retries,
                    error=str(e),
                )
                raise

            delay = backoff_delay(attempt, base_delay, max_delay)

            log.warning(
                "retrying_after_error",
                operation=name,
                attempt=attempt + 1,
                max_retries=max_retries,
                delay_seconds=delay,
                error=str(e),
            )

            sleep(delay)

    raise AssertionError("unreachable")
