"""Retry with bounded exponential backoff for network-bound steps."""

import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from .cancellation import CancellationToken, Deadline

logger = logging.getLogger(__name__)

T = TypeVar("T")


def execute_with_retry(
    operation: Callable[[], T],
    max_attempts: int = 3,
    initial_delay: float = 2.0,
    max_delay: float = 30.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    cancel_token: Optional[CancellationToken] = None,
    deadline: Optional[Deadline] = None,
    sleep: Optional[Callable[[float], None]] = None,
    description: str = "operation",
) -> T:
    """
    Invoke ``operation``, retrying failures with exponential backoff.

    Only wrap idempotent calls (deploy trigger, HTTP health checks). Restores and
    other destructive operations must never go through here.

    Args:
        operation: Zero-argument callable to invoke
        max_attempts: Total number of attempts, including the first
        initial_delay: Seconds to wait after the first failure
        max_delay: Upper bound on a single wait
        retry_on: Exception types that trigger a retry; others propagate at once
        cancel_token: Checked before every attempt and while waiting
        deadline: Stops retrying once expired
        sleep: Sleep function; when omitted, waits on ``cancel_token`` if given,
            otherwise ``time.sleep``. The token is checked after every wait.
        description: Name used in log messages

    Returns:
        Whatever ``operation`` returns on its first successful attempt

    Raises:
        The last exception raised by ``operation`` once attempts are exhausted
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    delay = initial_delay
    last_error: Optional[BaseException] = None

    for attempt in range(1, max_attempts + 1):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        try:
            return operation()
        except retry_on as e:
            last_error = e

            if attempt == max_attempts:
                break
            if deadline is not None and deadline.expired:
                logger.warning("%s failed and its deadline has passed; not retrying", description)
                break

            wait = min(delay, max_delay)
            if deadline is not None:
                remaining = deadline.remaining()
                if remaining is not None:
                    wait = min(wait, remaining)

            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                description,
                attempt,
                max_attempts,
                e,
                wait,
            )

            if sleep is not None:
                sleep(wait)
            elif cancel_token is not None:
                cancel_token.wait(wait)
            else:
                time.sleep(wait)

            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            delay *= 2

    assert last_error is not None
    raise last_error
