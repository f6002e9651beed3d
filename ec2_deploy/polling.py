"""
Fixed-interval polling helpers.

Simple Explanation:
Lots of things in AWS happen "in the background": you ask for a server and
AWS says "OK, working on it". To know when it's really done we have to keep
asking, wait a bit, and ask again. These helpers do exactly that, but with a
hard limit so we never wait forever.

``clock`` and ``sleep`` can be swapped out so tests don't really sleep.
"""

import logging
import time
from typing import Any, Callable, Optional, TypeVar

from .errors import PollTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


def poll_until(
    check: Callable[[], Optional[T]],
    timeout: float,
    interval: float,
    description: str,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    """
    Calls ``check`` until it returns something truthy or ``timeout`` seconds pass.

    A check is never started at or after the deadline, so a condition that only
    becomes true exactly at ``timeout`` is reported as a timeout. Exceptions
    raised by ``check`` propagate unchanged; that is how a check reports a
    terminal failure that should not be retried.

    Args:
        check (Callable): Returns the result once the condition holds, else a falsy value.
        timeout (float): Seconds to keep trying.
        interval (float): Seconds to wait between checks.
        description (str): What we're waiting for (used in logs and the timeout message).
        clock (Callable): Monotonic clock, in seconds.
        sleep (Callable): Sleep function.

    Returns:
        The first truthy value returned by ``check``.

    Raises:
        PollTimeout: If the deadline passes first.
    """
    start = clock()
    attempts = 0
    while True:
        elapsed = clock() - start
        if elapsed >= timeout:
            raise PollTimeout(description, elapsed, attempts)

        attempts += 1
        result = check()
        if result:
            logger.debug(f"{description}: done after {attempts} attempt(s), {int(elapsed)}s")
            return result

        remaining = timeout - (clock() - start)
        if remaining <= 0:
            raise PollTimeout(description, clock() - start, attempts)
        logger.debug(f"{description}: not yet (attempt {attempts}), retrying in {min(interval, remaining):.0f}s")
        sleep(min(interval, remaining))


def retry_attempts(
    check: Callable[[int], Optional[T]],
    max_attempts: int,
    interval: float,
    description: str,
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    """
    Attempt-counted variant of ``poll_until``.

    Calls ``check(attempt)`` up to ``max_attempts`` times with a fixed pause
    between attempts (none after the last one) and stops at the first truthy
    result.
    """
    for attempt in range(1, max_attempts + 1):
        result = check(attempt)
        if result:
            return result
        if attempt < max_attempts:
            sleep(interval)
    raise PollTimeout(description, float(interval * max(max_attempts - 1, 0)), max_attempts)
