"""
Module with a bounded retry loop for remote calls whose results may be stale.

The remote side processes some mutations asynchronously, so reading back state right
after a change can return outdated results for a short while. Rather than hardcoding
knowledge of those situations, the loop is driven entirely by the caller: the action to
perform, a predicate that inspects each result to decide if another attempt is needed,
and the delays around each attempt.
"""

import time
from typing import Callable, TypeVar

T = TypeVar("T")


def do(
    pre_delay: Callable[[int], float],
    action: Callable[[], T],
    should_retry: Callable[[T], bool],
    base_delay: float,
    max_attempts: int,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Perform an action until its result is acceptable or the attempts run out.

    Every attempt (numbered from 1) first sleeps for pre_delay(attempt) seconds, which
    may be zero. The result of the final attempt is returned even if should_retry still
    rejects it, and exceptions raised by the action propagate immediately.
    """
    if max_attempts < 1:
        raise ValueError("at least one attempt is required")

    attempt = 1

    while True:
        delay = pre_delay(attempt)
        if delay > 0:
            sleep(delay)

        result = action()

        if attempt >= max_attempts or not should_retry(result):
            return result

        attempt += 1
        sleep(base_delay)
