"""
Module that reconciles remote listings with recently deleted paths.

Deletions are processed asynchronously by the remote side, so a folder listing issued
right after a successful delete may still contain the deleted item. Every path goes
through a tiny state machine:

    Idle -> (delete succeeds) -> PendingReconciliation -> Idle

A pending path returns to idle once its recency window has elapsed or once a read that
covers it no longer contains it. Only a complete listing of its folder or a lookup of
the path itself covers a path: a listing of an ancestor or a single page of its folder
can't tell if it is still there. While a path is pending, reads of the path itself or
any of its ancestors are wrapped in a retry loop that waits for the listing to catch
up. Pending paths are tracked independently, so deletes of unrelated paths never affect
each other.
"""

from dataclasses import dataclass
import threading
import time
from typing import Callable, Dict, Generic, List, Optional, TypeVar

from cloudbridge.config import ReconcileConfig
from cloudbridge.logger import log
from cloudbridge.remote import retry
from cloudbridge.remote.common import TransientNetworkError

T = TypeVar("T")


def is_parent_or_same(parent: str, path: str) -> bool:
    """Check if a path is equal to or located below another path."""
    parent = parent.rstrip("/")
    path = path.rstrip("/")

    return parent == path or path.startswith(parent + "/")


def is_direct_child(folder: str, path: str) -> bool:
    """Check if a path is an entry of a folder."""
    folder = folder.rstrip("/")
    path = path.rstrip("/")

    return "/" in path and path.rsplit("/", 1)[0] == folder


@dataclass
class _Attempt(Generic[T]):
    """Outcome of a single attempt: either a result or a retryable network error."""

    result: Optional[T] = None
    error: Optional[TransientNetworkError] = None


class Reconciler:
    """Tracker of recently deleted paths and the retry loop that hides their delay."""

    def __init__(
        self,
        config: ReconcileConfig,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Instantiate with the retry schedule and injectable time functions."""
        self.config = config

        self._clock = clock
        self._sleep = sleep

        self._pending: Dict[str, float] = {}
        self._pending_lock = threading.Lock()

    def record(self, path: str) -> None:
        """Mark a path as deleted just now."""
        with self._pending_lock:
            self._pending[path.rstrip("/") or "/"] = self._clock()

    def confirm(self, path: str) -> None:
        """Mark a deleted path as no longer showing up in listings."""
        with self._pending_lock:
            self._pending.pop(path.rstrip("/") or "/", None)

    def pending_under(self, path: str) -> List[str]:
        """
        Return the deleted paths that may still show up when reading the path.

        Paths whose recency window has elapsed are forgotten along the way.
        """
        now = self._clock()

        with self._pending_lock:
            for deleted, deleted_at in list(self._pending.items()):
                if now - deleted_at >= self.config.window:
                    del self._pending[deleted]

            return [p for p in self._pending if is_parent_or_same(path, p)]

    def run(
        self,
        path: str,
        action: Callable[[], T],
        still_listed: Callable[[T, str], bool],
        discard: Callable[[T, str], T],
        covers: Callable[[T, str], bool],
    ) -> T:
        """
        Perform a read of the path until its result is consistent with recent deletes.

        The read is also retried if it fails with a transient network error, which is
        raised once the attempts have run out. If a deleted path is still listed after
        the final attempt then it is discarded from the result. A deleted path only
        returns to idle if the result covers it and no longer lists it.
        """
        pending = self.pending_under(path)
        result = self._run(path, pending, action, still_listed)

        # Coverage depends on the number of entries, so check it before discarding
        covered = [deleted for deleted in pending if covers(result, deleted)]

        for deleted in pending:
            if still_listed(result, deleted):
                log.warning(f"{deleted} still listed after reconciling, discarding it")
                result = discard(result, deleted)
            elif deleted in covered:
                self.confirm(deleted)

        return result

    def retry_transient(self, description: str, action: Callable[[], T]) -> T:
        """Perform a read that is only retried on transient network errors."""
        return self._run(description, [], action, lambda result, deleted: False)

    def _run(
        self,
        path: str,
        pending: List[str],
        action: Callable[[], T],
        still_listed: Callable[[T, str], bool],
    ) -> T:
        def pre_delay(attempt: int) -> float:
            if pending and attempt == 1:
                log.debug(f"recent delete below {path}, waiting before listing")
                return self.config.pre_delay

            return 0

        def attempt() -> _Attempt[T]:
            try:
                return _Attempt(result=action())
            except TransientNetworkError as e:
                return _Attempt(error=e)

        def should_retry(outcome: _Attempt[T]) -> bool:
            if outcome.error is not None:
                log.debug(f"read of {path} failed, trying again: {outcome.error}")
                return True

            stale = [p for p in pending if still_listed(outcome.result, p)]
            if stale:
                log.debug(f"delete of {stale} still pending, listing {path} again")

            return len(stale) > 0

        outcome = retry.do(
            pre_delay,
            attempt,
            should_retry,
            self.config.base_delay,
            self.config.max_attempts,
            sleep=self._sleep,
        )

        if outcome.error is not None:
            raise outcome.error

        return outcome.result
