"""
Polling primitive for btcswap.

Every blocking wait in a swap is "check expiry, check condition, sleep".
Watcher owns that loop so legs never call time.sleep directly; tests inject
a fake clock/sleep and the executor can cancel a wait from another thread.
"""

import time
import logging
import threading
from typing import Callable, Optional, TypeVar

from ..errors import ProviderError, WatchCancelled

log = logging.getLogger(__name__)

T = TypeVar("T")


class Watcher:
    """
    Await a condition at a fixed interval until it holds or a deadline passes.

    Args:
        clock: Returns current unix time (seconds). Defaults to time.time.
        sleep: Suspends for N seconds. Defaults to an interruptible wait, so
            cancel() wakes a sleeping loop immediately.
    """

    def __init__(self, clock: Callable[[], float] = time.time,
                 sleep: Optional[Callable[[float], None]] = None):
        self.clock = clock
        self._cancelled = threading.Event()
        self._sleep = sleep or self._cancelled.wait

    def cancel(self):
        """Stop every current and future wait on this watcher."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def wait(self, condition: Callable[[], Optional[T]], expired: Callable[[], bool],
             interval: float, what: str = "condition") -> Optional[T]:
        """
        Poll until condition() returns a truthy value or expired() is True.

        Expiry is checked first on every iteration, and nothing else is
        queried once it holds. Retryable ProviderErrors raised by either
        callable are logged and retried after the interval; anything else
        propagates.

        Returns:
            The condition's value, or None if the deadline was reached first

        Raises:
            WatchCancelled: cancel() was called
        """
        attempts = 0
        while True:
            if self.cancelled:
                raise WatchCancelled(f"Wait for {what} cancelled")

            attempts += 1
            try:
                if expired():
                    log.info(f"Gave up waiting for {what}: expired after {attempts} checks")
                    return None
                result = condition()
            except ProviderError as e:
                if not e.retryable:
                    raise
                log.debug(f"Transient error while waiting for {what}: {e}")
            else:
                if result:
                    return result

            self._sleep(interval)
