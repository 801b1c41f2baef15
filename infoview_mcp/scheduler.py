"""Trailing-edge throttle for backend queries.

Neither a debounce (the timer is not reset by later calls) nor a plain throttle
(the latest parameters are never lost): the first call arms a one-shot timer,
later calls only replace the action, and the timer runs whatever action is
registered when it fires.
"""

import asyncio
import logging
import os
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

# Delays between a trigger and the query it schedules (seconds)
FAST_DELAY = int(os.environ.get("INFOVIEW_FAST_DELAY_MS", "50")) / 1000
SLOW_DELAY = int(os.environ.get("INFOVIEW_SLOW_DELAY_MS", "500")) / 1000


class DelayedThrottle:
    """Run the most recently registered action at most once per interval.

    The interval is `slow` while `busy` is set (the server is still
    elaborating the document at the tracked position) and `fast` otherwise.
    It is read when the timer is armed.
    """

    def __init__(self, fast: float = FAST_DELAY, slow: float = SLOW_DELAY):
        if fast < 0 or slow < 0:
            raise ValueError(f"delays must be non-negative (got {fast}, {slow})")
        self.fast = fast
        self.slow = slow
        self.busy = False
        self._action: Optional[Callable[[], Awaitable]] = None
        self._waiting = False
        self._closed = False

    @property
    def interval(self) -> float:
        return self.slow if self.busy else self.fast

    @property
    def pending(self) -> bool:
        """True while a timer is armed and its action has not started."""
        return self._waiting

    @property
    def closed(self) -> bool:
        return self._closed

    async def trigger(self, action: Callable[[], Awaitable]):
        """Register `action` as the one to run when the current timer fires.

        The caller that arms the timer waits for the action and gets its result
        (or its exception). Callers arriving while the timer is armed return
        None immediately; their action replaces the registered one.
        """
        if self._closed:
            return None
        self._action = action
        if self._waiting:
            return None

        self._waiting = True
        delay = self.interval
        logger.debug("armed %.3fs timer", delay)
        try:
            await asyncio.sleep(delay)
        finally:
            self._waiting = False
            action, self._action = self._action, None

        if self._closed or action is None:
            return None
        return await action()

    def close(self):
        """Stop scheduling. A timer already armed fires without running anything."""
        self._closed = True
        self._action = None
