"""Single-threaded delayed-callback queue.

Deferred work (content indexing after a write) is queued here and run by
whoever owns the thread of control: the CLI drains it before exiting, tests
advance a fake clock. Callbacks never run concurrently with each other.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List

LOGGER = logging.getLogger(__name__)


@dataclass(order=True)
class _Scheduled:
    due: float
    seq: int
    callback: Callable[[], object] = field(compare=False)


class TaskScheduler:
    """Runs callbacks no earlier than their due time."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self._heap: List[_Scheduled] = []
        self._counter = itertools.count()

    def __len__(self) -> int:
        return len(self._heap)

    def call_later(self, delay: float, callback: Callable[[], object]) -> None:
        heapq.heappush(
            self._heap, _Scheduled(self._clock() + max(delay, 0.0), next(self._counter), callback)
        )

    def run_due(self) -> int:
        """Run every callback whose due time has passed. Returns the count run."""
        ran = 0
        now = self._clock()
        while self._heap and self._heap[0].due <= now:
            task = heapq.heappop(self._heap)
            try:
                task.callback()
            except Exception:
                LOGGER.exception("Deferred task failed")
            ran += 1
        return ran

    def drain(self) -> int:
        """Wait for and run every pending callback, including ones queued meanwhile."""
        ran = 0
        while self._heap:
            wait = self._heap[0].due - self._clock()
            if wait > 0:
                self._sleep(wait)
            ran += self.run_due()
        return ran
