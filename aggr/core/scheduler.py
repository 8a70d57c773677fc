"""
Scheduler - Single-threaded task queue with delayed and repeating tasks.

Every timer in the package (queue drain, counter slot expiry, pan release)
goes through a Scheduler so that the whole aggregation timeline runs on one
thread and tests can advance virtual time deterministically.

Two ways to drive it:
- advance(ms): move virtual time forward and run every task that falls due
- run_pending(): in live mode, sync virtual time with the wall clock first
"""

import heapq
import itertools
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(order=True)
class ScheduledTask:
    """A task waiting in the queue; ordered by due time then insertion."""
    due: int
    seq: int
    callback: Callable[[], None] = field(compare=False)
    interval: Optional[int] = field(default=None, compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


class Scheduler:
    """
    Cooperative timer queue.

    Tasks run synchronously, one at a time, in due-time order. A task
    scheduled for the same due time as another runs after it (FIFO).
    """

    def __init__(self, start: int = 0, clock: Optional[Callable[[], int]] = None):
        """
        Initialize scheduler.

        Args:
            start: Initial virtual time in milliseconds
            clock: Wall clock in milliseconds used by run_pending(); None
                   keeps the scheduler purely virtual
        """
        self._now = start
        self._clock = clock
        self._queue: List[ScheduledTask] = []
        self._seq = itertools.count()

    @property
    def now(self) -> int:
        """Current time in milliseconds."""
        return self._now

    def call_later(self, delay: int, callback: Callable[[], None]) -> ScheduledTask:
        """Run callback once, delay ms from now."""
        task = ScheduledTask(due=self._now + max(0, int(delay)), seq=next(self._seq), callback=callback)
        heapq.heappush(self._queue, task)
        return task

    def call_every(self, interval: int, callback: Callable[[], None]) -> ScheduledTask:
        """Run callback every interval ms until cancelled."""
        interval = max(1, int(interval))
        task = ScheduledTask(
            due=self._now + interval,
            seq=next(self._seq),
            callback=callback,
            interval=interval
        )
        heapq.heappush(self._queue, task)
        return task

    def cancel(self, task: Optional[ScheduledTask]) -> None:
        """Cancel a pending task; cancelling twice or None is a no-op."""
        if task is not None:
            task.cancel()

    def pending(self) -> int:
        """Number of tasks still waiting to run."""
        return sum(1 for task in self._queue if not task.cancelled)

    def advance(self, delta: int) -> int:
        """
        Move time forward and run every task that becomes due.

        Args:
            delta: Milliseconds to advance

        Returns:
            Number of callbacks executed
        """
        return self._run_until(self._now + max(0, int(delta)))

    def run_pending(self) -> int:
        """Sync with the wall clock (live mode) and run due tasks."""
        if self._clock is None:
            return self._run_until(self._now)
        return self._run_until(max(self._now, self._clock()))

    def clear(self) -> None:
        """Cancel every pending task."""
        for task in self._queue:
            task.cancel()
        self._queue = []

    def _run_until(self, target: int) -> int:
        executed = 0

        while self._queue and self._queue[0].due <= target:
            task = heapq.heappop(self._queue)

            if task.cancelled:
                continue

            # Tasks observe their own due time as "now"
            self._now = task.due

            if task.interval is not None:
                task.due += task.interval
                task.seq = next(self._seq)
                heapq.heappush(self._queue, task)

            task.callback()
            executed += 1

        self._now = target
        return executed
