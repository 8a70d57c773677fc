"""
Sliding-Window Counter - decaying live sum over a trailing time window.

The window of W ms is split into slots of G ms. Each update lands in the
newest slot; every slot is evicted by its own timer exactly W ms after it
opened, so the sum decays even when updates stop. Once the window has been
fully populated, the oldest slot is drained progressively (linear
interpolation over the newest slot's elapsed time) instead of dropping out
in one step at its expiry.
"""

import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from ..core.constants import SerieType
from ..core.scheduler import ScheduledTask, Scheduler

logger = logging.getLogger(__name__)

MIN_SLOTS = 5


def get_hms(milliseconds: float) -> str:
    """Human readable duration: 90000 -> '1m30s'."""
    seconds = int(milliseconds // 1000)
    parts = []

    for unit, size in (('d', 86400), ('h', 3600), ('m', 60), ('s', 1)):
        if seconds >= size:
            parts.append(f"{seconds // size}{unit}")
            seconds %= size

    if not parts:
        return f"{int(milliseconds)}ms"

    return ''.join(parts)


def window_label(milliseconds: float) -> str:
    """Short label for a window; a single unit of one drops the 1 ('1m' -> 'm')."""
    label = get_hms(milliseconds)
    if len(label) == 2 and label[0] == '1':
        return label[1]
    return label


class SlidingWindowCounter:
    """
    Live sum of a projected value over a trailing window.

    Attributes:
        window: Window duration in ms
        granularity: Slot duration in ms
        stacks: Slot sums, oldest first
        live: Current sum (what get_value returns)
        filled: True once the window has been fully populated
        remaining: Still-counted part of the oldest slot while it drains
    """

    def __init__(
        self,
        projection: Callable[[Any], float],
        scheduler: Scheduler,
        window: int,
        granularity: int,
        id: str = "counter",
        name: Optional[str] = None,
        type: str = SerieType.LINE.value,
        precision: Optional[int] = None,
        color: Optional[str] = None
    ):
        """
        Initialize counter.

        Args:
            projection: Maps a snapshot to the value to accumulate
            scheduler: Scheduler running the slot expiries
            window: Window duration in ms
            granularity: Requested slot duration in ms
            id: Counter identifier
            name: Display name; the window label is appended
            type: Visual type of the counter series
            precision: Display precision
            color: Display color
        """
        self.projection = projection
        self.scheduler = scheduler
        self.window = int(window) if window else 60000

        granularity = max(granularity, self.window / 5000)
        self.granularity = min(granularity, self.window / MIN_SLOTS)

        self.id = id
        self.name = f"{name or id}/{window_label(self.window)}"
        self.type = SerieType(type)
        self.precision = precision
        self.color = color

        self.timestamp: Optional[int] = None
        self.stacks: Deque[float] = deque()
        self.live = 0.0
        self.filled = False
        self.remaining = 0.0
        self._draining = False
        self._timeouts: List[ScheduledTask] = []

        logger.debug(
            "counter created: id=%s window=%s granularity=%s",
            self.id, self.window, self.granularity
        )

    @property
    def slot_count(self) -> int:
        """Number of slots making up a full window."""
        return round(self.window / self.granularity)

    def clear(self) -> None:
        """Discard all slots and cancel pending expiries."""
        for timeout in self._timeouts:
            self.scheduler.cancel(timeout)

        self._timeouts = []
        self.stacks = deque()
        self.live = 0.0
        self.filled = False
        self.remaining = 0.0
        self._draining = False
        self.timestamp = None

    def unbind(self) -> None:
        logger.debug("counter unbind: id=%s", self.id)
        self.clear()

    def on_update(self, timestamp: int, snapshot: Any) -> None:
        """
        Fold a new input into the window.

        Args:
            timestamp: Time of the update in ms
            snapshot: Input passed through the projection
        """
        value = self.projection(snapshot)

        if not self.stacks or timestamp >= self.timestamp + self.granularity:
            self._append_stack(timestamp)
        elif self.filled and self._draining:
            progress = (timestamp - self.timestamp) / self.granularity
            head = self.stacks[0]
            remaining = min(self.remaining, max(0.0, head * (1 - progress)))
            self.live -= self.remaining - remaining
            self.remaining = remaining

        self._add_data(value)

    def get_value(self) -> float:
        """Current live sum."""
        return self.live

    def to_point(self) -> Optional[Dict[str, float]]:
        """Point for the render sink, or None when there is nothing to draw."""
        value = self.get_value()

        if self.timestamp is None or (self.type == SerieType.HISTOGRAM and not value):
            return None

        return {'time': self.timestamp / 1000, 'value': value}

    def _append_stack(self, timestamp: int) -> None:
        self.stacks.append(0.0)
        self.timestamp = timestamp
        self._timeouts.append(self.scheduler.call_later(self.window, self._shift_stack))

        if not self.filled and len(self.stacks) >= self.slot_count:
            self.filled = True

    def _shift_stack(self) -> None:
        """Expiry of the oldest slot; runs exactly once per slot."""
        if self._timeouts:
            self._timeouts.pop(0)

        if not self.stacks:
            return

        stack = self.stacks.popleft()

        # The draining slot only counts for what interpolation left of it
        if self._draining:
            self.live -= self.remaining
        else:
            self.live -= stack

        if not self.stacks:
            self.live = 0.0
            self.remaining = 0.0
            self._draining = False
            return

        self._draining = self.filled
        self.remaining = self.stacks[0] if self.filled else 0.0

    def _add_data(self, value: float) -> None:
        self.stacks[-1] += value
        self.live += value
