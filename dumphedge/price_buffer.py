# dumphedge/price_buffer.py
import time
from collections import deque
from typing import Callable, Deque, Iterator, List, Optional

from .models import PriceSnapshot


class PriceBuffer:
    """
    Fixed-capacity, time-ordered store of recent snapshots.
    Oldest entries are evicted once capacity is reached.
    """
    def __init__(self, capacity: int = 1000, clock: Callable[[], float] = time.time):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._clock = clock
        self._items: Deque[PriceSnapshot] = deque(maxlen=capacity)

    def push(self, snapshot: PriceSnapshot):
        self._items.append(snapshot)

    def get_recent(self, window_seconds: float) -> List[PriceSnapshot]:
        """
        Snapshots with timestamp >= now - window, in ascending timestamp order.
        Works on a copy so concurrent pushes never affect the result.
        """
        cutoff = self._clock() - window_seconds
        recent = [s for s in list(self._items) if s.timestamp >= cutoff]
        recent.sort(key=lambda s: s.timestamp)
        return recent

    def latest(self, round_slug: Optional[str] = None) -> Optional[PriceSnapshot]:
        for snap in reversed(list(self._items)):
            if round_slug is None or snap.round_slug == round_slug:
                return snap
        return None

    def clear(self):
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[PriceSnapshot]:
        return iter(list(self._items))
