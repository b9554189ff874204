# dumphedge/dump_detector.py
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from .config import ConfigError, StrategyConfig
from .models import DumpSignal, PriceSnapshot, Side
from .price_buffer import PriceBuffer

DROP_THRESHOLD_RANGE = (0.01, 0.30)
WINDOW_MINUTES_RANGE = (1, 15)


@dataclass(slots=True)
class RoundWatch:
    """
    Per-round detector state. Replaced wholesale at every round boundary,
    which is what clears the side locks.
    """
    start_time: float
    locked: Set[Side] = field(default_factory=set)


class DumpDetector:
    """
    Watches the rolling buffer for a sharp fall in one side's ask.
    Each side can fire at most once per round.
    """
    def __init__(self, config: StrategyConfig, logger: logging.Logger, clock: Callable[[], float] = time.time):
        self.logger = logger
        self._clock = clock
        self.drop_threshold = config.drop_threshold
        self.window_minutes = config.window_minutes
        self.detection_window = config.detection_window
        self._watch: Optional[RoundWatch] = None

    # --- Round lifecycle ---

    def set_round_start_time(self, start_time: float):
        self._watch = RoundWatch(start_time=start_time)
        self.logger.debug(f"Detector armed for round starting at {start_time:.0f}")

    def lock_side(self, side: Side):
        if self._watch is not None:
            self._watch.locked.add(side)

    @property
    def round_start_time(self) -> Optional[float]:
        return self._watch.start_time if self._watch else None

    @property
    def locked_sides(self) -> Set[Side]:
        return set(self._watch.locked) if self._watch else set()

    def is_within_window(self) -> bool:
        if self._watch is None:
            return False
        return self._clock() - self._watch.start_time <= self.window_minutes * 60

    def remaining_window_seconds(self) -> float:
        if self._watch is None:
            return 0.0
        elapsed = self._clock() - self._watch.start_time
        return max(0.0, self.window_minutes * 60 - elapsed)

    # --- Detection ---

    def _samples(self, buffer: PriceBuffer, round_slug: Optional[str]) -> List[PriceSnapshot]:
        samples = buffer.get_recent(self.detection_window)
        if round_slug is not None:
            samples = [s for s in samples if s.round_slug == round_slug]
        return samples

    @staticmethod
    def _drop(samples: List[PriceSnapshot], side: Side) -> Optional[float]:
        first = samples[0].ask(side)
        last = samples[-1].ask(side)
        # 0.0 is an empty ask book
        if first <= 0 or last <= 0:
            return None
        return (first - last) / first

    def detect(self, buffer: PriceBuffer, round_slug: Optional[str] = None) -> Optional[DumpSignal]:
        if not self.is_within_window():
            return None

        samples = self._samples(buffer, round_slug)
        if len(samples) < 2:
            return None

        for side in (Side.UP, Side.DOWN):
            if side in self._watch.locked:
                continue
            drop = self._drop(samples, side)
            if drop is None or drop < self.drop_threshold:
                continue

            first, last = samples[0], samples[-1]
            signal = DumpSignal(
                side=side,
                drop_pct=drop,
                price=last.ask(side),
                previous_price=first.ask(side),
                timestamp=last.timestamp,
                round_slug=last.round_slug,
            )
            self.logger.info(
                f"📉 DUMP DETECTED: {side.value} {first.ask(side):.4f} -> {last.ask(side):.4f} "
                f"({drop * 100:.2f}% in {last.timestamp - first.timestamp:.1f}s)"
            )
            return signal
        return None

    def current_drop(self, buffer: PriceBuffer, round_slug: Optional[str] = None) -> Dict[Side, float]:
        """Drop per side over the detection window, for status display."""
        samples = self._samples(buffer, round_slug)
        if len(samples) < 2:
            return {Side.UP: 0.0, Side.DOWN: 0.0}
        return {side: self._drop(samples, side) or 0.0 for side in (Side.UP, Side.DOWN)}

    # --- Configuration ---

    def apply_config(self, config: StrategyConfig):
        self.drop_threshold = config.drop_threshold
        self.window_minutes = config.window_minutes
        self.detection_window = config.detection_window

    def update_config(self, drop_threshold: Optional[float] = None, window_minutes: Optional[float] = None):
        """
        Validates both values before applying either of them.
        """
        if drop_threshold is not None:
            lo, hi = DROP_THRESHOLD_RANGE
            if not lo <= drop_threshold <= hi:
                raise ConfigError(f"drop_threshold must be between {lo} and {hi}")
        if window_minutes is not None:
            lo, hi = WINDOW_MINUTES_RANGE
            if not lo <= window_minutes <= hi:
                raise ConfigError(f"window_minutes must be between {lo} and {hi}")

        if drop_threshold is not None:
            self.drop_threshold = drop_threshold
        if window_minutes is not None:
            self.window_minutes = window_minutes
