"""Rolling, time-bounded history of glucose readings."""

from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Iterable, Iterator, List, Optional

from cgm_link.models.glucose import GlucoseReading
from cgm_link.models.tokens import utcnow


class HistoryWindow:
    """
    Append-only buffer of readings in increasing timestamp order.

    Every append evicts entries older than ``horizon`` relative to the time
    of the append. Readings not newer than the latest entry are ignored, so
    overlapping fetch windows do not duplicate history.
    """

    def __init__(self, horizon: timedelta = timedelta(hours=24), clock: Callable[[], datetime] = utcnow):
        self.horizon = horizon
        self._clock = clock
        self._readings: Deque[GlucoseReading] = deque()

    def append(self, reading: GlucoseReading, now: Optional[datetime] = None) -> bool:
        """Append *reading*; False if it was a duplicate or already outside the window."""
        now = now or self._clock()
        appended = False
        if not self._readings or reading.timestamp > self._readings[-1].timestamp:
            self._readings.append(reading)
            appended = True
        self._evict(now)
        return appended and reading.timestamp >= now - self.horizon

    def extend(self, readings: Iterable[GlucoseReading], now: Optional[datetime] = None) -> List[GlucoseReading]:
        """Append readings in order and return the ones that were kept as new."""
        now = now or self._clock()
        return [reading for reading in readings if self.append(reading, now)]

    def _evict(self, now: datetime) -> None:
        cutoff = now - self.horizon
        while self._readings and self._readings[0].timestamp < cutoff:
            self._readings.popleft()

    def latest(self) -> Optional[GlucoseReading]:
        return self._readings[-1] if self._readings else None

    def window(self, hours: float, now: Optional[datetime] = None) -> List[GlucoseReading]:
        """Readings from the last *hours* hours, oldest first."""
        cutoff = (now or self._clock()) - timedelta(hours=hours)
        return [reading for reading in self._readings if reading.timestamp >= cutoff]

    def clear(self) -> None:
        self._readings.clear()

    def __len__(self) -> int:
        return len(self._readings)

    def __iter__(self) -> Iterator[GlucoseReading]:
        return iter(list(self._readings))
