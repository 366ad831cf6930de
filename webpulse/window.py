"""Fixed-capacity rolling window over the most recent samples of a URL."""

import math
from collections import deque
from collections.abc import Iterable

from .config import sample_capacity
from .models import SENTINEL_DURATION, Sample, WindowStats

SUCCESS_STATUS = 200


def availability_ratio(successes: int, capacity: int) -> float:
    """Fraction of successes over capacity, rounded half up to 2 decimals.

    Exact halves go up (5/8 gives 0.63), unlike the built-in ``round()``.
    """
    return math.floor(successes / capacity * 100 + 0.5) / 100


def _avg_max(durations: Iterable[int], capacity: int) -> tuple[int, int]:
    """Average and maximum of measurable durations.

    Sentinel entries are left out of both the sum and the maximum, but the
    sum is still divided by the full capacity: errors and empty slots pull
    the average down instead of being ignored.
    """
    total = 0
    maximum = 0
    for duration in durations:
        if duration == SENTINEL_DURATION:
            continue
        total += duration
        maximum = max(maximum, duration)
    return total // capacity, maximum


class Window:
    """Aggregates the last ``capacity`` samples of one history horizon.

    The capacity is the number of polls that fit in the horizon. Samples
    beyond it are evicted oldest first, and the status histogram is kept in
    step with the buffer on every eviction.

    Example:
        window = Window(history_interval=600, polling_interval=2)
        window.aggregate(sample)
        window.availability  # fraction of 200s over the 300-sample capacity
    """

    def __init__(self, history_interval: float, polling_interval: float) -> None:
        """Initialize an empty window.

        Raises:
            ValueError: If the polling interval is not positive or is longer
                than the history interval (the window would hold no sample).
        """
        capacity = sample_capacity(history_interval, polling_interval)
        if capacity < 1:
            raise ValueError(
                f"Polling interval ({polling_interval}s) is longer than the history interval ({history_interval}s)"
            )
        self.history_interval = history_interval
        self.polling_interval = polling_interval
        self.capacity = capacity
        self._buffer: deque[Sample] = deque()
        self._status_counts: dict[int, int] = {}
        self.availability = 0.0
        self.connect_duration: tuple[int, int] = (0, 0)
        self.first_byte_duration: tuple[int, int] = (0, 0)
        self.total_duration: tuple[int, int] = (0, 0)

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def buffer(self) -> tuple[Sample, ...]:
        """Samples currently held, oldest first."""
        return tuple(self._buffer)

    @property
    def status_histogram(self) -> dict[int, int]:
        """Copy of the status code counts for the samples in the buffer."""
        return dict(self._status_counts)

    def aggregate(self, sample: Sample) -> None:
        """Add a sample, evicting the oldest one when the window is full."""
        if len(self._buffer) == self.capacity:
            evicted = self._buffer.popleft()
            self._decrement(evicted.status_code)

        self._buffer.append(sample)
        self._status_counts[sample.status_code] = self._status_counts.get(sample.status_code, 0) + 1

        # capacity is small (tens to a few thousands), a rescan per sample is fine
        self.connect_duration = _avg_max((s.connect_duration for s in self._buffer), self.capacity)
        self.first_byte_duration = _avg_max((s.first_byte_duration for s in self._buffer), self.capacity)
        self.total_duration = _avg_max((s.total_duration for s in self._buffer), self.capacity)

        self.availability = availability_ratio(self._status_counts.get(SUCCESS_STATUS, 0), self.capacity)

    def _decrement(self, status_code: int) -> None:
        count = self._status_counts.get(status_code, 0)
        if count <= 1:
            # absent codes are a no-op, never a negative count
            self._status_counts.pop(status_code, None)
        else:
            self._status_counts[status_code] = count - 1

    def stats(self) -> WindowStats:
        """Return an immutable copy of the current statistics."""
        return WindowStats(
            history_interval=self.history_interval,
            capacity=self.capacity,
            availability=self.availability,
            status_histogram=self.status_histogram,
            connect_duration=self.connect_duration,
            first_byte_duration=self.first_byte_duration,
            total_duration=self.total_duration,
        )
