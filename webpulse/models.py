"""Data models for probe samples and metrics snapshots."""

from dataclasses import dataclass, field
from datetime import datetime

# Status code recorded when the request never produced an HTTP response.
TRANSPORT_ERROR_STATUS = 0

# Duration recorded when a phase could not be measured because of an error.
SENTINEL_DURATION = -1


@dataclass(frozen=True)
class Sample:
    """Outcome of a single probe attempt.

    Attributes:
        url: URL that was probed.
        polling_interval: Polling interval of the URL in seconds.
        status_code: HTTP status code, or TRANSPORT_ERROR_STATUS if the request failed.
        connect_duration: Milliseconds from request start until the connection was
            established, or SENTINEL_DURATION if unmeasurable.
        first_byte_duration: Milliseconds from request start until the response
            headers arrived, or SENTINEL_DURATION if unmeasurable.
        error: Transport error description, None when a response was received.
        total_duration: Milliseconds from request start until the response body
            was drained, or SENTINEL_DURATION if unmeasurable.
    """

    url: str
    polling_interval: float
    status_code: int
    connect_duration: int
    first_byte_duration: int
    error: str | None = None
    total_duration: int = SENTINEL_DURATION

    @property
    def is_transport_error(self) -> bool:
        """Whether the probe failed before an HTTP response was received."""
        return self.status_code == TRANSPORT_ERROR_STATUS


@dataclass(frozen=True)
class WindowStats:
    """Aggregated statistics of one history window.

    Attributes:
        history_interval: Horizon covered by the window in seconds.
        capacity: Number of samples the window holds when full.
        availability: Fraction of 200 responses over capacity (0.0-1.0).
        status_histogram: Count of each status code currently in the window.
        connect_duration: (average, maximum) connect time in milliseconds.
        first_byte_duration: (average, maximum) time to first byte in milliseconds.
        total_duration: (average, maximum) full response time in milliseconds.
    """

    history_interval: float
    capacity: int
    availability: float
    status_histogram: dict[int, int] = field(default_factory=dict)
    connect_duration: tuple[int, int] = (0, 0)
    first_byte_duration: tuple[int, int] = (0, 0)
    total_duration: tuple[int, int] = (0, 0)

    def to_dict(self) -> dict:
        return {
            "availability": self.availability,
            "statusHistogram": dict(self.status_histogram),
            "connectDuration": list(self.connect_duration),
            "firstByteDuration": list(self.first_byte_duration),
            "totalDuration": list(self.total_duration),
        }


@dataclass(frozen=True)
class AlertStatus:
    """Alert state of a URL as of its latest sample."""

    is_down: bool
    just_recovered: bool
    availability: float

    def to_dict(self) -> dict:
        return {
            "isDown": self.is_down,
            "justRecovered": self.just_recovered,
            "availability": self.availability,
        }


@dataclass(frozen=True)
class MetricsSnapshot:
    """Internally consistent view of one URL's metrics.

    All three parts (short, long and alert) reflect the same latest sample.
    """

    url: str | None
    polling_interval: float
    last_timestamp: datetime | None
    short: WindowStats
    long: WindowStats
    alert: AlertStatus

    def to_dict(self) -> dict:
        """Return the snapshot as a plain mapping for presentation layers."""
        return {
            "url": self.url,
            "pollingInterval": self.polling_interval,
            "lastTimestamp": self.last_timestamp.isoformat() if self.last_timestamp else None,
            "short": self.short.to_dict(),
            "long": self.long.to_dict(),
            "alert": self.alert.to_dict(),
        }
