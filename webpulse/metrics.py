"""Per-URL metrics: short/long windows and alert state behind one consumer loop."""

import logging
import queue
from collections.abc import Callable
from datetime import UTC, datetime
from threading import Thread

from .alerter import AlertTracker
from .config import AlertConfig, StatsConfig
from .models import MetricsSnapshot, Sample
from .rwlock import RWLock
from .window import Window

logger = logging.getLogger(__name__)

# Marker put on the queue to end the consumer loop
_STOP = object()


class UrlMetrics:
    """Aggregated metrics of one monitored URL.

    A single consumer thread drains the sample queue and applies each sample
    to the short window, the long window and the alert tracker, in that order,
    under the write lock. Readers take the read lock through ``snapshot()``
    and always see all three parts at the same sample.

    The queue is bounded to the long window's capacity. A producer that gets
    ahead of the loop blocks on ``put`` rather than dropping samples, which
    keeps the windows complete at the cost of probe timeliness.

    Example:
        metrics = UrlMetrics(2.0, config.stats, config.alert, url="https://example.com")
        metrics.start()
        metrics.queue.put(sample)
        snapshot = metrics.snapshot()
        metrics.stop()
    """

    def __init__(
        self,
        polling_interval: float,
        stats: StatsConfig,
        alert: AlertConfig,
        url: str | None = None,
        on_update: Callable[[MetricsSnapshot], None] | None = None,
    ) -> None:
        """Initialize the metrics of one URL.

        Args:
            polling_interval: Polling interval of the URL in seconds.
            stats: Short and long history horizons.
            alert: Alert interval and critical availability.
            url: Monitored URL; latched from the first sample when None.
            on_update: Optional callback invoked with the snapshot after each sample.

        Raises:
            ValueError: If the polling interval is longer than a horizon.
        """
        self.url = url
        self.polling_interval = polling_interval
        self.last_timestamp: datetime | None = None
        self.short_window = Window(stats.short_history, polling_interval)
        self.long_window = Window(stats.long_history, polling_interval)
        self.alert_tracker = AlertTracker(alert.interval, polling_interval, alert.critical_availability)
        self.queue: queue.Queue = queue.Queue(maxsize=self.long_window.capacity)
        self._on_update = on_update
        self._lock = RWLock()
        self._thread: Thread | None = None

    def start(self) -> None:
        """Start the consumer loop in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Metrics loop already running for %s", self.url)
            return

        self._thread = Thread(target=self._run_loop, daemon=True, name=f"metrics-{self.url}")
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the consumer loop after it has applied every queued sample.

        Producers must be stopped first, otherwise the stop marker may wait
        behind a full queue.
        """
        if self._thread is None or not self._thread.is_alive():
            return

        try:
            self.queue.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.warning("Metrics queue for %s still full, cannot stop loop", self.url)
            return
        self._thread.join(timeout=timeout)

        if self._thread.is_alive():
            logger.warning("Metrics loop for %s did not stop within timeout", self.url)

    def is_running(self) -> bool:
        """Check if the consumer loop is currently running."""
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        """Consume samples until the stop marker arrives."""
        logger.debug("Metrics loop started for %s", self.url)

        while True:
            item = self.queue.get()
            if item is _STOP:
                break
            try:
                self.update(item)
            except Exception as e:
                logger.error("Failed to apply sample for %s: %s", self.url, e)

        logger.debug("Metrics loop exited for %s", self.url)

    def update(self, sample: Sample) -> MetricsSnapshot:
        """Apply one sample to all windows and the alert tracker.

        Only the consumer loop calls this in a running pipeline. It is public
        so the aggregation can be driven synchronously.

        Returns:
            The snapshot reflecting this sample.
        """
        with self._lock.write_lock():
            if self.url is None:
                self.url = sample.url
            self.short_window.aggregate(sample)
            self.long_window.aggregate(sample)
            self.alert_tracker.update(sample)
            self.last_timestamp = datetime.now(UTC)
            snapshot = self._build_snapshot()

        if self._on_update is not None:
            try:
                self._on_update(snapshot)
            except Exception as e:
                logger.error("Metrics callback failed for %s: %s", self.url, e)

        return snapshot

    def snapshot(self) -> MetricsSnapshot:
        """Return a consistent copy of the current metrics."""
        with self._lock.read_lock():
            return self._build_snapshot()

    def _build_snapshot(self) -> MetricsSnapshot:
        return MetricsSnapshot(
            url=self.url,
            polling_interval=self.polling_interval,
            last_timestamp=self.last_timestamp,
            short=self.short_window.stats(),
            long=self.long_window.stats(),
            alert=self.alert_tracker.status(),
        )
