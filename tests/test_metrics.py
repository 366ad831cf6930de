"""Tests for the per-URL metrics loop and its reader/writer lock."""

import threading
import time
from unittest.mock import Mock

import pytest

from webpulse.config import AlertConfig, StatsConfig
from webpulse.metrics import UrlMetrics
from webpulse.models import SENTINEL_DURATION, TRANSPORT_ERROR_STATUS, MetricsSnapshot, Sample
from webpulse.rwlock import RWLock

URL = "https://example.com"


def make_sample(status_code: int = 200, connect: int = 10, first_byte: int = 20) -> Sample:
    return Sample(
        url=URL,
        polling_interval=1.0,
        status_code=status_code,
        connect_duration=connect,
        first_byte_duration=first_byte,
    )


@pytest.fixture
def metrics() -> UrlMetrics:
    """Short window of 4, long window of 8 and alert window of 10 samples."""
    return UrlMetrics(
        1.0,
        StatsConfig(short_history=4, long_history=8),
        AlertConfig(interval=10, critical_availability=0.8),
    )


def wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestUrlMetricsUpdate:
    """Tests for synchronous aggregation through UrlMetrics.update."""

    def test_initial_snapshot(self, metrics: UrlMetrics) -> None:
        """Before any sample the snapshot is empty and healthy."""
        snapshot = metrics.snapshot()

        assert snapshot.url is None
        assert snapshot.last_timestamp is None
        assert snapshot.short.capacity == 4
        assert snapshot.long.capacity == 8
        assert snapshot.short.status_histogram == {}
        assert snapshot.alert.is_down is False
        assert snapshot.alert.availability == 1.0

    def test_queue_bounded_by_long_capacity(self, metrics: UrlMetrics) -> None:
        """The sample queue holds at most one long window of samples."""
        assert metrics.queue.maxsize == 8

    def test_url_latched_from_first_sample(self, metrics: UrlMetrics) -> None:
        """The URL is taken from the first sample and never changes."""
        metrics.update(make_sample())
        metrics.update(Sample("https://other.example", 1.0, 200, 1, 2))

        assert metrics.url == URL
        assert metrics.snapshot().url == URL

    def test_configured_url_is_kept(self) -> None:
        """A URL given at construction is not overwritten by samples."""
        metrics = UrlMetrics(1.0, StatsConfig(4, 8), AlertConfig(10, 0.8), url="https://configured.example")
        metrics.update(make_sample())

        assert metrics.url == "https://configured.example"

    def test_update_feeds_all_windows(self, metrics: UrlMetrics) -> None:
        """One sample reaches the short window, the long window and the alert tracker."""
        snapshot = metrics.update(make_sample(503, 30, 60))

        assert snapshot.short.status_histogram == {503: 1}
        assert snapshot.long.status_histogram == {503: 1}
        assert snapshot.short.connect_duration == (7, 30)
        assert snapshot.long.connect_duration == (3, 30)
        assert snapshot.alert.availability == 0.9
        assert snapshot.last_timestamp is not None

    def test_windows_evict_independently(self, metrics: UrlMetrics) -> None:
        """The short window forgets samples the long window still holds."""
        for _ in range(4):
            metrics.update(make_sample(500))
        for _ in range(4):
            metrics.update(make_sample(200))

        snapshot = metrics.snapshot()
        assert snapshot.short.status_histogram == {200: 4}
        assert snapshot.short.availability == 1.0
        assert snapshot.long.status_histogram == {200: 4, 500: 4}
        assert snapshot.long.availability == 0.5

    def test_transport_errors_recorded(self, metrics: UrlMetrics) -> None:
        """Transport failures appear in the histogram and lower availability."""
        error = Sample(URL, 1.0, TRANSPORT_ERROR_STATUS, SENTINEL_DURATION, SENTINEL_DURATION, error="refused")
        snapshot = metrics.update(error)

        assert snapshot.short.status_histogram == {TRANSPORT_ERROR_STATUS: 1}
        assert snapshot.short.connect_duration == (0, 0)

    def test_alert_goes_down_and_recovers(self, metrics: UrlMetrics) -> None:
        """Alert state transitions are visible in the returned snapshots."""
        for _ in range(3):
            snapshot = metrics.update(make_sample(500))
        assert snapshot.alert.is_down is True

        recoveries = [metrics.update(make_sample(200)).alert.just_recovered for _ in range(10)]
        assert recoveries.count(True) == 1

    def test_on_update_called_with_snapshot(self) -> None:
        """The callback receives the snapshot of every sample."""
        callback = Mock()
        metrics = UrlMetrics(1.0, StatsConfig(4, 8), AlertConfig(10, 0.8), on_update=callback)

        snapshot = metrics.update(make_sample())

        callback.assert_called_once_with(snapshot)
        assert isinstance(callback.call_args.args[0], MetricsSnapshot)

    def test_callback_error_does_not_break_update(self) -> None:
        """A failing callback is logged and the aggregation still applies."""
        callback = Mock(side_effect=RuntimeError("boom"))
        metrics = UrlMetrics(1.0, StatsConfig(4, 8), AlertConfig(10, 0.8), on_update=callback)

        snapshot = metrics.update(make_sample())

        assert snapshot.short.status_histogram == {200: 1}
        assert metrics.snapshot().short.status_histogram == {200: 1}

    def test_callback_runs_outside_lock(self) -> None:
        """The callback can read a snapshot without deadlocking."""
        seen = []
        metrics = UrlMetrics(1.0, StatsConfig(4, 8), AlertConfig(10, 0.8))
        metrics._on_update = lambda _snapshot: seen.append(metrics.snapshot())

        metrics.update(make_sample())

        assert len(seen) == 1
        assert seen[0].short.status_histogram == {200: 1}

    def test_rejects_polling_longer_than_short_history(self) -> None:
        """Construction fails when the short window would be empty."""
        with pytest.raises(ValueError):
            UrlMetrics(10.0, StatsConfig(4, 8), AlertConfig(100, 0.8))


class TestUrlMetricsLoop:
    """Tests for the background consumer loop."""

    def test_loop_applies_queued_samples(self, metrics: UrlMetrics) -> None:
        """Samples put on the queue are applied in order by the loop."""
        metrics.start()
        try:
            assert metrics.is_running()
            for code in (200, 500, 200):
                metrics.queue.put(make_sample(code))

            assert wait_for(lambda: sum(metrics.snapshot().long.status_histogram.values()) == 3)
        finally:
            metrics.stop()

        assert metrics.snapshot().long.status_histogram == {200: 2, 500: 1}
        assert not metrics.is_running()

    def test_stop_drains_queue_first(self, metrics: UrlMetrics) -> None:
        """Samples queued before stop() are applied before the loop exits."""
        for _ in range(5):
            metrics.queue.put(make_sample())
        metrics.start()
        metrics.stop()

        assert metrics.snapshot().long.status_histogram == {200: 5}

    def test_loop_survives_bad_item(self, metrics: UrlMetrics) -> None:
        """An item that cannot be applied is logged and skipped."""
        metrics.start()
        try:
            metrics.queue.put(object())
            metrics.queue.put(make_sample())
            assert wait_for(lambda: metrics.snapshot().long.status_histogram == {200: 1})
            assert metrics.is_running()
        finally:
            metrics.stop()

    def test_stop_when_not_started(self, metrics: UrlMetrics) -> None:
        """Stopping an idle loop is a no-op."""
        metrics.stop()
        assert not metrics.is_running()

    def test_concurrent_readers_see_consistent_snapshots(self, metrics: UrlMetrics) -> None:
        """Short and long windows of a snapshot always reflect the same sample count."""
        errors = []
        done = threading.Event()

        def reader() -> None:
            while not done.is_set():
                snapshot = metrics.snapshot()
                short_count = sum(snapshot.short.status_histogram.values())
                long_count = sum(snapshot.long.status_histogram.values())
                if short_count != min(long_count, 4):
                    errors.append((short_count, long_count))

        readers = [threading.Thread(target=reader) for _ in range(3)]
        for thread in readers:
            thread.start()

        metrics.start()
        for i in range(50):
            metrics.queue.put(make_sample(200 if i % 2 else 500))
        metrics.stop()
        done.set()
        for thread in readers:
            thread.join()

        assert errors == []
        assert sum(metrics.snapshot().long.status_histogram.values()) == 8


class TestRWLock:
    """Tests for the reader/writer lock."""

    def test_multiple_readers(self) -> None:
        """Several readers can hold the lock at once."""
        lock = RWLock()
        lock.acquire_read()
        lock.acquire_read()
        assert lock._readers == 2
        lock.release_read()
        lock.release_read()
        assert lock._readers == 0

    def test_writer_excludes_readers(self) -> None:
        """A reader waits while the writer holds the lock."""
        lock = RWLock()
        acquired = threading.Event()

        def reader() -> None:
            with lock.read_lock():
                acquired.set()

        with lock.write_lock():
            thread = threading.Thread(target=reader)
            thread.start()
            assert not acquired.wait(0.1)

        assert acquired.wait(2.0)
        thread.join()

    def test_readers_exclude_writer(self) -> None:
        """A writer waits until the last reader releases."""
        lock = RWLock()
        acquired = threading.Event()

        def writer() -> None:
            with lock.write_lock():
                acquired.set()

        lock.acquire_read()
        thread = threading.Thread(target=writer)
        thread.start()
        assert not acquired.wait(0.1)

        lock.release_read()
        assert acquired.wait(2.0)
        thread.join()

    def test_waiting_writer_blocks_new_readers(self) -> None:
        """New readers queue behind a waiting writer."""
        lock = RWLock()
        order = []

        def writer() -> None:
            with lock.write_lock():
                order.append("writer")

        def reader() -> None:
            with lock.read_lock():
                order.append("reader")

        lock.acquire_read()
        writer_thread = threading.Thread(target=writer)
        writer_thread.start()
        assert wait_for(lambda: lock._writers_waiting == 1)

        reader_thread = threading.Thread(target=reader)
        reader_thread.start()
        time.sleep(0.1)
        assert order == []

        lock.release_read()
        writer_thread.join(2.0)
        reader_thread.join(2.0)
        assert order == ["writer", "reader"]

    def test_release_without_acquire(self) -> None:
        """Unbalanced releases raise RuntimeError."""
        lock = RWLock()
        with pytest.raises(RuntimeError):
            lock.release_read()
        with pytest.raises(RuntimeError):
            lock.release_write()

    def test_context_manager_releases_on_error(self) -> None:
        """The lock is released when the block raises."""
        lock = RWLock()
        with pytest.raises(KeyError):
            with lock.write_lock():
                raise KeyError("boom")

        assert lock._writer is False
        with lock.read_lock():
            assert lock._readers == 1
