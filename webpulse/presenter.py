"""Plain-text terminal view of the metrics snapshots."""

import logging
import sys
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from threading import Event, Thread
from typing import TextIO

from .config import DisplayConfig
from .models import TRANSPORT_ERROR_STATUS, MetricsSnapshot, WindowStats

logger = logging.getLogger(__name__)

# Number of alert lines kept on screen.
ALERT_LOG_SIZE = 50

_CLEAR_SCREEN = "\033[2J\033[H"
_HEADERS = (
    "Website",
    "Status codes",
    "Availability",
    "Connect avg (max)",
    "First byte avg (max)",
    "Total avg (max)",
)


def format_status_histogram(histogram: dict[int, int]) -> str:
    """Format status counts as "(200: 28)(503: 2)", transport errors as "err"."""
    parts = []
    for code in sorted(histogram):
        label = "err" if code == TRANSPORT_ERROR_STATUS else str(code)
        parts.append(f"({label}: {histogram[code]})")
    return "".join(parts) or "-"


def _row(snapshot: MetricsSnapshot, stats: WindowStats) -> tuple[str, ...]:
    return (
        snapshot.url or "?",
        format_status_histogram(stats.status_histogram),
        f"{stats.availability * 100:.2f}%",
        f"{stats.connect_duration[0]}ms ({stats.connect_duration[1]}ms)",
        f"{stats.first_byte_duration[0]}ms ({stats.first_byte_duration[1]}ms)",
        f"{stats.total_duration[0]}ms ({stats.total_duration[1]}ms)",
    )


def format_table(rows: list[tuple[str, ...]]) -> str:
    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    lines = ["  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip() for row in rows]
    lines.insert(1, "  ".join("-" * width for width in widths))
    return "\n".join(lines)


class Presenter:
    """Periodically renders snapshots as a stats table plus an alert log.

    Every ``short_refresh`` seconds the short-horizon table is drawn; every
    ``long_refresh`` seconds the long-horizon table replaces it. Snapshots are
    pulled, so the presenter keeps its own view of the previous down state to
    report recoveries that happened between two refreshes.
    """

    def __init__(
        self,
        source: Callable[[], list[MetricsSnapshot]],
        config: DisplayConfig,
        stream: TextIO | None = None,
    ) -> None:
        self._source = source
        self._config = config
        self._stream = stream or sys.stdout
        self._alerts: deque[str] = deque(maxlen=ALERT_LOG_SIZE)
        self._last_down: dict[str, bool] = {}
        self._stop_event = Event()
        self._thread: Thread | None = None

    @property
    def alerts(self) -> list[str]:
        return list(self._alerts)

    def refresh(self, horizon: str = "short", now: datetime | None = None) -> str:
        """Pull fresh snapshots, record alert transitions and render them."""
        now = now or datetime.now(UTC)
        snapshots = self._source()
        self._record_alerts(snapshots, now)
        return self.render(snapshots, horizon, now)

    def render(self, snapshots: list[MetricsSnapshot], horizon: str, now: datetime) -> str:
        """Render the table of one horizon ("short" or "long") and the alert log."""
        stats_of = (lambda s: s.long) if horizon == "long" else (lambda s: s.short)
        history = stats_of(snapshots[0]).history_interval if snapshots else 0

        lines = [
            f"Monitoring {len(snapshots)} websites - {horizon} history ({history:g}s) - "
            f"last update: {now.strftime('%Y-%m-%d %H:%M:%S')}",
            "",
        ]
        rows = [_HEADERS] + [_row(snapshot, stats_of(snapshot)) for snapshot in snapshots]
        lines.append(format_table(rows))
        lines.append("")
        lines.append("Alerts:")
        lines.extend(self._alerts or ["(none)"])
        return "\n".join(lines) + "\n"

    def _record_alerts(self, snapshots: list[MetricsSnapshot], now: datetime) -> None:
        timestamp = now.strftime("%Y-%m-%d %H:%M:%S")
        for snapshot in snapshots:
            url = snapshot.url or "?"
            alert = snapshot.alert
            was_down = self._last_down.get(url, False)

            if alert.is_down and not was_down:
                self._alerts.append(
                    f"Website {url} is down. availability={alert.availability:.2f}, time={timestamp}"
                )
            elif alert.just_recovered or (was_down and not alert.is_down):
                self._alerts.append(
                    f"Website {url} has recovered. availability={alert.availability:.2f}, time={timestamp}"
                )
            self._last_down[url] = alert.is_down

    def start(self) -> None:
        """Start the refresh loop in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Presenter already running")
            return

        self._stop_event.clear()
        self._thread = Thread(target=self._run_loop, daemon=True, name="presenter")
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the refresh loop."""
        if self._thread is None or not self._thread.is_alive():
            return

        self._stop_event.set()
        self._thread.join(timeout=timeout)

    def _run_loop(self) -> None:
        ratio = max(1, round(self._config.long_refresh / self._config.short_refresh))
        counter = 0

        while not self._stop_event.wait(self._config.short_refresh):
            counter += 1
            horizon = "long" if counter % ratio == 0 else "short"
            try:
                self._write(self.refresh(horizon))
            except Exception as e:
                logger.error("Display refresh failed: %s", e)

    def _write(self, text: str) -> None:
        if self._stream.isatty():
            text = _CLEAR_SCREEN + text
        self._stream.write(text)
        self._stream.flush()
