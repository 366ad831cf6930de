"""Supervisor wiring one prober and one metrics loop per monitored URL."""

import logging
from collections.abc import Callable

from .config import Config
from .metrics import UrlMetrics
from .models import MetricsSnapshot
from .prober import Prober

logger = logging.getLogger(__name__)


class Monitor:
    """Runs the probe-to-metrics pipeline of every configured URL.

    Each URL gets its own Prober feeding its own UrlMetrics queue. URLs share
    no state, so a failing or slow site never affects the others.

    Example:
        monitor = Monitor(config, on_update=alerter.process_snapshot)
        monitor.start()
        snapshots = monitor.snapshots()
        monitor.stop()
    """

    def __init__(
        self,
        config: Config,
        on_update: Callable[[MetricsSnapshot], None] | None = None,
    ) -> None:
        """Initialize the monitor.

        Args:
            config: Application configuration with URLs to monitor.
            on_update: Optional callback invoked with every new snapshot.
        """
        self._config = config
        self._metrics: list[UrlMetrics] = []
        self._probers: list[Prober] = []

        for url_config in config.urls:
            metrics = UrlMetrics(
                url_config.interval,
                config.stats,
                config.alert,
                url=url_config.url,
                on_update=on_update,
            )
            prober = Prober(
                url_config,
                metrics.queue,
                max_in_flight=config.monitor.max_in_flight,
                user_agent=config.monitor.default_user_agent,
            )
            self._metrics.append(metrics)
            self._probers.append(prober)

    @property
    def metrics(self) -> list[UrlMetrics]:
        """Metrics of every URL, in configuration order."""
        return list(self._metrics)

    def start(self) -> None:
        """Start every metrics loop, then every prober."""
        if self.is_running():
            logger.warning("Monitor already running")
            return

        for metrics in self._metrics:
            metrics.start()
        for prober in self._probers:
            prober.start()

        logger.info(
            "Monitor started with %d URLs (short history %ss, long history %ss, alert interval %ss)",
            len(self._probers),
            self._config.stats.short_history,
            self._config.stats.long_history,
            self._config.alert.interval,
        )

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the pipeline: producers first, then consumers.

        Args:
            timeout: Maximum seconds to wait for each thread to stop.
        """
        logger.info("Stopping monitor...")
        for prober in self._probers:
            prober.stop(timeout=timeout)
        for metrics in self._metrics:
            metrics.stop(timeout=timeout)
        logger.info("Monitor stopped")

    def is_running(self) -> bool:
        """Check if any part of the pipeline is running."""
        return any(p.is_running() for p in self._probers) or any(m.is_running() for m in self._metrics)

    def snapshots(self) -> list[MetricsSnapshot]:
        """Return the current snapshot of every URL."""
        return [metrics.snapshot() for metrics in self._metrics]
