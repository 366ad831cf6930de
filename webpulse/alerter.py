"""Availability alert tracking and webhook delivery."""

import logging
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime

import requests

from .config import AlertsConfig, WebhookConfig, sample_capacity
from .models import AlertStatus, MetricsSnapshot, Sample
from .window import SUCCESS_STATUS, availability_ratio

logger = logging.getLogger(__name__)


class AlertTracker:
    """Tracks availability over the alert window of one URL.

    ``is_down`` is level-triggered: it holds for as long as the windowed
    availability is below the critical threshold. ``just_recovered`` is
    edge-triggered: it is True only for the update on which availability
    climbs back to the threshold, and is overwritten by the next update.

    The window starts full of successes, so a freshly started monitor is
    Healthy and needs real failures (not missing history) to go Down.
    """

    def __init__(self, alert_interval: float, polling_interval: float, critical_availability: float) -> None:
        """Initialize the tracker in the Healthy state.

        Raises:
            ValueError: If the alert window would hold no sample, or the
                critical availability is outside (0, 1].
        """
        capacity = sample_capacity(alert_interval, polling_interval)
        if capacity < 1:
            raise ValueError(
                f"Polling interval ({polling_interval}s) is longer than the alert interval ({alert_interval}s)"
            )
        if not (0 < critical_availability <= 1):
            raise ValueError(f"Critical availability must be in (0, 1] (got {critical_availability})")

        self.capacity = capacity
        self.critical_availability = critical_availability
        self._window: deque[bool] = deque([True] * capacity)
        self._successes = capacity
        self.availability = 1.0
        self.is_down = False
        self.just_recovered = False

    def update(self, sample: Sample) -> None:
        """Record one sample and re-evaluate the alert state."""
        success = sample.status_code == SUCCESS_STATUS

        if len(self._window) == self.capacity and self._window.popleft():
            self._successes -= 1
        self._window.append(success)
        if success:
            self._successes += 1

        # Derived from an exact count so repeated updates never drift
        self.availability = availability_ratio(self._successes, self.capacity)

        was_down = self.is_down
        self.is_down = self.availability < self.critical_availability
        self.just_recovered = was_down and not self.is_down

    def status(self) -> AlertStatus:
        return AlertStatus(
            is_down=self.is_down,
            just_recovered=self.just_recovered,
            availability=self.availability,
        )


@dataclass
class StateTracker:
    """Track URL alert states and webhook cooldowns."""

    last_down: dict[str, bool] = field(default_factory=dict)  # {url: is_down}
    last_alert_time: dict[tuple[str, str], float] = field(default_factory=dict)  # {(url, webhook_url): timestamp}


class Alerter:
    """Turns snapshot transitions into log lines and webhook alerts.

    ``process_snapshot`` is meant to be called with every snapshot a URL
    produces (see ``UrlMetrics.on_update``), so no transition is missed.
    Webhooks are posted from a single background worker to keep the
    metrics loop from waiting on the network.
    """

    def __init__(self, config: AlertsConfig, max_retries: int = 3, retry_delay: int = 2):
        """Initialize alerter with configuration.

        Args:
            config: Alerts configuration with webhooks
            max_retries: Maximum number of retry attempts for failed webhooks
            retry_delay: Base delay in seconds between retries (increases exponentially)
        """
        self._config = config
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._state_tracker = StateTracker()
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="webhook")

    def process_snapshot(self, snapshot: MetricsSnapshot) -> None:
        """Process a snapshot and send alerts on down/recovered transitions.

        Args:
            snapshot: The snapshot produced by the latest sample of a URL
        """
        url = snapshot.url or ""
        with self._lock:
            was_down = self._state_tracker.last_down.get(url, False)
            self._state_tracker.last_down[url] = snapshot.alert.is_down

            if snapshot.alert.is_down and not was_down:
                logger.warning(
                    "Website %s is down. availability=%.2f",
                    url,
                    snapshot.alert.availability,
                )
                self._dispatch(snapshot, "url_down")
            elif snapshot.alert.just_recovered:
                logger.info(
                    "Website %s has recovered. availability=%.2f",
                    url,
                    snapshot.alert.availability,
                )
                self._dispatch(snapshot, "url_recovered")

    def close(self) -> None:
        """Wait for pending webhook deliveries and release the worker."""
        self._executor.shutdown(wait=True)

    def _dispatch(self, snapshot: MetricsSnapshot, event_type: str) -> None:
        """Queue the event on every matching webhook (called with the lock held)."""
        is_failure = event_type == "url_down"
        url = snapshot.url or ""

        for webhook in self._config.webhooks:
            if not webhook.enabled:
                continue

            if is_failure and not webhook.on_failure:
                continue
            if not is_failure and not webhook.on_recovery:
                continue

            key = (url, webhook.url)
            if not self._is_cooldown_expired(key, webhook.cooldown_seconds):
                logger.debug("Webhook cooldown active for %s on %s, skipping", url, webhook.url)
                continue

            # Reserve the cooldown slot now so a burst of transitions queues one alert
            self._state_tracker.last_alert_time[key] = time.time()
            payload = self._build_payload(snapshot, event_type)
            self._executor.submit(self._send_webhook, webhook, url, payload)

    def _is_cooldown_expired(self, key: tuple[str, str], cooldown_seconds: int) -> bool:
        """Check if cooldown period has expired.

        Args:
            key: The monitored URL and the webhook URL
            cooldown_seconds: Cooldown period in seconds

        Returns:
            True if cooldown has expired or never set
        """
        last_alert = self._state_tracker.last_alert_time.get(key)
        if last_alert is None:
            return True

        elapsed = time.time() - last_alert
        return elapsed >= cooldown_seconds

    def _send_webhook(self, webhook: WebhookConfig, url: str, payload: dict) -> bool:
        """Send a webhook alert (with retries).

        Returns:
            True if the webhook was delivered
        """
        retry_count = 0

        while retry_count <= self._max_retries:
            try:
                response = requests.post(
                    webhook.url,
                    json=payload,
                    timeout=10,
                )
                response.raise_for_status()

                logger.info("Webhook sent successfully for %s to %s", url, webhook.url)
                return True

            except requests.RequestException as e:
                retry_count += 1
                if retry_count <= self._max_retries:
                    delay = self._retry_delay * (2 ** (retry_count - 1))
                    logger.warning(
                        "Webhook failed for %s (attempt %d/%d, retrying in %ds): %s",
                        url,
                        retry_count,
                        self._max_retries + 1,
                        delay,
                        e,
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        "Webhook failed for %s after %d attempts: %s",
                        url,
                        retry_count,
                        e,
                    )
        return False

    def _build_payload(self, snapshot: MetricsSnapshot, event_type: str) -> dict:
        """Build the webhook payload.

        Args:
            snapshot: The snapshot that triggered the alert
            event_type: "url_down" or "url_recovered"

        Returns:
            The webhook payload dictionary
        """
        timestamp = snapshot.last_timestamp or datetime.now(UTC)
        return {
            "event": event_type,
            "url": snapshot.url,
            "alert": snapshot.alert.to_dict(),
            "short": snapshot.short.to_dict(),
            "timestamp": timestamp.isoformat(),
        }

    def test_webhooks(self) -> dict[str, bool]:
        """Test all configured webhooks by sending a test payload.

        Returns:
            Dictionary mapping webhook URLs to success status
        """
        results = {}

        for webhook in self._config.webhooks:
            if not webhook.enabled:
                results[webhook.url] = False
                continue

            test_payload = {
                "event": "test",
                "url": "https://example.com",
                "alert": {"isDown": False, "justRecovered": False, "availability": 1.0},
                "timestamp": datetime.now(UTC).isoformat(),
            }

            try:
                response = requests.post(
                    webhook.url,
                    json=test_payload,
                    timeout=10,
                )
                response.raise_for_status()
                results[webhook.url] = True
                logger.info("Test webhook sent successfully to %s", webhook.url)

            except requests.RequestException as e:
                results[webhook.url] = False
                logger.error("Test webhook failed for %s: %s", webhook.url, e)

        return results
