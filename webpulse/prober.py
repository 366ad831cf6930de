"""Timed HTTP probes, one sample per polling tick."""

import http.client
import logging
import queue
import ssl
import time
from concurrent.futures import ThreadPoolExecutor
from threading import BoundedSemaphore, Event, Thread
from urllib.parse import urljoin, urlsplit

from .config import DEFAULT_USER_AGENT, UrlConfig
from .models import SENTINEL_DURATION, TRANSPORT_ERROR_STATUS, Sample

logger = logging.getLogger(__name__)

# Same limit as common HTTP clients; a longer chain is reported as a failure.
MAX_REDIRECTS = 10

REDIRECT_CODES = (301, 302, 303, 307, 308)

# Body bytes drained per response; the rest is discarded with the connection.
MAX_BODY_SIZE = 1024 * 1024  # 1MB
_READ_CHUNK = 64 * 1024

# How often a blocked publish or slot wait re-checks the stop signal.
STOP_POLL_SECONDS = 0.5


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def failure_sample(url: str, polling_interval: float, error: str) -> Sample:
    """Build the sample recorded when no HTTP response was received."""
    return Sample(
        url=url,
        polling_interval=polling_interval,
        status_code=TRANSPORT_ERROR_STATUS,
        connect_duration=SENTINEL_DURATION,
        first_byte_duration=SENTINEL_DURATION,
        error=error,
    )


def _open_connection(url: str, timeout: float, verify_ssl: bool) -> tuple[http.client.HTTPConnection, str]:
    """Create an unconnected HTTP(S) connection for a URL.

    Returns:
        Tuple of (connection, request target path).
    """
    parts = urlsplit(url)
    # Drop credentials; keep "[v6]:port" intact for http.client to split
    host = parts.netloc.rpartition("@")[2]
    if not host:
        raise http.client.InvalidURL(f"No host in URL: {url}")

    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"

    if parts.scheme == "https":
        context = ssl.create_default_context()
        if not verify_ssl:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return http.client.HTTPSConnection(host, timeout=timeout, context=context), path
    if parts.scheme == "http":
        return http.client.HTTPConnection(host, timeout=timeout), path
    raise http.client.InvalidURL(f"Unsupported scheme '{parts.scheme}' in URL: {url}")


def _drain(response: http.client.HTTPResponse) -> None:
    """Read and discard the response body, up to MAX_BODY_SIZE."""
    remaining = MAX_BODY_SIZE
    try:
        while remaining > 0:
            chunk = response.read(min(_READ_CHUNK, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
    except (OSError, http.client.HTTPException) as e:
        # Status and timings are already known; a truncated body does not fail the probe
        logger.debug("Failed to read response body: %s", e)


def probe_url(
    url: str,
    polling_interval: float,
    timeout: float = 10.0,
    verify_ssl: bool = True,
    user_agent: str = DEFAULT_USER_AGENT,
) -> Sample:
    """Perform a single timed HTTP GET on a URL.

    All durations are measured from the start of the probe. Redirects are
    followed, so they describe the final hop: ``connect_duration`` ends when
    its connection (TCP and TLS) is established, ``first_byte_duration`` when
    its status line and headers have arrived, ``total_duration`` when its
    body has been drained.

    Non-2xx responses are regular samples with real timings. Transport
    failures (DNS, refused connection, timeout, TLS, malformed URL or response) never
    raise: they yield a sample with TRANSPORT_ERROR_STATUS and sentinel timings.

    Args:
        url: URL to probe.
        polling_interval: Polling interval recorded on the sample (seconds).
        timeout: Timeout in seconds for connecting and for each read.
        verify_ssl: Whether to verify TLS certificates.
        user_agent: User-Agent header value.

    Returns:
        The Sample for this probe.
    """
    start = time.monotonic()
    target = url

    try:
        for _ in range(MAX_REDIRECTS + 1):
            conn, path = _open_connection(target, timeout, verify_ssl)
            try:
                conn.connect()
                connect_ms = _elapsed_ms(start)
                conn.request("GET", path, headers={"User-Agent": user_agent, "Accept": "*/*"})
                response = conn.getresponse()
                first_byte_ms = _elapsed_ms(start)
                status_code = response.status
                location = response.getheader("Location")
                _drain(response)
                total_ms = _elapsed_ms(start)
            finally:
                conn.close()

            if status_code in REDIRECT_CODES and location:
                target = urljoin(target, location)
                continue

            return Sample(
                url=url,
                polling_interval=polling_interval,
                status_code=status_code,
                connect_duration=connect_ms,
                first_byte_duration=first_byte_ms,
                total_duration=total_ms,
            )

        error = f"Stopped after {MAX_REDIRECTS} redirects"

    except (OSError, ValueError, http.client.HTTPException) as e:
        error = str(e) or type(e).__name__

    logger.debug("Probe of %s failed: %s", url, error)
    return failure_sample(url, polling_interval, error)


class Prober:
    """Probes one URL on a fixed interval and publishes samples to a queue.

    A ticker thread submits one probe per tick to a small worker pool, so up
    to ``max_in_flight`` requests can overlap when the site is slower than the
    polling interval. Samples are enqueued in completion order, which is the
    order the metrics loop applies them in.

    Publishing blocks while the queue is full; the worker keeps its in-flight
    slot meanwhile, so a stalled consumer eventually pauses the ticker
    instead of losing samples.

    Example:
        prober = Prober(url_config, metrics.queue)
        prober.start()
        # ... later ...
        prober.stop()
    """

    def __init__(
        self,
        url_config: UrlConfig,
        output: queue.Queue,
        max_in_flight: int = 1,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        """Initialize the prober.

        Args:
            url_config: URL, polling interval, timeout and TLS settings.
            output: Queue receiving one Sample per tick.
            max_in_flight: Maximum number of overlapping requests.
            user_agent: User-Agent used when the URL does not override it.
        """
        self._config = url_config
        self._output = output
        self._max_in_flight = max_in_flight
        self._user_agent = url_config.user_agent or user_agent
        self._slots = BoundedSemaphore(max_in_flight)
        self._stop_event = Event()
        self._thread: Thread | None = None
        self._executor: ThreadPoolExecutor | None = None

    @property
    def url(self) -> str:
        return self._config.url

    def start(self) -> None:
        """Start the ticker in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Prober already running for %s", self.url)
            return

        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self._max_in_flight,
            thread_name_prefix=f"probe-{self.url}",
        )
        self._thread = Thread(target=self._run_loop, daemon=True, name=f"prober-{self.url}")
        self._thread.start()
        logger.info("Probing %s every %ss", self.url, self._config.interval)

    def stop(self, timeout: float = 10.0) -> None:
        """Stop ticking and wait for in-flight probes to finish.

        Args:
            timeout: Maximum seconds to wait for the ticker thread.
        """
        if self._thread is None:
            return

        self._stop_event.set()
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Prober for %s did not stop within timeout", self.url)

        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None
        self._thread = None

    def is_running(self) -> bool:
        """Check if the ticker is currently running."""
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        """Ticker loop - runs in background thread."""
        interval = self._config.interval
        next_tick = time.monotonic()

        while not self._stop_event.is_set():
            if not self._acquire_slot():
                break
            self._executor.submit(self._probe_and_publish)

            next_tick += interval
            now = time.monotonic()
            if next_tick < now - interval:
                # Waited on a slot for more than a tick; restart the schedule
                # instead of bursting through the missed ticks
                logger.debug("Prober for %s fell behind, skipping missed ticks", self.url)
                next_tick = now
            self._stop_event.wait(max(0.0, next_tick - now))

        logger.debug("Prober loop exited for %s", self.url)

    def _acquire_slot(self) -> bool:
        """Wait for a free in-flight slot; False once the prober is stopping."""
        while not self._slots.acquire(timeout=STOP_POLL_SECONDS):
            if self._stop_event.is_set():
                return False
        if self._stop_event.is_set():
            # A slot freed by a worker that gave up on shutdown is not a new tick
            self._slots.release()
            return False
        return True

    def _probe_and_publish(self) -> None:
        """Run one probe and publish its sample (runs in a worker thread)."""
        try:
            try:
                sample = probe_url(
                    self.url,
                    self._config.interval,
                    timeout=self._config.timeout,
                    verify_ssl=self._config.verify_ssl,
                    user_agent=self._user_agent,
                )
            except Exception as e:
                logger.error("Probe of %s failed unexpectedly: %s", self.url, e)
                sample = failure_sample(self.url, self._config.interval, str(e))
            self._publish(sample)
        finally:
            self._slots.release()

    def _publish(self, sample: Sample) -> bool:
        """Block until the sample is queued, unless the prober is stopping."""
        while True:
            try:
                self._output.put(sample, timeout=STOP_POLL_SECONDS)
                return True
            except queue.Full:
                if self._stop_event.is_set():
                    logger.debug("Dropping sample for %s during shutdown", self.url)
                    return False
