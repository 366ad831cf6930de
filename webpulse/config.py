"""Configuration loader with type-safe dataclasses."""

import copy
import math
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


DEFAULT_USER_AGENT = "webpulse/0.1"


def sample_capacity(history_interval: float, polling_interval: float) -> int:
    """Number of samples a history interval spans at a polling interval.

    Rounds half up, so a 600s history polled every 2s holds 300 samples.
    """
    if polling_interval <= 0:
        raise ValueError(f"Polling interval must be positive (got {polling_interval})")
    return math.floor(history_interval / polling_interval + 0.5)


def normalize_url(uri: str) -> str:
    """Reassemble a bare host or host:port into a full URL.

    Hosts without a scheme get ``http`` when they explicitly use port 80
    and ``https`` otherwise.
    """
    if "://" not in uri and not uri.startswith("//"):
        uri = "//" + uri

    parts = urlsplit(uri)
    scheme = parts.scheme
    if not scheme:
        scheme = "http" if parts.netloc.endswith(":80") else "https"
    return urlunsplit((scheme, parts.netloc, parts.path, parts.query, parts.fragment))


@dataclass(frozen=True)
class UrlConfig:
    """Configuration for a single URL to monitor.

    - interval: polling interval in seconds (one probe per tick).
    - timeout: connect/read timeout in seconds; bounds how long a tick can stall.
    - verify_ssl: set to False to accept self-signed or expired certificates.
    - user_agent: override the monitor-wide User-Agent header for this URL.
    """

    url: str
    interval: float = 2.0
    timeout: float = 10.0
    verify_ssl: bool = True
    user_agent: str | None = None

    def __post_init__(self) -> None:
        if not self.url:
            raise ConfigError("URL cannot be empty")
        if not self.url.startswith(("http://", "https://")):
            raise ConfigError(f"URL must start with http:// or https:// (got '{self.url}')")
        if self.interval <= 0:
            raise ConfigError(f"Polling interval must be positive for '{self.url}' (got {self.interval})")
        if self.timeout <= 0:
            raise ConfigError(f"Timeout must be positive for '{self.url}' (got {self.timeout})")


@dataclass(frozen=True)
class MonitorConfig:
    """Configuration for the probe loops."""

    max_in_flight: int = 2  # overlapping requests allowed per URL
    default_user_agent: str = DEFAULT_USER_AGENT

    def __post_init__(self) -> None:
        if self.max_in_flight < 1:
            raise ConfigError(f"max_in_flight must be at least 1 (got {self.max_in_flight})")
        if not self.default_user_agent:
            raise ConfigError("Default User-Agent cannot be empty")


@dataclass(frozen=True)
class StatsConfig:
    """History horizons for the short and long statistics windows (seconds)."""

    short_history: float = 600.0
    long_history: float = 3600.0

    def __post_init__(self) -> None:
        if self.short_history <= 0:
            raise ConfigError(f"Short history must be positive (got {self.short_history})")
        if self.long_history <= 0:
            raise ConfigError(f"Long history must be positive (got {self.long_history})")
        if self.short_history > self.long_history:
            raise ConfigError(
                f"Short history ({self.short_history}s) cannot exceed long history ({self.long_history}s)"
            )


@dataclass(frozen=True)
class AlertConfig:
    """Alert window and threshold.

    A URL is down while its availability over the last ``interval`` seconds
    is below ``critical_availability``.
    """

    interval: float = 120.0
    critical_availability: float = 0.8

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise ConfigError(f"Alert interval must be positive (got {self.interval})")
        if not (0 < self.critical_availability <= 1):
            raise ConfigError(
                f"Critical availability must be in (0, 1] (got {self.critical_availability})"
            )


@dataclass(frozen=True)
class DisplayConfig:
    """Configuration for the terminal display."""

    enabled: bool = True
    short_refresh: float = 10.0
    long_refresh: float = 60.0

    def __post_init__(self) -> None:
        if self.short_refresh <= 0:
            raise ConfigError("Display short_refresh must be positive")
        if self.long_refresh < self.short_refresh:
            raise ConfigError("Display long_refresh cannot be shorter than short_refresh")


@dataclass(frozen=True)
class WebhookConfig:
    """Configuration for a single webhook alert."""

    url: str
    enabled: bool = True
    on_failure: bool = True  # Send alert when URL goes DOWN
    on_recovery: bool = True  # Send alert when URL recovers
    cooldown_seconds: int = 300  # Minimum time between alerts for same URL

    def __post_init__(self) -> None:
        if not self.url:
            raise ConfigError("Webhook URL cannot be empty")
        if not self.url.startswith(("http://", "https://")):
            raise ConfigError(f"Webhook URL must start with http:// or https://, got '{self.url}'")
        if self.cooldown_seconds < 0:
            raise ConfigError(f"Webhook cooldown_seconds must be non-negative, got {self.cooldown_seconds}")
        if not self.on_failure and not self.on_recovery:
            raise ConfigError("Webhook must have at least one of 'on_failure' or 'on_recovery' enabled")


@dataclass(frozen=True)
class AlertsConfig:
    """Configuration for alert delivery."""

    webhooks: list[WebhookConfig] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not isinstance(self.webhooks, list):
            raise ConfigError("Webhooks must be a list")


@dataclass(frozen=True)
class Config:
    """Main configuration container, built once at startup."""

    urls: list[UrlConfig]
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    stats: StatsConfig = field(default_factory=StatsConfig)
    alert: AlertConfig = field(default_factory=AlertConfig)
    display: DisplayConfig = field(default_factory=DisplayConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)

    def __post_init__(self) -> None:
        if not self.urls:
            raise ConfigError("At least one URL must be configured")
        seen = [u.url for u in self.urls]
        duplicates = {url for url in seen if seen.count(url) > 1}
        if duplicates:
            raise ConfigError(f"Duplicate URLs found: {duplicates}")
        # Every window must hold at least one sample
        for url_config in self.urls:
            horizons = (
                ("short history", self.stats.short_history),
                ("long history", self.stats.long_history),
                ("alert interval", self.alert.interval),
            )
            for label, interval in horizons:
                if sample_capacity(interval, url_config.interval) < 1:
                    raise ConfigError(
                        f"Polling interval {url_config.interval}s of '{url_config.url}' "
                        f"is longer than the {label} ({interval}s)"
                    )


def _parse_url_config(data: dict | str, index: int) -> UrlConfig:
    """Parse a single URL entry (a mapping, or a bare URL string)."""
    if isinstance(data, str):
        return UrlConfig(url=normalize_url(data))
    if not isinstance(data, dict):
        raise ConfigError(f"URL entry {index} must be a dictionary or a string")

    url = data.get("url")
    if url is None:
        raise ConfigError(f"URL entry {index} is missing 'url' field")

    user_agent = data.get("user_agent")

    try:
        return UrlConfig(
            url=normalize_url(str(url)),
            interval=float(data.get("interval", 2.0)),
            timeout=float(data.get("timeout", 10.0)),
            verify_ssl=bool(data.get("verify_ssl", True)),
            user_agent=str(user_agent) if user_agent is not None else None,
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"URL entry {index} is invalid: {e}")


def _parse_monitor_config(data: dict | None) -> MonitorConfig:
    """Parse monitor configuration section."""
    if data is None:
        return MonitorConfig()
    if not isinstance(data, dict):
        raise ConfigError("'monitor' section must be a dictionary")

    return MonitorConfig(
        max_in_flight=int(data.get("max_in_flight", 2)),
        default_user_agent=str(data.get("default_user_agent", DEFAULT_USER_AGENT)),
    )


def _parse_stats_config(data: dict | None) -> StatsConfig:
    """Parse stats configuration section."""
    if data is None:
        return StatsConfig()
    if not isinstance(data, dict):
        raise ConfigError("'stats' section must be a dictionary")

    return StatsConfig(
        short_history=float(data.get("short_history", 600.0)),
        long_history=float(data.get("long_history", 3600.0)),
    )


def _parse_alert_config(data: dict | None) -> AlertConfig:
    """Parse alert configuration section."""
    if data is None:
        return AlertConfig()
    if not isinstance(data, dict):
        raise ConfigError("'alert' section must be a dictionary")

    return AlertConfig(
        interval=float(data.get("interval", 120.0)),
        critical_availability=float(data.get("critical_availability", 0.8)),
    )


def _parse_display_config(data: dict | None) -> DisplayConfig:
    """Parse display configuration section."""
    if data is None:
        return DisplayConfig()
    if not isinstance(data, dict):
        raise ConfigError("'display' section must be a dictionary")

    return DisplayConfig(
        enabled=bool(data.get("enabled", True)),
        short_refresh=float(data.get("short_refresh", 10.0)),
        long_refresh=float(data.get("long_refresh", 60.0)),
    )


def _parse_webhook_config(data: dict, index: int) -> WebhookConfig:
    """Parse a single webhook configuration entry."""
    if not isinstance(data, dict):
        raise ConfigError(f"Webhook entry {index} must be a dictionary")

    url = data.get("url")
    if url is None:
        raise ConfigError(f"Webhook entry {index} is missing 'url' field")

    return WebhookConfig(
        url=str(url),
        enabled=bool(data.get("enabled", True)),
        on_failure=bool(data.get("on_failure", True)),
        on_recovery=bool(data.get("on_recovery", True)),
        cooldown_seconds=int(data.get("cooldown_seconds", 300)),
    )


def _parse_alerts_config(data: dict | None) -> AlertsConfig:
    """Parse alerts configuration section."""
    if data is None:
        return AlertsConfig()
    if not isinstance(data, dict):
        raise ConfigError("'alerts' section must be a dictionary")

    webhooks_data = data.get("webhooks", [])
    if not isinstance(webhooks_data, list):
        raise ConfigError("'alerts.webhooks' must be a list")

    webhooks = [_parse_webhook_config(webhook_data, i) for i, webhook_data in enumerate(webhooks_data)]

    return AlertsConfig(webhooks=webhooks)


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - WEBPULSE_SHORT_HISTORY: Override stats.short_history
    - WEBPULSE_LONG_HISTORY: Override stats.long_history
    - WEBPULSE_ALERT_INTERVAL: Override alert.interval
    - WEBPULSE_CRITICAL_AVAILABILITY: Override alert.critical_availability
    - WEBPULSE_DISPLAY_ENABLED: Override display.enabled (true/false)
    """
    for section in ("stats", "alert", "display"):
        if config_data.get(section) is None:
            config_data[section] = {}

    overrides = (
        ("WEBPULSE_SHORT_HISTORY", "stats", "short_history"),
        ("WEBPULSE_LONG_HISTORY", "stats", "long_history"),
        ("WEBPULSE_ALERT_INTERVAL", "alert", "interval"),
        ("WEBPULSE_CRITICAL_AVAILABILITY", "alert", "critical_availability"),
    )
    for env_name, section, key in overrides:
        value = os.environ.get(env_name)
        if value is not None:
            try:
                config_data[section][key] = float(value)
            except ValueError:
                raise ConfigError(f"{env_name} must be a number (got '{value}')")

    display_enabled = os.environ.get("WEBPULSE_DISPLAY_ENABLED")
    if display_enabled is not None:
        config_data["display"]["enabled"] = display_enabled.lower() in ("true", "1", "yes")

    return config_data


def _build(data: dict, extra_urls: list[UrlConfig]) -> Config:
    """Turn a parsed (and overridden) mapping into a validated Config."""
    urls_data = data.get("urls")
    urls: list[UrlConfig] = []
    if urls_data is not None:
        if not isinstance(urls_data, list):
            raise ConfigError("'urls' must be a list")
        urls = [_parse_url_config(url_data, i) for i, url_data in enumerate(urls_data)]

    try:
        return Config(
            urls=urls + list(extra_urls),
            monitor=_parse_monitor_config(data.get("monitor")),
            stats=_parse_stats_config(data.get("stats")),
            alert=_parse_alert_config(data.get("alert")),
            display=_parse_display_config(data.get("display")),
            alerts=_parse_alerts_config(data.get("alerts")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")


def parse_url_pairs(args: list[str]) -> list[UrlConfig]:
    """Parse ``URL INTERVAL`` command-line pairs into URL configurations.

    Raises:
        ConfigError: If the arguments are not pairs or an interval is not a number.
    """
    if len(args) % 2 != 0:
        raise ConfigError("URLs must be provided with their respective polling intervals")

    urls: list[UrlConfig] = []
    for i in range(0, len(args), 2):
        raw_url, raw_interval = args[i], args[i + 1]
        try:
            interval = float(raw_interval)
        except ValueError:
            raise ConfigError(f"Invalid polling interval '{raw_interval}' for '{raw_url}'")
        urls.append(UrlConfig(url=normalize_url(raw_url), interval=interval))
    return urls


def build_config(extra_urls: list[UrlConfig], overrides: dict | None = None) -> Config:
    """Build a configuration without a file, from CLI URLs and section overrides."""
    data = _apply_env_overrides(copy.deepcopy(overrides or {}))
    return _build(data, extra_urls)


def load_config(config_path: str, extra_urls: list[UrlConfig] | None = None) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.
        extra_urls: URLs given on the command line, appended to the file's list.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    data = _apply_env_overrides(data)

    return _build(data, extra_urls or [])


def with_overrides(
    config: Config,
    short_history: float | None = None,
    long_history: float | None = None,
    display_enabled: bool | None = None,
) -> Config:
    """Return a copy of the configuration with command-line overrides applied.

    The copy is validated again, so an override that makes a window empty
    raises ConfigError.
    """
    stats = replace(
        config.stats,
        short_history=config.stats.short_history if short_history is None else short_history,
        long_history=config.stats.long_history if long_history is None else long_history,
    )
    display = config.display if display_enabled is None else replace(config.display, enabled=display_enabled)
    return replace(config, stats=stats, display=display)
