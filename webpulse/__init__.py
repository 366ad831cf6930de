"""webpulse - Live HTTP availability and latency monitor for the terminal."""

import argparse
import logging
import signal
import sys
from threading import Event
from typing import Optional

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    handler_args = {"filename": log_file} if log_file else {"stream": sys.stderr}
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        **handler_args,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _load(args: argparse.Namespace):
    """Build the configuration from the config file and/or URL pairs."""
    from .config import build_config, load_config, parse_url_pairs, with_overrides

    extra_urls = parse_url_pairs(args.targets)
    if args.config:
        config = load_config(args.config, extra_urls)
    else:
        config = build_config(extra_urls)

    return with_overrides(
        config,
        short_history=args.sstats,
        long_history=args.lstats,
        display_enabled=False if args.no_display else None,
    )


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - start monitoring."""
    global _shutdown_event

    _setup_logging(args.verbose, args.log_file)

    logger.info("webpulse %s starting...", __version__)

    # Import here to avoid circular imports and allow logging setup first
    from .alerter import Alerter
    from .config import ConfigError
    from .monitor import Monitor
    from .presenter import Presenter

    # 1. Load configuration
    try:
        config = _load(args)
        logger.info("Monitoring %d URLs", len(config.urls))
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    # 2. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    # 3. Initialize alerter
    alerter = Alerter(config.alerts)
    if config.alerts.webhooks:
        logger.info("Alerts configured with %d webhook(s)", len(config.alerts.webhooks))

    # 4. Start components
    monitor = Monitor(config, on_update=alerter.process_snapshot)
    presenter: Optional[Presenter] = None

    try:
        monitor.start()

        if config.display.enabled:
            presenter = Presenter(monitor.snapshots, config.display)
            presenter.start()

        logger.info("All components started, waiting for shutdown signal...")

        # 5. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 6. Cleanup - stop all components
        logger.info("Shutting down components...")

        if presenter is not None:
            presenter.stop()

        monitor.stop()
        alerter.close()

        logger.info("Shutdown complete")


def _cmd_test_alert(args: argparse.Namespace) -> None:
    """Execute the test-alert command - verify webhook configuration."""
    from .alerter import Alerter
    from .config import ConfigError, load_config

    # 1. Load configuration
    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    # 2. Check if any webhooks are configured
    if not config.alerts.webhooks:
        print("Error: No webhooks configured in alerts section")
        sys.exit(1)

    # 3. Create alerter and test webhooks
    alerter = Alerter(config.alerts)
    print(f"Testing {len(config.alerts.webhooks)} webhook(s)...\n")

    results = alerter.test_webhooks()
    alerter.close()

    # 4. Display results
    success_count = sum(1 for success in results.values() if success)
    total_count = len(results)

    for url, success in results.items():
        status = "✓ SUCCESS" if success else "✗ FAILED"
        print(f"{status}: {url}")

    print(f"\nResult: {success_count}/{total_count} webhooks successful")

    if success_count < total_count:
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line parser."""
    parser = argparse.ArgumentParser(
        description="webpulse - Live HTTP availability and latency monitor",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"webpulse {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Start monitoring",
    )
    run_parser.add_argument(
        "targets",
        nargs="*",
        metavar="URL INTERVAL",
        help="URLs to monitor, each followed by its polling interval in seconds",
    )
    run_parser.add_argument(
        "-c", "--config",
        help="Path to a YAML configuration file",
    )
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.add_argument(
        "--log-file",
        help="Write logs to this file instead of stderr",
    )
    run_parser.add_argument(
        "--no-display",
        action="store_true",
        help="Disable the terminal display (log transitions only)",
    )
    run_parser.add_argument(
        "--sstats",
        type=float,
        help="Short history interval in seconds (overrides config)",
    )
    run_parser.add_argument(
        "--lstats",
        type=float,
        help="Long history interval in seconds (overrides config)",
    )
    run_parser.set_defaults(func=_cmd_run)

    # Test-alert subcommand
    test_alert_parser = subparsers.add_parser(
        "test-alert",
        help="Test webhook alert configuration",
    )
    test_alert_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    test_alert_parser.set_defaults(func=_cmd_test_alert)

    return parser


def main() -> None:
    """Main entry point for the webpulse package."""
    parser = build_parser()
    args = parser.parse_args()

    # A subcommand is required
    if args.command is None:
        parser.print_help()
        sys.exit(2)

    if args.func is _cmd_run and not args.config and not args.targets:
        parser.error("run needs a configuration file (-c) or URL INTERVAL pairs")

    args.func(args)
