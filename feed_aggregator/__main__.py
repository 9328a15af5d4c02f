"""
Command line entry point: python -m feed_aggregator / adsb-aggregator
"""

import argparse
import logging
import signal
import sys
import threading
from typing import List, Optional

from .adsb_logger import StatusReporter, setup_logging
from .aggregator import AggregatorService
from .config import ConfigManager
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='ADS-B feed aggregator')
    parser.add_argument('--config', '-c', default='config.json', help='Configuration file path')
    parser.add_argument('--log-level', '-l', default=None,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Override the configured log level')
    parser.add_argument('--check', action='store_true',
                        help='Validate the configuration and exit')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)

    try:
        config = ConfigManager(args.config).load_config()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    if args.log_level:
        config.logging.level = args.log_level
    setup_logging(config.logging)

    if args.check:
        for source in config.sources:
            state = "enabled" if source.enabled else "disabled"
            print(f"{source.name}: {source.protocol.display_name} {source.url_string} ({state})")
        print(f"{len(config.alerts.rules)} alert rule(s)")
        return 0

    service = AggregatorService.from_config(config)
    reporter = StatusReporter(service.get_status, config.logging.status_interval_sec)
    stop_event = threading.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    service.start()
    reporter.start()
    try:
        while not stop_event.wait(1):
            pass
    finally:
        reporter.stop()
        service.stop()

    return 0


if __name__ == "__main__":
    sys.exit(main())
