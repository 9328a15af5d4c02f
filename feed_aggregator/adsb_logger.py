"""
Logging setup for the feed aggregator.

Installs a rotating file handler and a console handler on the package
logger, provides category child loggers and a periodic status reporter.
"""

import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .config import LoggingConfig

PACKAGE_LOGGER = "feed_aggregator"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
CONSOLE_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


class LogCategory:
    """Log categories for structured logging."""
    CONNECTION_EVENTS = "connection_events"
    DECODE_ERRORS = "decode_errors"
    AIRCRAFT_TRACKING = "aircraft_tracking"
    ALERTS = "alerts"
    SYSTEM_EVENTS = "system_events"


def get_category_logger(category: str) -> logging.Logger:
    """Child of the package logger for one category"""
    return logging.getLogger(f"{PACKAGE_LOGGER}.{category}")


def setup_logging(config: Optional[LoggingConfig] = None) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        config: Logging configuration, defaults used when omitted

    Returns:
        The configured package logger
    """
    config = config or LoggingConfig()
    level = getattr(logging, config.level.upper(), logging.INFO)

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if config.log_file:
        log_path = Path(config.log_file)
        if log_path.parent and not log_path.parent.exists():
            log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=config.max_log_size_mb * 1024 * 1024,
            backupCount=config.backup_count
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)

    if config.enable_console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
        logger.addHandler(console_handler)

    return logger


class StatusReporter:
    """Logs a status line from `status_source` every `interval_sec` seconds."""

    def __init__(self, status_source: Callable[[], Dict[str, Any]], interval_sec: float = 60):
        self.status_source = status_source
        self.interval_sec = interval_sec
        self.logger = get_category_logger(LogCategory.SYSTEM_EVENTS)
        self._timer: Optional[threading.Timer] = None
        self._running = False
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            self._running = True
        self._schedule()

    def stop(self) -> None:
        with self._lock:
            self._running = False
            if self._timer:
                self._timer.cancel()
                self._timer = None

    def _schedule(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._timer = threading.Timer(self.interval_sec, self._report)
            self._timer.daemon = True
            self._timer.start()

    def _report(self) -> None:
        try:
            self.logger.info(format_status(self.status_source()))
        except Exception as e:
            self.logger.exception(f"Failed to log status: {e}")
        self._schedule()


def format_status(status: Dict[str, Any]) -> str:
    """One-line summary of an aggregator status dictionary"""
    return (f"Status: {status.get('status', 'unknown')} | "
            f"{status.get('aircraft_tracked', 0)} aircraft tracked, "
            f"{status.get('aircraft_displayed', 0)} shown | "
            f"{status.get('message_rate', 0.0):.1f} msg/s | "
            f"{status.get('alerts_generated', 0)} alerts")
