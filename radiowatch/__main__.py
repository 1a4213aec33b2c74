#!/usr/bin/env python3
"""
Radio watchdog main entry point.

Allows the watchdog to be run as a module: python3 -m radiowatch
"""

import logging
import logging.handlers
import os
import sys

from radiowatch.config import load_config
from radiowatch.errors import ConfigurationError
from radiowatch.service import EXIT_CONFIG_ERROR, EXIT_INTERNAL_ERROR, WatchdogService

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _add_file_handler(log_file: str) -> None:
    """Mirror the log to a rotation-tolerant file; write failures never crash the watchdog."""
    try:
        handler = logging.handlers.WatchedFileHandler(log_file, mode="a")
    except OSError as e:
        logging.getLogger(__name__).warning(f"Cannot open log file {log_file}: {e}")
        return
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    original_emit = handler.emit

    def safe_emit(record):
        try:
            original_emit(record)
        except (IOError, OSError):
            pass

    handler.emit = safe_emit
    logging.getLogger().addHandler(handler)


def main() -> int:
    # Set default log level from environment, or INFO if not set
    log_level = os.getenv("WATCHDOG_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format=LOG_FORMAT,
    )

    try:
        config = load_config()
    except ConfigurationError:
        # Already logged by load_config
        return EXIT_CONFIG_ERROR

    if config.log_file:
        _add_file_handler(config.log_file)

    try:
        return WatchdogService(config).run()
    except Exception as e:
        logging.critical(f"Watchdog failed: {e}", exc_info=True)
        return EXIT_INTERNAL_ERROR


if __name__ == "__main__":
    sys.exit(main())
