"""Logging configuration for SpeedPing."""

import logging
import os
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Modules logging once per probe or reply
PROBE_LOGGERS = ("speedping.tracker", "speedping.probe_loop", "speedping.icmp_pinger")


def parse_level(value: str | None, default: int) -> int:
    """Map a level name such as "debug" to its logging constant."""
    if not value:
        return default
    level = logging.getLevelName(value.strip().upper())
    return level if isinstance(level, int) else default


def configure_logging(environ=None) -> None:
    """Configure application-wide logging.

    Logs to stderr with timestamp, level, module name, and message.

    Environment Variables:
        SPEEDPING_LOG_LEVEL: Root level (DEBUG, INFO, WARNING, ERROR,
                             CRITICAL). Default is INFO.
        SPEEDPING_PROBE_LOG_LEVEL: Level for the per-probe loggers only.
                                   Unset means they follow the root level.

    Examples:
        # Default INFO level
        $ python -m speedping 1.1.1.1

        # Engine debugging without one line per probe
        $ SPEEDPING_LOG_LEVEL=DEBUG SPEEDPING_PROBE_LOG_LEVEL=INFO python -m speedping 1.1.1.1
    """
    environ = os.environ if environ is None else environ

    log_level = parse_level(environ.get("SPEEDPING_LOG_LEVEL"), logging.INFO)
    probe_level = parse_level(environ.get("SPEEDPING_PROBE_LOG_LEVEL"), logging.NOTSET)

    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
        force=True,
    )
    for name in PROBE_LOGGERS:
        logging.getLogger(name).setLevel(probe_level)

    logger = logging.getLogger(__name__)
    logger.info(
        "Logging configured: level=%s, probe_level=%s",
        logging.getLevelName(log_level),
        logging.getLevelName(probe_level) if probe_level else "inherit",
    )
