from __future__ import annotations

import logging
import sys

logger = logging.getLogger("bcds")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def log_event(level: str, message: str, service_name: str | None = None, container: str | None = None) -> None:
    """Record a deployment event.

    Events are prefixed with the challenge id (and container) they concern so a
    failed run can be read back from the log alone.
    """
    if service_name and container:
        message = f"[{service_name}:{container}] {message}"
    elif service_name:
        message = f"[{service_name}] {message}"
    logger.log(
        _LEVELS.get(level.upper(), logging.INFO),
        message,
        extra={"service_name": service_name, "container": container},
    )


def configure_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(message)s", "%H:%M:%S"))
    logger.handlers[:] = [handler]
    logger.setLevel(_LEVELS.get(level.upper(), logging.INFO))
    logger.propagate = False
