"""Logging setup for applications embedding the SDK."""

from __future__ import annotations

import logging
import sys

import json_log_formatter

from .config import ObservabilityConfig

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(config: ObservabilityConfig | None = None) -> None:
    """Configure root logging.

    Args:
        config: Observability configuration, read from the environment if omitted
    """
    config = config or ObservabilityConfig.from_env()
    log_level = getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    # Reduce noise from chatty loggers
    for name in config.quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)
