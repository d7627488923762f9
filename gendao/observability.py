"""
Logging setup for gendao.

Library modules only create module-level loggers and log with structured
``extra`` fields; applications call setup_logging() once at startup.
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import DaoConfig


def setup_logging(config: DaoConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: DAO configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
