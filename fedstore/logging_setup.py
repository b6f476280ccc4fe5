"""
Logging configuration for applications embedding fedstore.

fedstore modules only ever call ``logging.getLogger(__name__)``; installing
handlers is left to the application, which can call ``setup_logging`` once
at startup.
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import ObservabilityConfig, StoreConfig

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(config: StoreConfig | ObservabilityConfig) -> None:
    """Configure the root logger based on configuration.

    Args:
        config: Store configuration, or just its observability section
    """
    observability = config.observability if isinstance(config, StoreConfig) else config
    level = getattr(logging, observability.log_level.upper(), logging.INFO)

    if observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
