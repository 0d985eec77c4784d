#!/usr/bin/env python3
"""Service logger setup

One call per process configures the root handlers; every module then logs
through ``logging.getLogger(__name__)``.
"""
import logging
import sys
from typing import Optional

from .config.logging_config import LoggingConfig

_configured = False


def setup_service_logger(
    service_name: str,
    level: Optional[str] = None,
    config: Optional[LoggingConfig] = None,
) -> logging.Logger:
    """Configure root logging for a service and return the service logger"""
    global _configured
    config = config or LoggingConfig.from_env()
    log_level = getattr(logging, (level or config.log_level).upper(), logging.INFO)

    root = logging.getLogger()
    if not _configured:
        formatter = logging.Formatter(config.log_format)
        if config.enable_console:
            console = logging.StreamHandler(sys.stdout)
            console.setFormatter(formatter)
            root.addHandler(console)
        if config.log_file:
            file_handler = logging.FileHandler(config.log_file)
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
        _configured = True
    root.setLevel(log_level)

    logger = logging.getLogger(service_name)
    logger.setLevel(log_level)
    return logger
