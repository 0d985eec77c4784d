#!/usr/bin/env python3
"""
Core Module for Microservices Architecture

Shared components for the group-buy microservices.

COMPONENTS:
    - config/: Dataclass configuration loaded from environment (.env via python-dotenv)
    - logger.py: Process-wide logging setup

USAGE:
    from core.config import get_settings
    from core.logger import setup_service_logger

    settings = get_settings()
    logger = setup_service_logger("groupbuy_service", level=settings.log_level)
"""
