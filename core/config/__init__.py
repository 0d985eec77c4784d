#!/usr/bin/env python3
"""Modular configuration system for the group-buy platform

Configuration hierarchy:
- infra_config: Infrastructure services (PostgreSQL)
- logging_config: Logging configuration
- groupbuy_config: Campaign lifecycle, scheduler and notification settings
"""
import os
from dotenv import load_dotenv
from .logging_config import LoggingConfig
from .infra_config import InfraConfig
from .groupbuy_config import GroupBuyConfig, SchedulerConfig

# Load environment file based on ENV
env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
env_files = {
    "development": "deployment/environments/dev.env",
    "dev": "deployment/environments/dev.env",
    "testing": "deployment/environments/test.env",
    "test": "deployment/environments/test.env",
    "staging": "deployment/environments/staging.env",
    "production": "deployment/environments/production.env",
}
env_file = env_files.get(env, "deployment/environments/dev.env")
load_dotenv(env_file, override=False)

# Create global settings instance
settings = GroupBuyConfig.from_env()

def get_settings() -> GroupBuyConfig:
    """Get global settings instance"""
    return settings

def reload_settings() -> GroupBuyConfig:
    """Reload settings from environment"""
    global settings
    settings = GroupBuyConfig.from_env()
    return settings

__all__ = [
    # Main config
    'GroupBuyConfig',
    'get_settings',
    'reload_settings',
    'settings',
    # Sub-configs
    'LoggingConfig',
    'InfraConfig',
    'SchedulerConfig',
]
