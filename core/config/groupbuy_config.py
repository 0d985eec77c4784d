#!/usr/bin/env python3
"""Group-buy service settings

Campaign timing, minimum quantity policy, scheduler cadence and
notification delivery settings.
"""
import os
from dataclasses import dataclass, field

from .infra_config import InfraConfig
from .logging_config import LoggingConfig

def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default

def _float(val: str, default: float) -> float:
    try:
        return float(val) if val else default
    except ValueError:
        return default


@dataclass
class SchedulerConfig:
    """Cron expressions (5 fields, APScheduler syntax) for the batch drivers"""
    enabled: bool = True
    timezone: str = "UTC"
    grace_period_trigger_cron: str = "0 * * * *"
    campaign_evaluation_cron: str = "0 2 * * *"
    payment_reminder_cron: str = "0 9 * * *"
    failed_payment_notification_cron: str = "30 9 * * *"

    @classmethod
    def from_env(cls) -> 'SchedulerConfig':
        return cls(
            enabled=_bool(os.getenv("GROUPBUY_SCHEDULER_ENABLED", "true")),
            timezone=os.getenv("GROUPBUY_SCHEDULER_TIMEZONE", "UTC"),
            grace_period_trigger_cron=os.getenv("GROUPBUY_GRACE_TRIGGER_CRON", "0 * * * *"),
            campaign_evaluation_cron=os.getenv("GROUPBUY_EVALUATION_CRON", "0 2 * * *"),
            payment_reminder_cron=os.getenv("GROUPBUY_PAYMENT_REMINDER_CRON", "0 9 * * *"),
            failed_payment_notification_cron=os.getenv("GROUPBUY_FAILED_PAYMENT_CRON", "30 9 * * *"),
        )


@dataclass
class GroupBuyConfig:
    """Group-buy service configuration"""
    service_name: str = "groupbuy_service"
    service_port: int = 8260
    debug: bool = False

    # Campaign lifecycle
    grace_period_hours: int = 48
    minimum_quantity_policy: str = "target_quantity"

    # Payment follow-up jobs
    payment_reminder_days_before_due: int = 7
    failed_payment_lookback_hours: int = 24
    payment_base_url: str = "http://localhost:3000/payments"

    # Notification service
    notification_service_url: str = "http://localhost:8208"
    notification_timeout_seconds: float = 30.0
    notification_retry_attempts: int = 3

    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    infra: InfraConfig = field(default_factory=InfraConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def log_level(self) -> str:
        return self.logging.log_level

    @classmethod
    def from_env(cls) -> 'GroupBuyConfig':
        """Load group-buy config from environment"""
        return cls(
            service_name=os.getenv("SERVICE_NAME", "groupbuy_service"),
            service_port=_int(os.getenv("GROUPBUY_SERVICE_PORT", "8260"), 8260),
            debug=_bool(os.getenv("DEBUG", "false")),
            grace_period_hours=_int(os.getenv("GROUPBUY_GRACE_PERIOD_HOURS", "48"), 48),
            minimum_quantity_policy=os.getenv("GROUPBUY_MINIMUM_QUANTITY_POLICY", "target_quantity"),
            payment_reminder_days_before_due=_int(os.getenv("GROUPBUY_REMINDER_DAYS_BEFORE_DUE", "7"), 7),
            failed_payment_lookback_hours=_int(os.getenv("GROUPBUY_FAILED_PAYMENT_LOOKBACK_HOURS", "24"), 24),
            payment_base_url=os.getenv("GROUPBUY_PAYMENT_BASE_URL", "http://localhost:3000/payments"),
            notification_service_url=os.getenv("NOTIFICATION_SERVICE_URL", "http://localhost:8208"),
            notification_timeout_seconds=_float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "30"), 30.0),
            notification_retry_attempts=_int(os.getenv("NOTIFICATION_RETRY_ATTEMPTS", "3"), 3),
            scheduler=SchedulerConfig.from_env(),
            infra=InfraConfig.from_env(),
            logging=LoggingConfig.from_env(),
        )
