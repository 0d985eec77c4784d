"""
Group-Buy Service Factory

Factory for creating the group-buy components with real dependencies.
This is the ONLY module that imports concrete implementations.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from core.config import GroupBuyConfig

from .bracket_pricing import BracketPricingService
from .campaign_lifecycle import CampaignLifecycleService
from .models import utcnow
from .order_materializer import OrderMaterializer
from .pledge_ledger import PledgeLedger
from .policies import get_minimum_quantity_policy
from .protocols import (
    AddressDirectoryProtocol,
    CampaignLockHookProtocol,
    GroupBuyRepositoryProtocol,
    NotificationClientProtocol,
    RefundHookProtocol,
)
from .scheduled_jobs import (
    BatchJob,
    CampaignEvaluationJob,
    FailedPaymentNotificationJob,
    GracePeriodTriggerJob,
    PaymentReminderJob,
)
from .scheduler import JobScheduler, get_scheduler

logger = logging.getLogger(__name__)


@dataclass
class GroupBuyComponents:
    """Wired service objects sharing one repository"""
    config: GroupBuyConfig
    repository: GroupBuyRepositoryProtocol
    pricing: BracketPricingService
    pledge_ledger: PledgeLedger
    lifecycle: CampaignLifecycleService
    order_materializer: OrderMaterializer
    notification_client: Optional[NotificationClientProtocol]
    jobs: List[BatchJob]


def create_groupbuy_components(
    config: Optional[GroupBuyConfig] = None,
    repository: Optional[GroupBuyRepositoryProtocol] = None,
    notification_client: Optional[NotificationClientProtocol] = None,
    address_directory: Optional[AddressDirectoryProtocol] = None,
    lock_hook: Optional[CampaignLockHookProtocol] = None,
    refund_hook: Optional[RefundHookProtocol] = None,
    clock: Callable[[], datetime] = utcnow,
) -> GroupBuyComponents:
    """
    Create the group-buy components with all real dependencies

    Args:
        config: Optional config (loaded from environment if not provided)
        repository: Optional repository (PostgreSQL repository if not provided)
        notification_client: Optional notification sink (HTTP client if not provided)
        address_directory: Optional address lookup for order snapshots
        lock_hook: Optional hook run inside the locking transaction
        refund_hook: Optional hook run after cancelling a campaign with commitments
        clock: Time source

    Returns:
        Fully wired GroupBuyComponents (repository not yet initialized)
    """
    if config is None:
        config = GroupBuyConfig.from_env()

    if repository is None:
        from .groupbuy_repository import GroupBuyRepository

        repository = GroupBuyRepository(config=config)

    if notification_client is None:
        try:
            from .clients.notification_client import NotificationClient

            notification_client = NotificationClient(config=config)
            logger.info("✅ NotificationClient initialized for group-buy service")
        except Exception as e:
            logger.warning(f"⚠️ Failed to initialize NotificationClient: {e}")
            logger.warning("Group-buy service will operate without notifications")

    minimum_policy = get_minimum_quantity_policy(config.minimum_quantity_policy)
    logger.info(f"Minimum quantity policy: {minimum_policy.name}")

    pricing = BracketPricingService(repository)
    pledge_ledger = PledgeLedger(repository)
    lifecycle = CampaignLifecycleService(
        repository=repository,
        pledge_ledger=pledge_ledger,
        pricing=pricing,
        minimum_policy=minimum_policy,
        notification_client=notification_client,
        lock_hook=lock_hook,
        refund_hook=refund_hook,
        clock=clock,
    )
    order_materializer = OrderMaterializer(
        repository=repository,
        pricing=pricing,
        notification_client=notification_client,
        address_directory=address_directory,
        clock=clock,
    )

    jobs: List[BatchJob] = [
        GracePeriodTriggerJob(repository, lifecycle, config.grace_period_hours, clock=clock),
        CampaignEvaluationJob(repository, lifecycle, clock=clock),
        PaymentReminderJob(
            repository, notification_client, config.payment_reminder_days_before_due, clock=clock
        ),
        FailedPaymentNotificationJob(
            repository,
            notification_client,
            config.payment_base_url,
            config.failed_payment_lookback_hours,
            clock=clock,
        ),
    ]

    return GroupBuyComponents(
        config=config,
        repository=repository,
        pricing=pricing,
        pledge_ledger=pledge_ledger,
        lifecycle=lifecycle,
        order_materializer=order_materializer,
        notification_client=notification_client,
        jobs=jobs,
    )


def build_scheduler(
    components: GroupBuyComponents, scheduler: Optional[JobScheduler] = None
) -> JobScheduler:
    """Register every batch job on its configured cron trigger"""
    cadence = components.config.scheduler
    scheduler = scheduler or get_scheduler(cadence.timezone)
    crons = {
        GracePeriodTriggerJob.name: cadence.grace_period_trigger_cron,
        CampaignEvaluationJob.name: cadence.campaign_evaluation_cron,
        PaymentReminderJob.name: cadence.payment_reminder_cron,
        FailedPaymentNotificationJob.name: cadence.failed_payment_notification_cron,
    }
    for job in components.jobs:
        scheduler.register(job, crons[job.name])
    return scheduler


__all__ = ["GroupBuyComponents", "create_groupbuy_components", "build_scheduler"]
