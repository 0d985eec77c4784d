"""
Scheduled Drivers

Batch jobs that advance campaigns and chase payments without user action.

Each run re-reads its candidates from the store, processes them one at a time
and isolates failures per candidate: an exception is logged and counted, the
batch moves on, and the next run picks the candidate up again if its
precondition still holds.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Generic, List, Optional, Tuple, TypeVar

from .campaign_lifecycle import CampaignLifecycleService
from .models import (
    Campaign,
    CampaignStatus,
    Invoice,
    InvoiceStatus,
    JobRunResult,
    Payment,
    utcnow,
)
from .notifications import payment_failed, payment_reminder, send_all_best_effort, send_best_effort
from .protocols import GroupBuyRepositoryProtocol, NotificationClientProtocol

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BatchJob(Generic[T]):
    """Base class: enumerate candidates, process each in isolation, summarize"""

    name: str = "batch_job"

    def __init__(self, repository: GroupBuyRepositoryProtocol, clock: Callable[[], datetime] = utcnow):
        self.repository = repository
        self.clock = clock

    async def find_candidates(self, now: datetime) -> List[T]:
        raise NotImplementedError

    async def process(self, candidate: T, now: datetime) -> Any:
        raise NotImplementedError

    def candidate_id(self, candidate: T) -> str:
        raise NotImplementedError

    async def run(self) -> JobRunResult:
        now = self.clock()
        result = JobRunResult(job_name=self.name, started_at=now)
        candidates = await self.find_candidates(now)
        result.candidates = len(candidates)
        logger.info(f"[{self.name}] Found {len(candidates)} candidates")

        for candidate in candidates:
            item_id = self.candidate_id(candidate)
            try:
                await self.process(candidate, now)
                result.success_count += 1
            except Exception as e:
                result.failure_count += 1
                result.failures[item_id] = str(e)
                logger.error(f"[{self.name}] Failed to process {item_id}: {e}", exc_info=True)

        result.finished_at = self.clock()
        logger.info(
            f"[{self.name}] Completed: {result.success_count} succeeded, "
            f"{result.failure_count} failed of {result.candidates}"
        )
        return result


# ====================
# Campaign Lifecycle Jobs
# ====================


class GracePeriodTriggerJob(BatchJob[Campaign]):
    """ACTIVE campaigns ending within the grace window enter GRACE_PERIOD"""

    name = "grace_period_trigger"

    def __init__(
        self,
        repository: GroupBuyRepositoryProtocol,
        lifecycle: CampaignLifecycleService,
        grace_period_hours: int = 48,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(repository, clock)
        self.lifecycle = lifecycle
        self.grace_period_hours = grace_period_hours

    async def find_candidates(self, now: datetime) -> List[Campaign]:
        cutoff = now + timedelta(hours=self.grace_period_hours)
        async with self.repository.unit_of_work() as uow:
            return await uow.list_campaigns_ending_before(CampaignStatus.ACTIVE, cutoff)

    async def process(self, candidate: Campaign, now: datetime) -> Campaign:
        return await self.lifecycle.start_grace_period(candidate.campaign_id)

    def candidate_id(self, candidate: Campaign) -> str:
        return candidate.campaign_id


class CampaignEvaluationJob(BatchJob[Campaign]):
    """GRACE_PERIOD campaigns whose window has closed are locked or cancelled"""

    name = "campaign_evaluation"

    def __init__(
        self,
        repository: GroupBuyRepositoryProtocol,
        lifecycle: CampaignLifecycleService,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(repository, clock)
        self.lifecycle = lifecycle

    async def find_candidates(self, now: datetime) -> List[Campaign]:
        async with self.repository.unit_of_work() as uow:
            return await uow.list_campaigns_grace_expired(now)

    async def process(self, candidate: Campaign, now: datetime):
        return await self.lifecycle.evaluate(candidate.campaign_id)

    def candidate_id(self, candidate: Campaign) -> str:
        return candidate.campaign_id


# ====================
# Payment Follow-up Jobs
# ====================


class PaymentReminderJob(BatchJob[Campaign]):
    """Remind buyers of SENT invoices of LOCKED campaigns that fall due soon"""

    name = "payment_reminder"

    def __init__(
        self,
        repository: GroupBuyRepositoryProtocol,
        notification_client: Optional[NotificationClientProtocol],
        days_before_due: int = 7,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(repository, clock)
        self.notification_client = notification_client
        self.days_before_due = days_before_due

    async def find_candidates(self, now: datetime) -> List[Campaign]:
        async with self.repository.unit_of_work() as uow:
            return await uow.list_campaigns_by_status(CampaignStatus.LOCKED)

    async def process(self, candidate: Campaign, now: datetime) -> int:
        due_before = now + timedelta(days=self.days_before_due)
        async with self.repository.unit_of_work() as uow:
            invoices = await uow.list_invoices_due(candidate.campaign_id, InvoiceStatus.SENT, due_before)
        if not invoices:
            return 0
        sent = await send_all_best_effort(
            self.notification_client,
            (payment_reminder(candidate, invoice, now) for invoice in invoices),
        )
        logger.info(
            f"[{self.name}] Campaign {candidate.campaign_id}: "
            f"{sent}/{len(invoices)} payment reminders sent"
        )
        return sent

    def candidate_id(self, candidate: Campaign) -> str:
        return candidate.campaign_id


class FailedPaymentNotificationJob(BatchJob[Tuple[Invoice, Payment]]):
    """Tell buyers about recently failed payments on invoices still unpaid"""

    name = "failed_payment_notification"

    def __init__(
        self,
        repository: GroupBuyRepositoryProtocol,
        notification_client: Optional[NotificationClientProtocol],
        payment_base_url: str,
        lookback_hours: int = 24,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(repository, clock)
        self.notification_client = notification_client
        self.payment_base_url = payment_base_url.rstrip("/")
        self.lookback_hours = lookback_hours

    async def find_candidates(self, now: datetime) -> List[Tuple[Invoice, Payment]]:
        since = now - timedelta(hours=self.lookback_hours)
        async with self.repository.unit_of_work() as uow:
            return await uow.list_failed_payments_for_unpaid_invoices(since)

    async def process(self, candidate: Tuple[Invoice, Payment], now: datetime) -> bool:
        invoice, payment = candidate
        retry_url = f"{self.payment_base_url}/{invoice.invoice_id}"
        return await send_best_effort(self.notification_client, payment_failed(invoice, payment, retry_url))

    def candidate_id(self, candidate: Tuple[Invoice, Payment]) -> str:
        return candidate[0].invoice_id


__all__ = [
    "BatchJob",
    "GracePeriodTriggerJob",
    "CampaignEvaluationJob",
    "PaymentReminderJob",
    "FailedPaymentNotificationJob",
]
