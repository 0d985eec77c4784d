"""
Campaign Lifecycle Engine

Owns campaign status. Every transition runs in one unit of work that locks the
campaign row, flips the status and applies the pledge-ledger side effects;
notifications go out only after that unit has committed.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from .bracket_pricing import (
    BracketPricingService,
    calculate_discount_percentage,
    validate_bracket_table,
)
from .models import (
    Campaign,
    CampaignStatus,
    EvaluationResult,
    OrderStatus,
    Pledge,
    PledgeStatus,
    utcnow,
)
from .notifications import (
    campaign_cancelled,
    campaign_locked,
    grace_period_started,
    send_all_best_effort,
)
from .pledge_ledger import PledgeLedger
from .protocols import (
    CampaignLockHookProtocol,
    CampaignNotFoundError,
    GroupBuyRepositoryProtocol,
    GroupBuyValidationError,
    InvalidCampaignStateError,
    InvalidStateTransitionError,
    MinimumQuantityPolicyProtocol,
    NotificationClientProtocol,
    RefundHookProtocol,
    UnitOfWorkProtocol,
)

logger = logging.getLogger(__name__)


class CampaignLifecycleService:
    """
    Campaign state machine.

    DRAFT -> ACTIVE -> GRACE_PERIOD -> {LOCKED | CANCELLED}, LOCKED -> DONE.
    """

    VALID_TRANSITIONS: Dict[CampaignStatus, List[CampaignStatus]] = {
        CampaignStatus.DRAFT: [CampaignStatus.ACTIVE],
        CampaignStatus.ACTIVE: [CampaignStatus.GRACE_PERIOD],
        CampaignStatus.GRACE_PERIOD: [CampaignStatus.LOCKED, CampaignStatus.CANCELLED],
        CampaignStatus.LOCKED: [CampaignStatus.DONE],
        CampaignStatus.CANCELLED: [],  # Terminal state
        CampaignStatus.DONE: [],  # Terminal state
    }

    def __init__(
        self,
        repository: GroupBuyRepositoryProtocol,
        pledge_ledger: PledgeLedger,
        pricing: BracketPricingService,
        minimum_policy: MinimumQuantityPolicyProtocol,
        notification_client: Optional[NotificationClientProtocol] = None,
        lock_hook: Optional[CampaignLockHookProtocol] = None,
        refund_hook: Optional[RefundHookProtocol] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.pledge_ledger = pledge_ledger
        self.pricing = pricing
        self.minimum_policy = minimum_policy
        self.notification_client = notification_client
        self.lock_hook = lock_hook
        self.refund_hook = refund_hook
        self.clock = clock

    # ====================
    # Queries
    # ====================

    async def get_campaign(self, campaign_id: str) -> Campaign:
        async with self.repository.unit_of_work() as uow:
            campaign = await uow.get_campaign(campaign_id)
        if not campaign:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    def can_transition(self, current: CampaignStatus, target: CampaignStatus) -> bool:
        return target in self.VALID_TRANSITIONS.get(current, [])

    # ====================
    # Transitions
    # ====================

    async def publish_campaign(self, campaign_id: str) -> Campaign:
        """
        Open a DRAFT campaign for pledging.

        Requires a valid bracket table and ``start_date <= now < end_date``.
        """
        now = self.clock()
        async with self.repository.unit_of_work() as uow:
            campaign = await self._lock_campaign(uow, campaign_id)
            self._check_transition(campaign, CampaignStatus.ACTIVE)

            validate_bracket_table(await uow.get_brackets(campaign_id))
            if campaign.start_date > now:
                raise GroupBuyValidationError(
                    f"Campaign {campaign_id} start date {campaign.start_date.isoformat()} is in the future",
                    field="start_date",
                )
            if campaign.end_date <= now:
                raise GroupBuyValidationError(
                    f"Campaign {campaign_id} end date {campaign.end_date.isoformat()} has passed",
                    field="end_date",
                )

            campaign.status = CampaignStatus.ACTIVE
            campaign.updated_at = now
            campaign = await uow.save_campaign(campaign)

        logger.info(f"Campaign {campaign_id} published")
        return campaign

    async def start_grace_period(self, campaign_id: str) -> Campaign:
        """
        Move an ACTIVE campaign into its grace period.

        The grace window closes at the campaign end date, or immediately when
        that date has already passed. Not idempotent: a campaign already in
        GRACE_PERIOD raises InvalidStateTransitionError.
        """
        now = self.clock()
        async with self.repository.unit_of_work() as uow:
            campaign = await self._lock_campaign(uow, campaign_id)
            self._check_transition(campaign, CampaignStatus.GRACE_PERIOD)

            campaign.status = CampaignStatus.GRACE_PERIOD
            campaign.grace_period_end_date = campaign.end_date if campaign.end_date > now else now
            campaign.updated_at = now
            campaign = await uow.save_campaign(campaign)

            pending = await uow.list_pledges(campaign_id=campaign_id, statuses=[PledgeStatus.PENDING])

        logger.info(
            f"Campaign {campaign_id} entered grace period until "
            f"{campaign.grace_period_end_date.isoformat()} ({len(pending)} pending pledges)"
        )
        await send_all_best_effort(
            self.notification_client,
            (grace_period_started(campaign, pledge) for pledge in pending),
        )
        return campaign

    async def evaluate(self, campaign_id: str) -> EvaluationResult:
        """
        Close a campaign's grace period.

        LOCKED when at least one unit is committed and the committed quantity
        reaches the policy minimum, CANCELLED otherwise. Either way every
        still-PENDING pledge is withdrawn in the same transaction as the
        status flip.

        Raises:
            CampaignNotFoundError: campaign does not exist
            InvalidCampaignStateError: campaign is not GRACE_PERIOD
            UnpricedCampaignError: minimum met but no bracket prices the quantity
        """
        now = self.clock()
        final_price: Optional[Decimal] = None
        discount = 0

        async with self.repository.unit_of_work() as uow:
            campaign = await self._lock_campaign(uow, campaign_id)
            if campaign.status != CampaignStatus.GRACE_PERIOD:
                raise InvalidCampaignStateError(
                    f"Cannot evaluate campaign {campaign_id}: status is {campaign.status.value}, "
                    f"must be GRACE_PERIOD",
                    current_status=campaign.status,
                    required_status=CampaignStatus.GRACE_PERIOD,
                )

            brackets = await uow.get_brackets(campaign_id)
            committed_quantity = await self.pledge_ledger.total_committed_quantity(uow, campaign_id)
            minimum = self.minimum_policy.minimum_quantity(campaign, brackets)
            committed = await uow.list_pledges(campaign_id=campaign_id, statuses=[PledgeStatus.COMMITTED])
            pending = await uow.list_pledges(campaign_id=campaign_id, statuses=[PledgeStatus.PENDING])

            if committed_quantity > 0 and committed_quantity >= minimum:
                bracket = await self.pricing.resolve_final_bracket(uow, campaign_id)
                final_price = bracket.unit_price
                discount = calculate_discount_percentage(brackets, final_price)
                self._check_transition(campaign, CampaignStatus.LOCKED)
                campaign.status = CampaignStatus.LOCKED
                campaign.locked_at = now
            else:
                bracket = None
                self._check_transition(campaign, CampaignStatus.CANCELLED)
                campaign.status = CampaignStatus.CANCELLED
                campaign.cancelled_at = now

            campaign.updated_at = now
            withdrawn = await self.pledge_ledger.withdraw_all_pending(uow, campaign_id)
            campaign = await uow.save_campaign(campaign)

            if campaign.status == CampaignStatus.LOCKED and self.lock_hook:
                await self.lock_hook.on_locked(uow, campaign, committed, final_price)

        if campaign.status == CampaignStatus.LOCKED:
            logger.info(
                f"Campaign {campaign_id} locked - minimum met ({committed_quantity} >= {minimum}), "
                f"unit price {final_price}"
            )
            await send_all_best_effort(
                self.notification_client,
                (campaign_locked(campaign, pledge, final_price, discount) for pledge in committed),
            )
        else:
            logger.info(
                f"Campaign {campaign_id} cancelled - minimum not met "
                f"(committed {committed_quantity}, minimum {minimum})"
            )
            await self._run_refund_hook(campaign, committed)
            await send_all_best_effort(
                self.notification_client,
                (campaign_cancelled(campaign, pledge) for pledge in committed + pending),
            )

        return EvaluationResult(
            campaign_id=campaign_id,
            status=campaign.status,
            committed_quantity=committed_quantity,
            minimum_quantity=minimum,
            withdrawn_pledges=withdrawn,
            final_unit_price=final_price,
            final_bracket_id=bracket.bracket_id if bracket else None,
        )

    async def complete_campaign(self, campaign_id: str) -> Campaign:
        """Mark a LOCKED campaign DONE once every committed pledge's order is delivered"""
        now = self.clock()
        async with self.repository.unit_of_work() as uow:
            campaign = await self._lock_campaign(uow, campaign_id)
            self._check_transition(campaign, CampaignStatus.DONE)

            committed = await uow.list_pledges(campaign_id=campaign_id, statuses=[PledgeStatus.COMMITTED])
            delivered = {
                order.pledge_id
                for order in await uow.list_orders(campaign_id)
                if order.status == OrderStatus.DELIVERED
            }
            outstanding = [p.pledge_id for p in committed if p.pledge_id not in delivered]
            if outstanding:
                raise GroupBuyValidationError(
                    f"Campaign {campaign_id} has {len(outstanding)} committed pledges without a delivered order",
                    field="orders",
                )

            campaign.status = CampaignStatus.DONE
            campaign.completed_at = now
            campaign.updated_at = now
            campaign = await uow.save_campaign(campaign)

        logger.info(f"Campaign {campaign_id} completed")
        return campaign

    # ====================
    # Helpers
    # ====================

    @staticmethod
    async def _lock_campaign(uow: UnitOfWorkProtocol, campaign_id: str) -> Campaign:
        campaign = await uow.get_campaign(campaign_id, for_update=True)
        if not campaign:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    def _check_transition(self, campaign: Campaign, target: CampaignStatus) -> None:
        if not self.can_transition(campaign.status, target):
            raise InvalidStateTransitionError(
                f"Invalid campaign transition {campaign.status.value} -> {target.value} "
                f"for campaign {campaign.campaign_id}",
                from_status=campaign.status,
                to_status=target,
            )

    async def _run_refund_hook(self, campaign: Campaign, committed: List[Pledge]) -> None:
        if not committed or not self.refund_hook:
            return
        try:
            await self.refund_hook.on_committed_pledges_cancelled(campaign, committed)
        except Exception as e:
            logger.error(
                f"Refund hook failed for cancelled campaign {campaign.campaign_id} "
                f"({len(committed)} committed pledges): {e}",
                exc_info=True,
            )


__all__ = ["CampaignLifecycleService"]
