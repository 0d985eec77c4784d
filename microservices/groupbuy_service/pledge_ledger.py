"""
Pledge Ledger

Owns pledge state and enforces that every pledge mutation is consistent with
its campaign's current status:

    PENDING -> COMMITTED   buyer commit, campaign in GRACE_PERIOD
    PENDING -> WITHDRAWN   buyer withdraw while ACTIVE, or bulk at evaluation

COMMITTED and WITHDRAWN are terminal. Each mutation reads the campaign row
with a lock so it cannot interleave with a lifecycle transition.
"""

import logging
import uuid
from typing import List, Optional

from .models import (
    Campaign,
    CampaignStatus,
    Pledge,
    PledgeStatus,
    utcnow,
)
from .protocols import (
    CampaignNotFoundError,
    DuplicatePledgeError,
    GroupBuyRepositoryProtocol,
    GroupBuyValidationError,
    InvalidCampaignStateError,
    InvalidPledgeStateError,
    PledgeAccessDeniedError,
    PledgeNotFoundError,
    UnitOfWorkProtocol,
)

logger = logging.getLogger(__name__)

PLEDGEABLE_CAMPAIGN_STATUSES = (CampaignStatus.ACTIVE, CampaignStatus.GRACE_PERIOD)
VISIBLE_PLEDGE_STATUSES = [PledgeStatus.PENDING, PledgeStatus.COMMITTED]


class PledgeLedger:
    """Pledge operations for buyer organizations"""

    def __init__(self, repository: GroupBuyRepositoryProtocol):
        self.repository = repository

    # ====================
    # Buyer Operations
    # ====================

    async def create_pledge(self, campaign_id: str, buyer_org_id: str, quantity: int) -> Pledge:
        """
        Pledge ``quantity`` units of a campaign on behalf of a buyer organization.

        One pledge per (campaign, buyer), whatever the status of an earlier one.

        Raises:
            GroupBuyValidationError: quantity is not a positive integer
            CampaignNotFoundError: campaign does not exist
            InvalidCampaignStateError: campaign is not ACTIVE or GRACE_PERIOD
            DuplicatePledgeError: buyer already pledged in this campaign
        """
        self._validate_quantity(quantity)

        async with self.repository.unit_of_work() as uow:
            campaign = await self._get_campaign(uow, campaign_id)
            if campaign.status not in PLEDGEABLE_CAMPAIGN_STATUSES:
                raise InvalidCampaignStateError(
                    f"Cannot pledge to campaign {campaign_id} in status {campaign.status.value}; "
                    f"campaign must be ACTIVE or GRACE_PERIOD",
                    current_status=campaign.status,
                    required_status=CampaignStatus.ACTIVE,
                )

            existing = await uow.find_pledge(campaign_id, buyer_org_id)
            if existing:
                raise DuplicatePledgeError(
                    f"Organization {buyer_org_id} already has a pledge for campaign {campaign_id}",
                    details={"pledge_id": existing.pledge_id, "status": existing.status.value},
                )

            now = utcnow()
            pledge = await uow.create_pledge(
                Pledge(
                    pledge_id=f"pledge_{uuid.uuid4().hex[:16]}",
                    campaign_id=campaign_id,
                    buyer_org_id=buyer_org_id,
                    quantity=quantity,
                    status=PledgeStatus.PENDING,
                    created_at=now,
                    updated_at=now,
                )
            )

        logger.info(f"Pledge {pledge.pledge_id} created: {quantity} units of campaign {campaign_id} by {buyer_org_id}")
        return pledge

    async def update_pledge_quantity(self, pledge_id: str, buyer_org_id: str, quantity: int) -> Pledge:
        """Change the quantity of a PENDING pledge while the campaign is ACTIVE"""
        self._validate_quantity(quantity)

        async with self.repository.unit_of_work() as uow:
            pledge, campaign = await self._load_owned(uow, pledge_id, buyer_org_id)
            self._require_campaign_status(campaign, CampaignStatus.ACTIVE, "update pledge")
            self._require_pledge_status(pledge, PledgeStatus.PENDING, "update")

            previous = pledge.quantity
            pledge.quantity = quantity
            pledge.updated_at = utcnow()
            pledge = await uow.save_pledge(pledge)

        logger.info(f"Pledge {pledge_id} quantity updated {previous} -> {quantity}")
        return pledge

    async def commit_pledge(self, pledge_id: str, buyer_org_id: str) -> Pledge:
        """
        Confirm a PENDING pledge during the campaign's grace period.

        Raises:
            PledgeNotFoundError: pledge does not exist
            PledgeAccessDeniedError: pledge belongs to another organization
            InvalidCampaignStateError: campaign is not GRACE_PERIOD
            InvalidPledgeStateError: pledge is not PENDING
        """
        async with self.repository.unit_of_work() as uow:
            pledge, campaign = await self._load_owned(uow, pledge_id, buyer_org_id)
            self._require_campaign_status(campaign, CampaignStatus.GRACE_PERIOD, "commit pledge")
            self._require_pledge_status(pledge, PledgeStatus.PENDING, "commit")

            now = utcnow()
            pledge.status = PledgeStatus.COMMITTED
            pledge.committed_at = now
            pledge.updated_at = now
            pledge = await uow.save_pledge(pledge)

        logger.info(f"Pledge {pledge_id} committed ({pledge.quantity} units, campaign {pledge.campaign_id})")
        return pledge

    async def withdraw_pledge(self, pledge_id: str, buyer_org_id: str) -> Pledge:
        """Withdraw a PENDING pledge; only allowed while the campaign is ACTIVE"""
        async with self.repository.unit_of_work() as uow:
            pledge, campaign = await self._load_owned(uow, pledge_id, buyer_org_id)
            self._require_campaign_status(campaign, CampaignStatus.ACTIVE, "withdraw pledge")
            self._require_pledge_status(pledge, PledgeStatus.PENDING, "withdraw")

            now = utcnow()
            pledge.status = PledgeStatus.WITHDRAWN
            pledge.withdrawn_at = now
            pledge.updated_at = now
            pledge = await uow.save_pledge(pledge)

        logger.info(f"Pledge {pledge_id} withdrawn by {buyer_org_id}")
        return pledge

    # ====================
    # Queries
    # ====================

    async def get_pledge(self, pledge_id: str, buyer_org_id: str) -> Pledge:
        async with self.repository.unit_of_work() as uow:
            pledge = await uow.get_pledge(pledge_id)
        if not pledge:
            raise PledgeNotFoundError(f"Pledge {pledge_id} not found")
        if pledge.buyer_org_id != buyer_org_id:
            raise PledgeAccessDeniedError(f"Pledge {pledge_id} does not belong to organization {buyer_org_id}")
        return pledge

    async def list_campaign_pledges(
        self, campaign_id: str, status: Optional[PledgeStatus] = None
    ) -> List[Pledge]:
        async with self.repository.unit_of_work() as uow:
            await self._get_campaign(uow, campaign_id, for_update=False)
            return await uow.list_pledges(
                campaign_id=campaign_id,
                statuses=[status] if status else VISIBLE_PLEDGE_STATUSES,
            )

    async def list_buyer_pledges(
        self, buyer_org_id: str, status: Optional[PledgeStatus] = None
    ) -> List[Pledge]:
        """Buyer's pledges across campaigns; withdrawn ones only when asked for"""
        async with self.repository.unit_of_work() as uow:
            return await uow.list_pledges(
                buyer_org_id=buyer_org_id,
                statuses=[status] if status else VISIBLE_PLEDGE_STATUSES,
            )

    # ====================
    # Lifecycle Hooks (caller's unit of work)
    # ====================

    async def withdraw_all_pending(self, uow: UnitOfWorkProtocol, campaign_id: str) -> int:
        """Withdraw every PENDING pledge of a campaign inside the caller's transaction"""
        count = await uow.withdraw_pending_pledges(campaign_id, utcnow())
        if count:
            logger.info(f"Withdrew {count} pending pledges of campaign {campaign_id}")
        return count

    async def total_committed_quantity(self, uow: UnitOfWorkProtocol, campaign_id: str) -> int:
        return await uow.sum_pledge_quantity(campaign_id, [PledgeStatus.COMMITTED])

    async def total_active_quantity(self, uow: UnitOfWorkProtocol, campaign_id: str) -> int:
        return await uow.sum_pledge_quantity(campaign_id, VISIBLE_PLEDGE_STATUSES)

    # ====================
    # Helpers
    # ====================

    @staticmethod
    def _validate_quantity(quantity: int) -> None:
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise GroupBuyValidationError(
                f"Pledge quantity must be a positive integer, got {quantity!r}", field="quantity"
            )

    @staticmethod
    async def _get_campaign(
        uow: UnitOfWorkProtocol, campaign_id: str, for_update: bool = True
    ) -> Campaign:
        campaign = await uow.get_campaign(campaign_id, for_update=for_update)
        if not campaign:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    async def _load_owned(self, uow: UnitOfWorkProtocol, pledge_id: str, buyer_org_id: str):
        pledge = await uow.get_pledge(pledge_id)
        if not pledge:
            raise PledgeNotFoundError(f"Pledge {pledge_id} not found")
        if pledge.buyer_org_id != buyer_org_id:
            raise PledgeAccessDeniedError(
                f"Pledge {pledge_id} does not belong to organization {buyer_org_id}",
                details={"pledge_id": pledge_id},
            )
        # Campaign first, then pledge: the same lock order the lifecycle engine uses
        campaign = await self._get_campaign(uow, pledge.campaign_id)
        pledge = await uow.get_pledge(pledge_id, for_update=True)
        return pledge, campaign

    @staticmethod
    def _require_campaign_status(campaign: Campaign, required: CampaignStatus, action: str) -> None:
        if campaign.status != required:
            raise InvalidCampaignStateError(
                f"Cannot {action}: campaign {campaign.campaign_id} is {campaign.status.value}, "
                f"must be {required.value}",
                current_status=campaign.status,
                required_status=required,
            )

    @staticmethod
    def _require_pledge_status(pledge: Pledge, required: PledgeStatus, action: str) -> None:
        if pledge.status != required:
            raise InvalidPledgeStateError(
                f"Cannot {action} pledge {pledge.pledge_id}: status is {pledge.status.value}, "
                f"must be {required.value}",
                current_status=pledge.status,
                required_status=required,
            )


__all__ = ["PledgeLedger", "PLEDGEABLE_CAMPAIGN_STATUSES"]
