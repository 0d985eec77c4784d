"""
Pledge Ledger Component Tests

Tests PledgeLedger against the in-memory repository:
creation rules, ownership, commit/withdraw gating by campaign status,
terminal states and the bulk withdrawal used at evaluation.
"""

import pytest

from microservices.groupbuy_service.models import CampaignStatus, PledgeStatus
from microservices.groupbuy_service.protocols import (
    CampaignNotFoundError,
    DuplicatePledgeError,
    ErrorKind,
    GroupBuyValidationError,
    InvalidCampaignStateError,
    InvalidPledgeStateError,
    PledgeAccessDeniedError,
    PledgeNotFoundError,
)


@pytest.mark.component
@pytest.mark.asyncio
class TestCreatePledge:
    """Pledge creation"""

    async def test_create_pledge_in_active_campaign(self, ledger, mock_repository, factory):
        campaign = mock_repository.add_campaign(factory.make_campaign(CampaignStatus.ACTIVE))
        buyer = factory.make_org_id()

        pledge = await ledger.create_pledge(campaign.campaign_id, buyer, 25)

        assert pledge.status == PledgeStatus.PENDING
        assert pledge.quantity == 25
        assert pledge.buyer_org_id == buyer
        assert mock_repository.pledges[pledge.pledge_id].campaign_id == campaign.campaign_id

    async def test_create_pledge_allowed_during_grace_period(self, ledger, mock_repository, factory):
        campaign = mock_repository.add_campaign(factory.make_campaign(CampaignStatus.GRACE_PERIOD))

        pledge = await ledger.create_pledge(campaign.campaign_id, factory.make_org_id(), 5)

        assert pledge.status == PledgeStatus.PENDING

    @pytest.mark.parametrize(
        "status",
        [CampaignStatus.DRAFT, CampaignStatus.LOCKED, CampaignStatus.CANCELLED, CampaignStatus.DONE],
    )
    async def test_create_pledge_rejected_outside_pledging_window(
        self, ledger, mock_repository, factory, status
    ):
        campaign = mock_repository.add_campaign(factory.make_campaign(status))

        with pytest.raises(InvalidCampaignStateError) as exc_info:
            await ledger.create_pledge(campaign.campaign_id, factory.make_org_id(), 5)

        assert exc_info.value.kind == ErrorKind.INVALID_CAMPAIGN_STATE
        assert exc_info.value.current_status == status
        assert not mock_repository.pledges

    async def test_create_pledge_unknown_campaign(self, ledger, factory):
        with pytest.raises(CampaignNotFoundError) as exc_info:
            await ledger.create_pledge(factory.make_campaign_id(), factory.make_org_id(), 5)
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    async def test_create_pledge_rejects_non_positive_quantity(self, ledger, mock_repository, factory):
        campaign = mock_repository.add_campaign(factory.make_campaign(CampaignStatus.ACTIVE))

        for quantity in factory.make_invalid_quantities():
            with pytest.raises(GroupBuyValidationError) as exc_info:
                await ledger.create_pledge(campaign.campaign_id, factory.make_org_id(), quantity)
            assert exc_info.value.kind == ErrorKind.VALIDATION
            assert exc_info.value.field == "quantity"

    async def test_second_pledge_for_same_buyer_fails(self, ledger, mock_repository, factory):
        campaign = mock_repository.add_campaign(factory.make_campaign(CampaignStatus.ACTIVE))
        buyer = factory.make_org_id()
        first = await ledger.create_pledge(campaign.campaign_id, buyer, 10)

        with pytest.raises(DuplicatePledgeError) as exc_info:
            await ledger.create_pledge(campaign.campaign_id, buyer, 20)

        assert exc_info.value.kind == ErrorKind.CONFLICT
        assert mock_repository.pledges[first.pledge_id].quantity == 10
        assert len(mock_repository.pledges) == 1

    async def test_withdrawn_pledge_still_blocks_new_pledge(self, ledger, mock_repository, factory):
        campaign = mock_repository.add_campaign(factory.make_campaign(CampaignStatus.ACTIVE))
        withdrawn = mock_repository.add_pledge(
            factory.make_pledge(campaign.campaign_id, status=PledgeStatus.WITHDRAWN)
        )

        with pytest.raises(DuplicatePledgeError):
            await ledger.create_pledge(campaign.campaign_id, withdrawn.buyer_org_id, 3)


@pytest.mark.component
@pytest.mark.asyncio
class TestCommitPledge:
    """Commit is only possible during the grace period"""

    async def test_commit_during_grace_period(self, ledger, mock_repository, factory):
        campaign = mock_repository.add_campaign(factory.make_campaign(CampaignStatus.GRACE_PERIOD))
        pledge = mock_repository.add_pledge(factory.make_pledge(campaign.campaign_id))

        committed = await ledger.commit_pledge(pledge.pledge_id, pledge.buyer_org_id)

        assert committed.status == PledgeStatus.COMMITTED
        assert committed.committed_at is not None
        assert mock_repository.pledges[pledge.pledge_id].status == PledgeStatus.COMMITTED

    async def test_commit_while_active_names_grace_period(self, ledger, mock_repository, factory):
        campaign = mock_repository.add_campaign(factory.make_campaign(CampaignStatus.ACTIVE))
        pledge = mock_repository.add_pledge(factory.make_pledge(campaign.campaign_id))

        with pytest.raises(InvalidCampaignStateError) as exc_info:
            await ledger.commit_pledge(pledge.pledge_id, pledge.buyer_org_id)

        assert "GRACE_PERIOD" in str(exc_info.value)
        assert exc_info.value.required_status == CampaignStatus.GRACE_PERIOD
        assert mock_repository.pledges[pledge.pledge_id].status == PledgeStatus.PENDING

    async def test_commit_by_other_organization_is_denied(self, ledger, mock_repository, factory):
        campaign = mock_repository.add_campaign(factory.make_campaign(CampaignStatus.GRACE_PERIOD))
        pledge = mock_repository.add_pledge(factory.make_pledge(campaign.campaign_id))

        with pytest.raises(PledgeAccessDeniedError) as exc_info:
            await ledger.commit_pledge(pledge.pledge_id, factory.make_org_id())

        assert exc_info.value.kind == ErrorKind.ACCESS_DENIED
        assert mock_repository.pledges[pledge.pledge_id].status == PledgeStatus.PENDING

    async def test_commit_unknown_pledge_is_not_found(self, ledger, factory):
        with pytest.raises(PledgeNotFoundError) as exc_info:
            await ledger.commit_pledge(factory.make_pledge_id(), factory.make_org_id())
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    @pytest.mark.parametrize("status", [PledgeStatus.COMMITTED, PledgeStatus.WITHDRAWN])
    async def test_commit_terminal_pledge_names_pending(self, ledger, mock_repository, factory, status):
        campaign = mock_repository.add_campaign(factory.make_campaign(CampaignStatus.GRACE_PERIOD))
        pledge = mock_repository.add_pledge(factory.make_pledge(campaign.campaign_id, status=status))

        with pytest.raises(InvalidPledgeStateError) as exc_info:
            await ledger.commit_pledge(pledge.pledge_id, pledge.buyer_org_id)

        assert exc_info.value.kind == ErrorKind.INVALID_PLEDGE_STATE
        assert "PENDING" in str(exc_info.value)
        assert exc_info.value.current_status == status


@pytest.mark.component
@pytest.mark.asyncio
class TestWithdrawAndUpdate:
    """Buyer self-service changes while the campaign is ACTIVE"""

    async def test_withdraw_while_active(self, ledger, mock_repository, factory):
        campaign = mock_repository.add_campaign(factory.make_campaign(CampaignStatus.ACTIVE))
        pledge = mock_repository.add_pledge(factory.make_pledge(campaign.campaign_id))

        withdrawn = await ledger.withdraw_pledge(pledge.pledge_id, pledge.buyer_org_id)

        assert withdrawn.status == PledgeStatus.WITHDRAWN
        assert withdrawn.withdrawn_at is not None

    async def test_withdraw_frozen_during_grace_period(self, ledger, mock_repository, factory):
        campaign = mock_repository.add_campaign(factory.make_campaign(CampaignStatus.GRACE_PERIOD))
        pledge = mock_repository.add_pledge(factory.make_pledge(campaign.campaign_id))

        with pytest.raises(InvalidCampaignStateError):
            await ledger.withdraw_pledge(pledge.pledge_id, pledge.buyer_org_id)

        assert mock_repository.pledges[pledge.pledge_id].status == PledgeStatus.PENDING

    async def test_withdraw_twice_fails(self, ledger, mock_repository, factory):
        campaign = mock_repository.add_campaign(factory.make_campaign(CampaignStatus.ACTIVE))
        pledge = mock_repository.add_pledge(factory.make_pledge(campaign.campaign_id))
        await ledger.withdraw_pledge(pledge.pledge_id, pledge.buyer_org_id)

        with pytest.raises(InvalidPledgeStateError) as exc_info:
            await ledger.withdraw_pledge(pledge.pledge_id, pledge.buyer_org_id)

        assert exc_info.value.required_status == PledgeStatus.PENDING

    async def test_update_quantity_while_active(self, ledger, mock_repository, factory):
        campaign = mock_repository.add_campaign(factory.make_campaign(CampaignStatus.ACTIVE))
        pledge = mock_repository.add_pledge(factory.make_pledge(campaign.campaign_id, quantity=4))

        updated = await ledger.update_pledge_quantity(pledge.pledge_id, pledge.buyer_org_id, 12)

        assert updated.quantity == 12
        assert mock_repository.pledges[pledge.pledge_id].quantity == 12

    async def test_update_quantity_frozen_during_grace_period(self, ledger, mock_repository, factory):
        campaign = mock_repository.add_campaign(factory.make_campaign(CampaignStatus.GRACE_PERIOD))
        pledge = mock_repository.add_pledge(factory.make_pledge(campaign.campaign_id, quantity=4))

        with pytest.raises(InvalidCampaignStateError):
            await ledger.update_pledge_quantity(pledge.pledge_id, pledge.buyer_org_id, 12)

        assert mock_repository.pledges[pledge.pledge_id].quantity == 4


@pytest.mark.component
@pytest.mark.asyncio
class TestLedgerQueries:
    """Totals, listings and bulk withdrawal"""

    async def test_totals_by_status(self, ledger, mock_repository, factory):
        campaign = mock_repository.add_campaign(factory.make_campaign(CampaignStatus.GRACE_PERIOD))
        cid = campaign.campaign_id
        mock_repository.add_pledge(factory.make_pledge(cid, quantity=10, status=PledgeStatus.COMMITTED))
        mock_repository.add_pledge(factory.make_pledge(cid, quantity=7, status=PledgeStatus.PENDING))
        mock_repository.add_pledge(factory.make_pledge(cid, quantity=30, status=PledgeStatus.WITHDRAWN))

        async with mock_repository.unit_of_work() as uow:
            committed = await ledger.total_committed_quantity(uow, cid)
            active = await ledger.total_active_quantity(uow, cid)

        assert committed == 10
        assert active == 17

    async def test_withdraw_all_pending_leaves_committed(self, ledger, mock_repository, factory):
        campaign = mock_repository.add_campaign(factory.make_campaign(CampaignStatus.GRACE_PERIOD))
        cid = campaign.campaign_id
        committed = mock_repository.add_pledge(factory.make_pledge(cid, status=PledgeStatus.COMMITTED))
        pending = [mock_repository.add_pledge(factory.make_pledge(cid)) for _ in range(3)]

        async with mock_repository.unit_of_work() as uow:
            count = await ledger.withdraw_all_pending(uow, cid)

        assert count == 3
        assert all(mock_repository.pledges[p.pledge_id].status == PledgeStatus.WITHDRAWN for p in pending)
        assert mock_repository.pledges[committed.pledge_id].status == PledgeStatus.COMMITTED

    async def test_withdraw_all_pending_with_none_is_noop(self, ledger, mock_repository, factory):
        campaign = mock_repository.add_campaign(factory.make_campaign(CampaignStatus.GRACE_PERIOD))

        async with mock_repository.unit_of_work() as uow:
            count = await ledger.withdraw_all_pending(uow, campaign.campaign_id)

        assert count == 0

    async def test_buyer_listing_hides_withdrawn_by_default(self, ledger, mock_repository, factory):
        buyer = factory.make_org_id()
        for status in (PledgeStatus.PENDING, PledgeStatus.COMMITTED, PledgeStatus.WITHDRAWN):
            campaign = mock_repository.add_campaign(factory.make_campaign(CampaignStatus.GRACE_PERIOD))
            mock_repository.add_pledge(factory.make_pledge(campaign.campaign_id, buyer, status=status))

        visible = await ledger.list_buyer_pledges(buyer)
        withdrawn = await ledger.list_buyer_pledges(buyer, PledgeStatus.WITHDRAWN)

        assert {p.status for p in visible} == {PledgeStatus.PENDING, PledgeStatus.COMMITTED}
        assert len(withdrawn) == 1
