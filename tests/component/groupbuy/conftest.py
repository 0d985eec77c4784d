"""
Group-Buy Service Component Test Fixtures

Provides mocks for group-buy component testing:
- MockGroupBuyRepository: In-memory implementation of GroupBuyRepositoryProtocol
  whose units of work roll back on exception and run one at a time
- MockNotificationClient: Records sent events, optionally failing
- components: Services wired through the real factory on top of the mocks
"""

import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import pytest

from core.config import GroupBuyConfig
from microservices.groupbuy_service.factory import create_groupbuy_components
from microservices.groupbuy_service.models import (
    Campaign,
    CampaignStatus,
    DiscountBracket,
    Invoice,
    InvoiceStatus,
    NotificationEvent,
    Order,
    Payment,
    PaymentStatus,
    Pledge,
    PledgeStatus,
)
from microservices.groupbuy_service.protocols import DuplicatePledgeError
from tests.contracts.groupbuy.data_contract import GroupBuyTestDataFactory


# =============================================================================
# Mock Repository Implementation
# =============================================================================


class MockUnitOfWork:
    """Store operations against the mock repository's in-memory tables"""

    def __init__(self, repo: "MockGroupBuyRepository"):
        self.repo = repo

    def _track(self, name: str, *args):
        self.repo.method_calls.append((name, args))
        error = self.repo.failures.get(name)
        if error is not None:
            raise error

    @staticmethod
    def _copy(model):
        return model.model_copy(deep=True) if model is not None else None

    # Campaigns
    async def get_campaign(self, campaign_id: str, for_update: bool = False) -> Optional[Campaign]:
        self._track("get_campaign", campaign_id, for_update)
        return self._copy(self.repo.campaigns.get(campaign_id))

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        self._track("save_campaign", campaign.campaign_id, campaign.status)
        self.repo.campaigns[campaign.campaign_id] = self._copy(campaign)
        return self._copy(campaign)

    async def list_campaigns_by_status(self, status: CampaignStatus) -> List[Campaign]:
        self._track("list_campaigns_by_status", status)
        found = [c for c in self.repo.campaigns.values() if c.status == status]
        return [self._copy(c) for c in sorted(found, key=lambda c: (c.end_date, c.campaign_id))]

    async def list_campaigns_ending_before(self, status: CampaignStatus, cutoff: datetime) -> List[Campaign]:
        self._track("list_campaigns_ending_before", status, cutoff)
        found = [c for c in self.repo.campaigns.values() if c.status == status and c.end_date <= cutoff]
        return [self._copy(c) for c in sorted(found, key=lambda c: (c.end_date, c.campaign_id))]

    async def list_campaigns_grace_expired(self, now: datetime) -> List[Campaign]:
        self._track("list_campaigns_grace_expired", now)
        found = [
            c for c in self.repo.campaigns.values()
            if c.status == CampaignStatus.GRACE_PERIOD
            and c.grace_period_end_date is not None
            and c.grace_period_end_date <= now
        ]
        return [self._copy(c) for c in sorted(found, key=lambda c: (c.grace_period_end_date, c.campaign_id))]

    # Brackets
    async def get_brackets(self, campaign_id: str) -> List[DiscountBracket]:
        self._track("get_brackets", campaign_id)
        brackets = self.repo.brackets.get(campaign_id, [])
        return [self._copy(b) for b in sorted(brackets, key=lambda b: b.bracket_order)]

    # Pledges
    async def create_pledge(self, pledge: Pledge) -> Pledge:
        self._track("create_pledge", pledge.campaign_id, pledge.buyer_org_id)
        for existing in self.repo.pledges.values():
            if existing.campaign_id == pledge.campaign_id and existing.buyer_org_id == pledge.buyer_org_id:
                raise DuplicatePledgeError("unique violation (campaign_id, buyer_org_id)")
        self.repo.pledges[pledge.pledge_id] = self._copy(pledge)
        return self._copy(pledge)

    async def get_pledge(self, pledge_id: str, for_update: bool = False) -> Optional[Pledge]:
        self._track("get_pledge", pledge_id, for_update)
        return self._copy(self.repo.pledges.get(pledge_id))

    async def find_pledge(self, campaign_id: str, buyer_org_id: str) -> Optional[Pledge]:
        self._track("find_pledge", campaign_id, buyer_org_id)
        for pledge in self.repo.pledges.values():
            if pledge.campaign_id == campaign_id and pledge.buyer_org_id == buyer_org_id:
                return self._copy(pledge)
        return None

    async def save_pledge(self, pledge: Pledge) -> Pledge:
        self._track("save_pledge", pledge.pledge_id, pledge.status)
        self.repo.pledges[pledge.pledge_id] = self._copy(pledge)
        return self._copy(pledge)

    async def list_pledges(
        self,
        campaign_id: Optional[str] = None,
        buyer_org_id: Optional[str] = None,
        statuses: Optional[List[PledgeStatus]] = None,
    ) -> List[Pledge]:
        self._track("list_pledges", campaign_id, buyer_org_id, statuses)
        found = [
            p for p in self.repo.pledges.values()
            if (campaign_id is None or p.campaign_id == campaign_id)
            and (buyer_org_id is None or p.buyer_org_id == buyer_org_id)
            and (not statuses or p.status in statuses)
        ]
        return [self._copy(p) for p in sorted(found, key=lambda p: (p.created_at, p.pledge_id))]

    async def withdraw_pending_pledges(self, campaign_id: str, withdrawn_at: datetime) -> int:
        self._track("withdraw_pending_pledges", campaign_id)
        count = 0
        for pledge in self.repo.pledges.values():
            if pledge.campaign_id == campaign_id and pledge.status == PledgeStatus.PENDING:
                pledge.status = PledgeStatus.WITHDRAWN
                pledge.withdrawn_at = withdrawn_at
                pledge.updated_at = withdrawn_at
                count += 1
        return count

    async def sum_pledge_quantity(self, campaign_id: str, statuses: List[PledgeStatus]) -> int:
        self._track("sum_pledge_quantity", campaign_id, statuses)
        return sum(
            p.quantity for p in self.repo.pledges.values()
            if p.campaign_id == campaign_id and p.status in statuses
        )

    # Invoices and payments
    async def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        self._track("get_invoice", invoice_id)
        return self._copy(self.repo.invoices.get(invoice_id))

    async def list_invoices_due(
        self, campaign_id: str, status: InvoiceStatus, due_before: datetime
    ) -> List[Invoice]:
        self._track("list_invoices_due", campaign_id, status, due_before)
        found = [
            i for i in self.repo.invoices.values()
            if i.campaign_id == campaign_id and i.status == status
            and i.due_date is not None and i.due_date <= due_before
        ]
        return [self._copy(i) for i in sorted(found, key=lambda i: (i.due_date, i.invoice_id))]

    async def list_failed_payments_for_unpaid_invoices(self, since: datetime) -> List[Tuple[Invoice, Payment]]:
        self._track("list_failed_payments_for_unpaid_invoices", since)
        results = []
        for invoice in sorted(self.repo.invoices.values(), key=lambda i: i.invoice_id):
            if invoice.status not in (InvoiceStatus.SENT, InvoiceStatus.OVERDUE):
                continue
            failed = [
                p for p in self.repo.payments.values()
                if p.invoice_id == invoice.invoice_id
                and p.status in (PaymentStatus.FAILED, PaymentStatus.EXPIRED)
                and p.updated_at >= since
            ]
            if failed:
                latest = max(failed, key=lambda p: p.updated_at)
                results.append((self._copy(invoice), self._copy(latest)))
        return results

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        self._track("get_payment", payment_id)
        return self._copy(self.repo.payments.get(payment_id))

    # Orders
    async def get_order(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        self._track("get_order", order_id, for_update)
        return self._copy(self.repo.orders.get(order_id))

    async def get_order_by_payment(self, payment_id: str) -> Optional[Order]:
        self._track("get_order_by_payment", payment_id)
        for order in self.repo.orders.values():
            if order.payment_id == payment_id:
                return self._copy(order)
        return None

    async def insert_order(self, order: Order) -> Optional[Order]:
        self._track("insert_order", order.payment_id)
        if any(o.payment_id == order.payment_id for o in self.repo.orders.values()):
            return None
        self.repo.orders[order.order_id] = self._copy(order)
        return self._copy(order)

    async def save_order(self, order: Order) -> Order:
        self._track("save_order", order.order_id, order.status)
        self.repo.orders[order.order_id] = self._copy(order)
        return self._copy(order)

    async def list_orders(self, campaign_id: str) -> List[Order]:
        self._track("list_orders", campaign_id)
        return [self._copy(o) for o in self.repo.orders.values() if o.campaign_id == campaign_id]

    async def count_orders_with_number_prefix(self, prefix: str) -> int:
        self._track("count_orders_with_number_prefix", prefix)
        return sum(1 for o in self.repo.orders.values() if o.order_number.startswith(prefix))


class MockGroupBuyRepository:
    """
    Mock implementation of GroupBuyRepositoryProtocol for testing.

    Units of work run one at a time and restore the tables on exception,
    standing in for row locks and transaction rollback.
    """

    def __init__(self):
        self.campaigns: Dict[str, Campaign] = {}
        self.brackets: Dict[str, List[DiscountBracket]] = {}
        self.pledges: Dict[str, Pledge] = {}
        self.invoices: Dict[str, Invoice] = {}
        self.payments: Dict[str, Payment] = {}
        self.orders: Dict[str, Order] = {}

        # Track method calls for verification
        self.method_calls: List[Tuple[str, Any]] = []
        # method name -> exception raised when the unit of work calls it
        self.failures: Dict[str, Exception] = {}
        self.commits = 0
        self.rollbacks = 0
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def health_check(self) -> bool:
        return True

    def _tables(self):
        return (self.campaigns, self.brackets, self.pledges, self.invoices, self.payments, self.orders)

    @asynccontextmanager
    async def unit_of_work(self):
        async with self._lock:
            snapshot = copy.deepcopy(self._tables())
            try:
                yield MockUnitOfWork(self)
            except BaseException:
                for table, saved in zip(self._tables(), snapshot):
                    table.clear()
                    table.update(saved)
                self.rollbacks += 1
                raise
            self.commits += 1

    # Seeding helpers
    def add_campaign(self, campaign: Campaign, brackets: Optional[List[DiscountBracket]] = None) -> Campaign:
        self.campaigns[campaign.campaign_id] = campaign
        self.brackets[campaign.campaign_id] = list(
            brackets if brackets is not None else GroupBuyTestDataFactory.make_brackets(campaign.campaign_id)
        )
        return campaign

    def add_pledge(self, pledge: Pledge) -> Pledge:
        self.pledges[pledge.pledge_id] = pledge
        return pledge

    def add_invoice(self, invoice: Invoice) -> Invoice:
        self.invoices[invoice.invoice_id] = invoice
        return invoice

    def add_payment(self, payment: Payment) -> Payment:
        self.payments[payment.payment_id] = payment
        return payment

    def add_order(self, order: Order) -> Order:
        self.orders[order.order_id] = order
        return order

    def calls(self, name: str) -> List[Any]:
        return [args for method, args in self.method_calls if method == name]


class MockNotificationClient:
    """Mock notification sink"""

    def __init__(self, fail: bool = False):
        self.sent: List[NotificationEvent] = []
        self.fail = fail
        self.closed = False

    async def send(self, event: NotificationEvent) -> None:
        if self.fail:
            raise ConnectionError("notification service unavailable")
        self.sent.append(event)

    async def close(self) -> None:
        self.closed = True

    def of_type(self, notification_type) -> List[NotificationEvent]:
        return [e for e in self.sent if e.notification_type == notification_type]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def factory():
    return GroupBuyTestDataFactory


@pytest.fixture
def mock_repository():
    return MockGroupBuyRepository()


@pytest.fixture
def mock_notifications():
    return MockNotificationClient()


@pytest.fixture
def groupbuy_config():
    return GroupBuyConfig()


@pytest.fixture
def components(groupbuy_config, mock_repository, mock_notifications):
    """Services wired by the factory on top of the mocks"""
    return create_groupbuy_components(
        config=groupbuy_config,
        repository=mock_repository,
        notification_client=mock_notifications,
    )


@pytest.fixture
def ledger(components):
    return components.pledge_ledger


@pytest.fixture
def lifecycle(components):
    return components.lifecycle


@pytest.fixture
def materializer(components):
    return components.order_materializer
