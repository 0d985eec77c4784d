"""
Group-Buy Service Integration Test Fixtures

Provides a GroupBuyRepository on the PostgreSQL configured by POSTGRES_*
environment variables and seeding helpers that write rows directly.
Tests are skipped when the database cannot be reached.
"""

import os
import sys
from typing import AsyncGenerator, List

import pytest
import pytest_asyncio

# Add paths for imports
_current_dir = os.path.dirname(os.path.abspath(__file__))
_project_root = os.path.join(_current_dir, "../../..")
sys.path.insert(0, _project_root)

from core.config import GroupBuyConfig
from microservices.groupbuy_service.groupbuy_repository import GroupBuyRepository
from microservices.groupbuy_service.models import (
    Campaign,
    DiscountBracket,
    Invoice,
    Payment,
    Pledge,
)
from tests.contracts.groupbuy.data_contract import GroupBuyTestDataFactory


class GroupBuySeeder:
    """Writes fixture rows straight into the groupbuy schema and removes them afterwards"""

    def __init__(self, repository: GroupBuyRepository):
        self.repository = repository
        self.campaign_ids: List[str] = []

    async def campaign(self, campaign: Campaign, brackets: List[DiscountBracket] = None) -> Campaign:
        brackets = brackets if brackets is not None else GroupBuyTestDataFactory.make_brackets(campaign.campaign_id)
        async with self.repository.unit_of_work() as uow:
            await uow.conn.execute(
                '''
                INSERT INTO groupbuy.campaigns (
                    campaign_id, supplier_org_id, title, description, start_date, end_date,
                    grace_period_end_date, target_quantity, status
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ''',
                campaign.campaign_id, campaign.supplier_org_id, campaign.title, campaign.description,
                campaign.start_date, campaign.end_date, campaign.grace_period_end_date,
                campaign.target_quantity, campaign.status.value,
            )
            for bracket in brackets:
                await uow.conn.execute(
                    '''
                    INSERT INTO groupbuy.discount_brackets (
                        bracket_id, campaign_id, min_quantity, max_quantity, unit_price, bracket_order
                    ) VALUES ($1, $2, $3, $4, $5, $6)
                    ''',
                    bracket.bracket_id, bracket.campaign_id, bracket.min_quantity,
                    bracket.max_quantity, bracket.unit_price, bracket.bracket_order,
                )
        self.campaign_ids.append(campaign.campaign_id)
        return campaign

    async def pledge(self, pledge: Pledge) -> Pledge:
        async with self.repository.unit_of_work() as uow:
            return await uow.create_pledge(pledge)

    async def invoice(self, invoice: Invoice) -> Invoice:
        async with self.repository.unit_of_work() as uow:
            await uow.conn.execute(
                '''
                INSERT INTO groupbuy.invoices (
                    invoice_id, invoice_number, campaign_id, pledge_id, buyer_org_id,
                    subtotal, total_amount, status, issue_date, due_date
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ''',
                invoice.invoice_id, invoice.invoice_number, invoice.campaign_id, invoice.pledge_id,
                invoice.buyer_org_id, invoice.subtotal, invoice.total_amount, invoice.status.value,
                invoice.issue_date, invoice.due_date,
            )
        return invoice

    async def payment(self, payment: Payment) -> Payment:
        async with self.repository.unit_of_work() as uow:
            await uow.conn.execute(
                '''
                INSERT INTO groupbuy.payments (
                    payment_id, invoice_id, amount, currency, status, failure_reason, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ''',
                payment.payment_id, payment.invoice_id, payment.amount, payment.currency,
                payment.status.value, payment.failure_reason, payment.created_at, payment.updated_at,
            )
        return payment

    async def cleanup(self) -> None:
        if not self.campaign_ids:
            return
        async with self.repository.unit_of_work() as uow:
            ids = self.campaign_ids
            await uow.conn.execute("DELETE FROM groupbuy.orders WHERE campaign_id = ANY($1)", ids)
            await uow.conn.execute(
                '''
                DELETE FROM groupbuy.payments WHERE invoice_id IN (
                    SELECT invoice_id FROM groupbuy.invoices WHERE campaign_id = ANY($1)
                )
                ''',
                ids,
            )
            await uow.conn.execute("DELETE FROM groupbuy.invoices WHERE campaign_id = ANY($1)", ids)
            await uow.conn.execute("DELETE FROM groupbuy.pledges WHERE campaign_id = ANY($1)", ids)
            await uow.conn.execute("DELETE FROM groupbuy.campaigns WHERE campaign_id = ANY($1)", ids)


@pytest_asyncio.fixture(scope="function")
async def groupbuy_repository() -> AsyncGenerator[GroupBuyRepository, None]:
    """Repository on the configured PostgreSQL with migrations applied"""
    repository = GroupBuyRepository(GroupBuyConfig.from_env())
    try:
        await repository.initialize()
    except Exception as e:
        await repository.close()
        pytest.skip(f"PostgreSQL not available: {e}")

    yield repository
    await repository.close()


@pytest_asyncio.fixture(scope="function")
async def seeder(groupbuy_repository) -> AsyncGenerator[GroupBuySeeder, None]:
    seeder = GroupBuySeeder(groupbuy_repository)
    yield seeder
    await seeder.cleanup()


@pytest.fixture(scope="session")
def factory():
    return GroupBuyTestDataFactory
