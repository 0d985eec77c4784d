"""
Group-Buy Service Data Repository

Data access layer - PostgreSQL (asyncpg)
Implements GroupBuyRepositoryProtocol and UnitOfWorkProtocol from protocols.py
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, List, Optional, Tuple

import asyncpg

from core.config import GroupBuyConfig

from .models import (
    Campaign,
    CampaignStatus,
    DiscountBracket,
    Invoice,
    InvoiceStatus,
    Order,
    Payment,
    PaymentStatus,
    Pledge,
    PledgeStatus,
)
from .protocols import DuplicatePledgeError

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"
UNPAID_INVOICE_STATUSES = [InvoiceStatus.SENT.value, InvoiceStatus.OVERDUE.value]
FAILED_PAYMENT_STATUSES = [PaymentStatus.FAILED.value, PaymentStatus.EXPIRED.value]

PAYMENT_COLUMNS = ("payment_id", "invoice_id", "amount", "currency", "status",
                   "failure_reason", "created_at", "updated_at")


def _values(statuses) -> List[str]:
    return [s.value for s in statuses]


class PostgresUnitOfWork:
    """Store operations bound to one connection inside one transaction"""

    def __init__(self, conn: asyncpg.Connection, schema: str = "groupbuy"):
        self.conn = conn
        self.schema = schema

    def _t(self, table: str) -> str:
        return f"{self.schema}.{table}"

    # ====================
    # Campaigns
    # ====================

    async def get_campaign(self, campaign_id: str, for_update: bool = False) -> Optional[Campaign]:
        query = f"SELECT * FROM {self._t('campaigns')} WHERE campaign_id = $1"
        if for_update:
            query += " FOR UPDATE"
        row = await self.conn.fetchrow(query, campaign_id)
        return Campaign(**dict(row)) if row else None

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        row = await self.conn.fetchrow(
            f'''
            UPDATE {self._t('campaigns')}
            SET status = $2, grace_period_end_date = $3, locked_at = $4,
                cancelled_at = $5, completed_at = $6, updated_at = $7
            WHERE campaign_id = $1
            RETURNING *
            ''',
            campaign.campaign_id,
            campaign.status.value,
            campaign.grace_period_end_date,
            campaign.locked_at,
            campaign.cancelled_at,
            campaign.completed_at,
            campaign.updated_at,
        )
        return Campaign(**dict(row))

    async def list_campaigns_by_status(self, status: CampaignStatus) -> List[Campaign]:
        rows = await self.conn.fetch(
            f"SELECT * FROM {self._t('campaigns')} WHERE status = $1 ORDER BY end_date, campaign_id",
            status.value,
        )
        return [Campaign(**dict(r)) for r in rows]

    async def list_campaigns_ending_before(
        self, status: CampaignStatus, cutoff: datetime
    ) -> List[Campaign]:
        rows = await self.conn.fetch(
            f'''
            SELECT * FROM {self._t('campaigns')}
            WHERE status = $1 AND end_date <= $2
            ORDER BY end_date, campaign_id
            ''',
            status.value,
            cutoff,
        )
        return [Campaign(**dict(r)) for r in rows]

    async def list_campaigns_grace_expired(self, now: datetime) -> List[Campaign]:
        rows = await self.conn.fetch(
            f'''
            SELECT * FROM {self._t('campaigns')}
            WHERE status = $1 AND grace_period_end_date <= $2
            ORDER BY grace_period_end_date, campaign_id
            ''',
            CampaignStatus.GRACE_PERIOD.value,
            now,
        )
        return [Campaign(**dict(r)) for r in rows]

    # ====================
    # Brackets
    # ====================

    async def get_brackets(self, campaign_id: str) -> List[DiscountBracket]:
        rows = await self.conn.fetch(
            f"SELECT * FROM {self._t('discount_brackets')} WHERE campaign_id = $1 ORDER BY bracket_order",
            campaign_id,
        )
        return [DiscountBracket(**dict(r)) for r in rows]

    # ====================
    # Pledges
    # ====================

    async def create_pledge(self, pledge: Pledge) -> Pledge:
        try:
            row = await self.conn.fetchrow(
                f'''
                INSERT INTO {self._t('pledges')} (
                    pledge_id, campaign_id, buyer_org_id, quantity, status,
                    committed_at, withdrawn_at, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                RETURNING *
                ''',
                pledge.pledge_id,
                pledge.campaign_id,
                pledge.buyer_org_id,
                pledge.quantity,
                pledge.status.value,
                pledge.committed_at,
                pledge.withdrawn_at,
                pledge.created_at,
                pledge.updated_at,
            )
        except asyncpg.UniqueViolationError:
            raise DuplicatePledgeError(
                f"Organization {pledge.buyer_org_id} already has a pledge for campaign {pledge.campaign_id}"
            )
        return Pledge(**dict(row))

    async def get_pledge(self, pledge_id: str, for_update: bool = False) -> Optional[Pledge]:
        query = f"SELECT * FROM {self._t('pledges')} WHERE pledge_id = $1"
        if for_update:
            query += " FOR UPDATE"
        row = await self.conn.fetchrow(query, pledge_id)
        return Pledge(**dict(row)) if row else None

    async def find_pledge(self, campaign_id: str, buyer_org_id: str) -> Optional[Pledge]:
        row = await self.conn.fetchrow(
            f"SELECT * FROM {self._t('pledges')} WHERE campaign_id = $1 AND buyer_org_id = $2",
            campaign_id,
            buyer_org_id,
        )
        return Pledge(**dict(row)) if row else None

    async def save_pledge(self, pledge: Pledge) -> Pledge:
        row = await self.conn.fetchrow(
            f'''
            UPDATE {self._t('pledges')}
            SET quantity = $2, status = $3, committed_at = $4, withdrawn_at = $5, updated_at = $6
            WHERE pledge_id = $1
            RETURNING *
            ''',
            pledge.pledge_id,
            pledge.quantity,
            pledge.status.value,
            pledge.committed_at,
            pledge.withdrawn_at,
            pledge.updated_at,
        )
        return Pledge(**dict(row))

    async def list_pledges(
        self,
        campaign_id: Optional[str] = None,
        buyer_org_id: Optional[str] = None,
        statuses: Optional[List[PledgeStatus]] = None,
    ) -> List[Pledge]:
        conditions = []
        params: List[Any] = []
        if campaign_id:
            params.append(campaign_id)
            conditions.append(f"campaign_id = ${len(params)}")
        if buyer_org_id:
            params.append(buyer_org_id)
            conditions.append(f"buyer_org_id = ${len(params)}")
        if statuses:
            params.append(_values(statuses))
            conditions.append(f"status = ANY(${len(params)}::text[])")

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = await self.conn.fetch(
            f"SELECT * FROM {self._t('pledges')} {where} ORDER BY created_at, pledge_id",
            *params,
        )
        return [Pledge(**dict(r)) for r in rows]

    async def withdraw_pending_pledges(self, campaign_id: str, withdrawn_at: datetime) -> int:
        rows = await self.conn.fetch(
            f'''
            UPDATE {self._t('pledges')}
            SET status = $2, withdrawn_at = $3, updated_at = $3
            WHERE campaign_id = $1 AND status = $4
            RETURNING pledge_id
            ''',
            campaign_id,
            PledgeStatus.WITHDRAWN.value,
            withdrawn_at,
            PledgeStatus.PENDING.value,
        )
        return len(rows)

    async def sum_pledge_quantity(self, campaign_id: str, statuses: List[PledgeStatus]) -> int:
        total = await self.conn.fetchval(
            f'''
            SELECT COALESCE(SUM(quantity), 0) FROM {self._t('pledges')}
            WHERE campaign_id = $1 AND status = ANY($2::text[])
            ''',
            campaign_id,
            _values(statuses),
        )
        return int(total)

    # ====================
    # Invoices and Payments
    # ====================

    async def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        row = await self.conn.fetchrow(
            f"SELECT * FROM {self._t('invoices')} WHERE invoice_id = $1", invoice_id
        )
        return Invoice(**dict(row)) if row else None

    async def list_invoices_due(
        self, campaign_id: str, status: InvoiceStatus, due_before: datetime
    ) -> List[Invoice]:
        rows = await self.conn.fetch(
            f'''
            SELECT * FROM {self._t('invoices')}
            WHERE campaign_id = $1 AND status = $2 AND due_date IS NOT NULL AND due_date <= $3
            ORDER BY due_date, invoice_id
            ''',
            campaign_id,
            status.value,
            due_before,
        )
        return [Invoice(**dict(r)) for r in rows]

    async def list_failed_payments_for_unpaid_invoices(
        self, since: datetime
    ) -> List[Tuple[Invoice, Payment]]:
        payment_select = ", ".join(f"p.{c} AS p_{c}" for c in PAYMENT_COLUMNS)
        rows = await self.conn.fetch(
            f'''
            SELECT DISTINCT ON (i.invoice_id) i.*, {payment_select}
            FROM {self._t('invoices')} i
            JOIN {self._t('payments')} p ON p.invoice_id = i.invoice_id
            WHERE i.status = ANY($1::text[])
              AND p.status = ANY($2::text[])
              AND p.updated_at >= $3
            ORDER BY i.invoice_id, p.updated_at DESC
            ''',
            UNPAID_INVOICE_STATUSES,
            FAILED_PAYMENT_STATUSES,
            since,
        )
        results = []
        for row in rows:
            data = dict(row)
            payment = Payment(**{c: data.pop(f"p_{c}") for c in PAYMENT_COLUMNS})
            results.append((Invoice(**data), payment))
        return results

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        row = await self.conn.fetchrow(
            f"SELECT * FROM {self._t('payments')} WHERE payment_id = $1", payment_id
        )
        return Payment(**dict(row)) if row else None

    # ====================
    # Orders
    # ====================

    async def get_order(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        query = f"SELECT * FROM {self._t('orders')} WHERE order_id = $1"
        if for_update:
            query += " FOR UPDATE"
        row = await self.conn.fetchrow(query, order_id)
        return Order(**dict(row)) if row else None

    async def get_order_by_payment(self, payment_id: str) -> Optional[Order]:
        row = await self.conn.fetchrow(
            f"SELECT * FROM {self._t('orders')} WHERE payment_id = $1", payment_id
        )
        return Order(**dict(row)) if row else None

    async def insert_order(self, order: Order) -> Optional[Order]:
        row = await self.conn.fetchrow(
            f'''
            INSERT INTO {self._t('orders')} (
                order_id, order_number, campaign_id, pledge_id, invoice_id, payment_id,
                buyer_org_id, supplier_org_id, delivery_address_id, quantity, unit_price,
                total_amount, status, tracking_number, actual_delivery_date, notes,
                created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18)
            ON CONFLICT (payment_id) DO NOTHING
            RETURNING *
            ''',
            order.order_id,
            order.order_number,
            order.campaign_id,
            order.pledge_id,
            order.invoice_id,
            order.payment_id,
            order.buyer_org_id,
            order.supplier_org_id,
            order.delivery_address_id,
            order.quantity,
            order.unit_price,
            order.total_amount,
            order.status.value,
            order.tracking_number,
            order.actual_delivery_date,
            order.notes,
            order.created_at,
            order.updated_at,
        )
        return Order(**dict(row)) if row else None

    async def save_order(self, order: Order) -> Order:
        row = await self.conn.fetchrow(
            f'''
            UPDATE {self._t('orders')}
            SET status = $2, tracking_number = $3, actual_delivery_date = $4, notes = $5, updated_at = $6
            WHERE order_id = $1
            RETURNING *
            ''',
            order.order_id,
            order.status.value,
            order.tracking_number,
            order.actual_delivery_date,
            order.notes,
            order.updated_at,
        )
        return Order(**dict(row))

    async def list_orders(self, campaign_id: str) -> List[Order]:
        rows = await self.conn.fetch(
            f"SELECT * FROM {self._t('orders')} WHERE campaign_id = $1 ORDER BY created_at", campaign_id
        )
        return [Order(**dict(r)) for r in rows]

    async def count_orders_with_number_prefix(self, prefix: str) -> int:
        # Held until commit so two transactions cannot draw the same sequence
        await self.conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", prefix)
        count = await self.conn.fetchval(
            f"SELECT COUNT(*) FROM {self._t('orders')} WHERE order_number LIKE $1", f"{prefix}%"
        )
        return int(count)


class GroupBuyRepository:
    """Group-buy data repository - PostgreSQL (asyncpg pool)"""

    def __init__(self, config: Optional[GroupBuyConfig] = None, apply_migrations: bool = True):
        self.config = config or GroupBuyConfig.from_env()
        self.schema = "groupbuy"
        self.apply_migrations = apply_migrations
        self._pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        """Create the connection pool and apply schema migrations"""
        infra = self.config.infra
        logger.info(f"Connecting to PostgreSQL at {infra.postgres_host}:{infra.postgres_port}")
        self._pool = await asyncpg.create_pool(
            host=infra.postgres_host,
            port=infra.postgres_port,
            user=infra.postgres_user,
            password=infra.postgres_password,
            database=infra.postgres_db,
            min_size=infra.postgres_min_pool_size,
            max_size=infra.postgres_max_pool_size,
            timeout=30,
        )
        if self.apply_migrations:
            await self._migrate()
        logger.info("Group-buy repository initialized with PostgreSQL")

    async def _migrate(self) -> None:
        async with self._pool.acquire() as conn:
            for path in sorted(MIGRATIONS_DIR.glob("*.sql")):
                await conn.execute(path.read_text())
                logger.debug(f"Applied migration {path.name}")

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
        logger.info("Group-buy repository database connection closed")

    async def health_check(self) -> bool:
        if not self._pool:
            return False
        try:
            async with self._pool.acquire() as conn:
                return await conn.fetchval("SELECT 1") == 1
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
            return False

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[PostgresUnitOfWork]:
        """Connection plus transaction; commits on exit, rolls back on exception"""
        if not self._pool:
            raise RuntimeError("Repository not initialized")
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                yield PostgresUnitOfWork(conn, self.schema)


__all__ = ["GroupBuyRepository", "PostgresUnitOfWork"]
