"""
Order Materializer

Turns a successful payment into exactly one order, and moves orders through
their fulfilment status table.
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .bracket_pricing import BracketPricingService
from .models import (
    CampaignStatus,
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
    utcnow,
)
from .notifications import order_created, order_status_changed, send_best_effort
from .protocols import (
    AddressDirectoryProtocol,
    CampaignNotFoundError,
    GroupBuyRepositoryProtocol,
    GroupBuyValidationError,
    InvalidCampaignStateError,
    InvalidOrderStatusTransitionError,
    InvoiceNotFoundError,
    NotificationClientProtocol,
    OrderNotFoundError,
    PaymentNotFoundError,
    PledgeNotFoundError,
    UnitOfWorkProtocol,
)

logger = logging.getLogger(__name__)

ORDER_NUMBER_PREFIX = "ORD"


def order_number_prefix(moment: datetime) -> str:
    return f"{ORDER_NUMBER_PREFIX}-{moment.strftime('%Y%m')}-"


def format_order_number(moment: datetime, sequence: int) -> str:
    """ORD-YYYYMM-NNNNN, sequence restarting each month"""
    return f"{order_number_prefix(moment)}{sequence:05d}"


class OrderMaterializer:
    """Creates orders from payments and manages order status"""

    VALID_TRANSITIONS: Dict[OrderStatus, List[OrderStatus]] = {
        OrderStatus.PENDING: [OrderStatus.PROCESSING, OrderStatus.ON_HOLD, OrderStatus.CANCELLED],
        OrderStatus.PROCESSING: [
            OrderStatus.SHIPPED,
            OrderStatus.PARTIALLY_SHIPPED,
            OrderStatus.DELIVERED,
            OrderStatus.ON_HOLD,
            OrderStatus.CANCELLED,
        ],
        OrderStatus.ON_HOLD: [OrderStatus.PROCESSING, OrderStatus.CANCELLED],
        OrderStatus.SHIPPED: [OrderStatus.DELIVERED],
        OrderStatus.PARTIALLY_SHIPPED: [OrderStatus.DELIVERED],
        OrderStatus.DELIVERED: [],  # Terminal state
        OrderStatus.CANCELLED: [],  # Terminal state
    }

    ORDERABLE_CAMPAIGN_STATUSES = (CampaignStatus.LOCKED, CampaignStatus.DONE)

    def __init__(
        self,
        repository: GroupBuyRepositoryProtocol,
        pricing: BracketPricingService,
        notification_client: Optional[NotificationClientProtocol] = None,
        address_directory: Optional[AddressDirectoryProtocol] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.pricing = pricing
        self.notification_client = notification_client
        self.address_directory = address_directory
        self.clock = clock

    # ====================
    # Order Creation
    # ====================

    async def create_order_from_payment(self, payment: Payment) -> Order:
        """
        Create the order for a successful payment, at most once.

        A second call for the same payment returns the stored order unchanged.

        Raises:
            GroupBuyValidationError: payment has not succeeded
            InvoiceNotFoundError / PledgeNotFoundError / CampaignNotFoundError
            InvalidCampaignStateError: campaign is not LOCKED or DONE
            UnpricedCampaignError: no bracket prices the final committed quantity
        """
        created = False
        async with self.repository.unit_of_work() as uow:
            existing = await uow.get_order_by_payment(payment.payment_id)
            if existing:
                logger.info(f"Order {existing.order_id} already exists for payment {payment.payment_id}")
                return existing

            if payment.status != PaymentStatus.SUCCEEDED:
                raise GroupBuyValidationError(
                    f"Payment {payment.payment_id} is {payment.status.value}, must be SUCCEEDED",
                    field="status",
                )

            order = await self._build_order(uow, payment)
            stored = await uow.insert_order(order)
            if stored is None:
                # Lost a race with a concurrent call for the same payment
                stored = await uow.get_order_by_payment(payment.payment_id)
            else:
                created = True

        if created:
            logger.info(
                f"Order {stored.order_number} created for payment {payment.payment_id}: "
                f"{stored.quantity} x {stored.unit_price} = {stored.total_amount}"
            )
            await send_best_effort(self.notification_client, order_created(stored))
        return stored

    async def create_order_for_payment_id(self, payment_id: str) -> Order:
        async with self.repository.unit_of_work() as uow:
            payment = await uow.get_payment(payment_id)
        if not payment:
            raise PaymentNotFoundError(f"Payment {payment_id} not found")
        return await self.create_order_from_payment(payment)

    async def _build_order(self, uow: UnitOfWorkProtocol, payment: Payment) -> Order:
        invoice = await uow.get_invoice(payment.invoice_id)
        if not invoice:
            raise InvoiceNotFoundError(f"Invoice {payment.invoice_id} not found")
        pledge = await uow.get_pledge(invoice.pledge_id)
        if not pledge:
            raise PledgeNotFoundError(f"Pledge {invoice.pledge_id} not found")
        campaign = await uow.get_campaign(pledge.campaign_id)
        if not campaign:
            raise CampaignNotFoundError(f"Campaign {pledge.campaign_id} not found")
        if campaign.status not in self.ORDERABLE_CAMPAIGN_STATUSES:
            raise InvalidCampaignStateError(
                f"Cannot create order for campaign {campaign.campaign_id} in status {campaign.status.value}",
                current_status=campaign.status,
                required_status=CampaignStatus.LOCKED,
            )

        bracket = await self.pricing.resolve_final_bracket(uow, campaign.campaign_id)
        address_id = None
        if self.address_directory:
            address_id = await self.address_directory.find_primary_address(pledge.buyer_org_id)

        now = self.clock()
        sequence = await uow.count_orders_with_number_prefix(order_number_prefix(now)) + 1
        return Order(
            order_id=f"order_{uuid.uuid4().hex[:16]}",
            order_number=format_order_number(now, sequence),
            campaign_id=campaign.campaign_id,
            pledge_id=pledge.pledge_id,
            invoice_id=invoice.invoice_id,
            payment_id=payment.payment_id,
            buyer_org_id=pledge.buyer_org_id,
            supplier_org_id=campaign.supplier_org_id,
            delivery_address_id=address_id,
            quantity=pledge.quantity,
            unit_price=bracket.unit_price,
            total_amount=bracket.unit_price * pledge.quantity,
            status=OrderStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

    # ====================
    # Order Status
    # ====================

    async def get_order(self, order_id: str) -> Order:
        async with self.repository.unit_of_work() as uow:
            order = await uow.get_order(order_id)
        if not order:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return order

    async def get_order_by_payment(self, payment_id: str) -> Optional[Order]:
        async with self.repository.unit_of_work() as uow:
            return await uow.get_order_by_payment(payment_id)

    def can_transition(self, current: OrderStatus, target: OrderStatus) -> bool:
        return target in self.VALID_TRANSITIONS.get(current, [])

    async def update_order_status(
        self, order_id: str, new_status: OrderStatus, notes: Optional[str] = None
    ) -> Order:
        """Apply a status change permitted by the order transition table"""
        async with self.repository.unit_of_work() as uow:
            order = await uow.get_order(order_id, for_update=True)
            if not order:
                raise OrderNotFoundError(f"Order {order_id} not found")

            previous = order.status
            if not self.can_transition(previous, new_status):
                raise InvalidOrderStatusTransitionError(
                    f"Invalid order status transition {previous.value} -> {new_status.value}",
                    from_status=previous,
                    to_status=new_status,
                )

            now = self.clock()
            order.status = new_status
            if new_status == OrderStatus.DELIVERED:
                order.actual_delivery_date = now
            if notes:
                order.notes = notes
            order.updated_at = now
            order = await uow.save_order(order)

        logger.info(f"Order {order.order_number} status {previous.value} -> {new_status.value}")
        await send_best_effort(self.notification_client, order_status_changed(order, previous))
        return order


__all__ = ["OrderMaterializer", "format_order_number", "order_number_prefix"]
