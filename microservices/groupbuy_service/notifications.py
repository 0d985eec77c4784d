"""
Notification helpers

Builders for the outbound notification events and a best-effort sender.
Sending happens after the triggering transaction has committed; a failure is
logged and dropped.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from .models import (
    Campaign,
    Invoice,
    NotificationEvent,
    NotificationType,
    Order,
    OrderStatus,
    Payment,
    Pledge,
)
from .protocols import NotificationClientProtocol

logger = logging.getLogger(__name__)


async def send_best_effort(
    client: Optional[NotificationClientProtocol], event: NotificationEvent
) -> bool:
    """Send one event; returns False instead of raising when delivery fails"""
    if not client:
        logger.debug(f"Notification client not configured, skipping {event.notification_type.value}")
        return False
    try:
        await client.send(event)
        return True
    except Exception as e:
        logger.error(
            f"Failed to send {event.notification_type.value} notification "
            f"to {event.recipient_org_id}: {e}"
        )
        return False


async def send_all_best_effort(
    client: Optional[NotificationClientProtocol], events: Iterable[NotificationEvent]
) -> int:
    sent = 0
    for event in events:
        if await send_best_effort(client, event):
            sent += 1
    return sent


# ====================
# Event Builders
# ====================


def grace_period_started(campaign: Campaign, pledge: Pledge) -> NotificationEvent:
    return NotificationEvent(
        notification_type=NotificationType.GRACE_PERIOD_STARTED,
        recipient_org_id=pledge.buyer_org_id,
        campaign_id=campaign.campaign_id,
        subject=f"Confirm your pledge for '{campaign.title}'",
        payload={
            "pledge_id": pledge.pledge_id,
            "quantity": pledge.quantity,
            "grace_period_end_date": campaign.grace_period_end_date.isoformat()
            if campaign.grace_period_end_date else None,
        },
    )


def campaign_locked(
    campaign: Campaign,
    pledge: Pledge,
    unit_price: Decimal,
    discount_percentage: int,
) -> NotificationEvent:
    return NotificationEvent(
        notification_type=NotificationType.CAMPAIGN_LOCKED,
        recipient_org_id=pledge.buyer_org_id,
        campaign_id=campaign.campaign_id,
        subject=f"Campaign '{campaign.title}' reached its goal",
        payload={
            "pledge_id": pledge.pledge_id,
            "quantity": pledge.quantity,
            "unit_price": str(unit_price),
            "total_amount": str(unit_price * pledge.quantity),
            "discount_percentage": discount_percentage,
        },
    )


def campaign_cancelled(campaign: Campaign, pledge: Pledge) -> NotificationEvent:
    return NotificationEvent(
        notification_type=NotificationType.CAMPAIGN_CANCELLED,
        recipient_org_id=pledge.buyer_org_id,
        campaign_id=campaign.campaign_id,
        subject=f"Campaign '{campaign.title}' did not reach its minimum",
        payload={"pledge_id": pledge.pledge_id, "quantity": pledge.quantity},
    )


def payment_reminder(campaign: Campaign, invoice: Invoice, now: datetime) -> NotificationEvent:
    days_until_due = max((invoice.due_date - now).days, 0) if invoice.due_date else None
    return NotificationEvent(
        notification_type=NotificationType.PAYMENT_REMINDER,
        recipient_org_id=invoice.buyer_org_id,
        campaign_id=campaign.campaign_id,
        subject=f"Invoice {invoice.invoice_number} is due soon",
        payload={
            "invoice_id": invoice.invoice_id,
            "invoice_number": invoice.invoice_number,
            "total_amount": str(invoice.total_amount),
            "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
            "days_until_due": days_until_due,
        },
    )


def payment_failed(invoice: Invoice, payment: Payment, retry_url: str) -> NotificationEvent:
    return NotificationEvent(
        notification_type=NotificationType.PAYMENT_FAILED,
        recipient_org_id=invoice.buyer_org_id,
        campaign_id=invoice.campaign_id,
        subject=f"Payment for invoice {invoice.invoice_number} failed",
        payload={
            "invoice_id": invoice.invoice_id,
            "payment_id": payment.payment_id,
            "amount": str(payment.amount),
            "failure_reason": payment.failure_reason,
            "retry_url": retry_url,
        },
    )


def order_created(order: Order) -> NotificationEvent:
    return NotificationEvent(
        notification_type=NotificationType.ORDER_CREATED,
        recipient_org_id=order.buyer_org_id,
        campaign_id=order.campaign_id,
        subject=f"Order {order.order_number} created",
        payload={
            "order_id": order.order_id,
            "order_number": order.order_number,
            "quantity": order.quantity,
            "unit_price": str(order.unit_price),
            "total_amount": str(order.total_amount),
        },
    )


def order_status_changed(order: Order, previous: OrderStatus) -> NotificationEvent:
    return NotificationEvent(
        notification_type=NotificationType.ORDER_STATUS_CHANGED,
        recipient_org_id=order.buyer_org_id,
        campaign_id=order.campaign_id,
        subject=f"Order {order.order_number} is now {order.status.value}",
        payload={
            "order_id": order.order_id,
            "previous_status": previous.value,
            "status": order.status.value,
        },
    )
