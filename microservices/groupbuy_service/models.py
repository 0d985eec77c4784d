"""
Group-Buy Service Data Models

Campaigns, discount brackets, pledges, invoices, payments and orders for
crowd-pledge group buying, plus request/response models for the API.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ====================
# Enumerations
# ====================

class CampaignStatus(str, Enum):
    """Campaign lifecycle status"""
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    GRACE_PERIOD = "GRACE_PERIOD"
    LOCKED = "LOCKED"
    CANCELLED = "CANCELLED"
    DONE = "DONE"


class PledgeStatus(str, Enum):
    """Pledge status - COMMITTED and WITHDRAWN are terminal"""
    PENDING = "PENDING"
    COMMITTED = "COMMITTED"
    WITHDRAWN = "WITHDRAWN"


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"


class OrderStatus(str, Enum):
    """Fulfilment status of an order"""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    ON_HOLD = "ON_HOLD"
    SHIPPED = "SHIPPED"
    PARTIALLY_SHIPPED = "PARTIALLY_SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class NotificationType(str, Enum):
    GRACE_PERIOD_STARTED = "grace_period_started"
    CAMPAIGN_LOCKED = "campaign_locked"
    CAMPAIGN_CANCELLED = "campaign_cancelled"
    PAYMENT_REMINDER = "payment_reminder"
    PAYMENT_FAILED = "payment_failed"
    ORDER_CREATED = "order_created"
    ORDER_STATUS_CHANGED = "order_status_changed"


# ====================
# Core Data Models
# ====================

class Campaign(BaseModel):
    """
    Group-buy campaign owned by a supplier organization.

    Only the lifecycle engine changes ``status``.
    """
    campaign_id: str = Field(..., min_length=1)
    supplier_org_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None

    start_date: datetime
    end_date: datetime
    grace_period_end_date: Optional[datetime] = None
    target_quantity: int = Field(0, ge=0, description="Minimum viable quantity")

    status: CampaignStatus = CampaignStatus.DRAFT

    locked_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class DiscountBracket(BaseModel):
    """
    One price tier of a campaign.

    Contains every cumulative quantity ``q`` with
    ``min_quantity <= q <= max_quantity``; ``max_quantity`` is None only on
    the top tier.
    """
    bracket_id: str = Field(..., min_length=1)
    campaign_id: str = Field(..., min_length=1)
    min_quantity: int = Field(..., ge=0)
    max_quantity: Optional[int] = Field(None, ge=0)
    unit_price: Decimal = Field(..., gt=0)
    bracket_order: int = Field(..., ge=0)

    def contains(self, quantity: int) -> bool:
        if quantity < self.min_quantity:
            return False
        return self.max_quantity is None or quantity <= self.max_quantity


class Pledge(BaseModel):
    """A buyer organization's intent to buy a quantity in a campaign"""
    pledge_id: str = Field(..., min_length=1)
    campaign_id: str = Field(..., min_length=1)
    buyer_org_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)
    status: PledgeStatus = PledgeStatus.PENDING

    committed_at: Optional[datetime] = None
    withdrawn_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Invoice(BaseModel):
    """Invoice issued for a committed pledge of a locked campaign"""
    invoice_id: str = Field(..., min_length=1)
    invoice_number: str = Field(..., min_length=1)
    campaign_id: str
    pledge_id: str
    buyer_org_id: str
    subtotal: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    status: InvoiceStatus = InvoiceStatus.DRAFT
    issue_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    paid_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Payment(BaseModel):
    """Payment attempt against an invoice"""
    payment_id: str = Field(..., min_length=1)
    invoice_id: str
    amount: Decimal = Decimal("0")
    currency: str = "USD"
    status: PaymentStatus = PaymentStatus.PENDING
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Order(BaseModel):
    """Fulfilment order created at most once per successful payment"""
    order_id: str = Field(..., min_length=1)
    order_number: str = Field(..., min_length=1)
    campaign_id: str
    pledge_id: str
    invoice_id: str
    payment_id: str
    buyer_org_id: str
    supplier_org_id: str
    delivery_address_id: Optional[str] = None

    quantity: int = Field(..., gt=0)
    unit_price: Decimal
    total_amount: Decimal
    status: OrderStatus = OrderStatus.PENDING

    tracking_number: Optional[str] = None
    actual_delivery_date: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class BracketProgress(BaseModel):
    """Where a campaign stands on its bracket table"""
    campaign_id: str
    total_quantity: int
    current_bracket: Optional[DiscountBracket] = None
    next_bracket: Optional[DiscountBracket] = None
    units_to_next_bracket: Optional[int] = None
    current_unit_price: Optional[Decimal] = None


class EvaluationResult(BaseModel):
    """Outcome of evaluating a campaign at the end of its grace period"""
    campaign_id: str
    status: CampaignStatus
    committed_quantity: int
    minimum_quantity: int
    withdrawn_pledges: int = 0
    final_unit_price: Optional[Decimal] = None
    final_bracket_id: Optional[str] = None


class NotificationEvent(BaseModel):
    """Outbound notification handed to the notification sink"""
    notification_type: NotificationType
    recipient_org_id: str
    campaign_id: Optional[str] = None
    subject: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class JobRunResult(BaseModel):
    """Summary of one scheduled batch run"""
    job_name: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    candidates: int = 0
    success_count: int = 0
    failure_count: int = 0
    failures: Dict[str, str] = Field(default_factory=dict)


# ====================
# Request Models
# ====================

class CreatePledgeRequest(BaseModel):
    quantity: int = Field(..., gt=0, description="Units pledged")


class UpdatePledgeRequest(BaseModel):
    quantity: int = Field(..., gt=0, description="New pledged quantity")


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("notes")
    @classmethod
    def strip_notes(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        return v or None


# ====================
# Response Models
# ====================

class PledgeListResponse(BaseModel):
    pledges: List[Pledge]
    total: int


class ErrorResponse(BaseModel):
    detail: str
    error_code: str
    details: Dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    service: str
    port: int
    version: str
    timestamp: str
    dependencies: Dict[str, str] = Field(default_factory=dict)


__all__ = [
    "utcnow",
    "CampaignStatus",
    "PledgeStatus",
    "InvoiceStatus",
    "PaymentStatus",
    "OrderStatus",
    "NotificationType",
    "Campaign",
    "DiscountBracket",
    "Pledge",
    "Invoice",
    "Payment",
    "Order",
    "BracketProgress",
    "EvaluationResult",
    "NotificationEvent",
    "JobRunResult",
    "CreatePledgeRequest",
    "UpdatePledgeRequest",
    "UpdateOrderStatusRequest",
    "PledgeListResponse",
    "ErrorResponse",
    "HealthResponse",
]
