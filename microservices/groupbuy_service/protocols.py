"""
Group-Buy Service Protocols

Defines interfaces for dependency injection and testing.
Following the protocol-based architecture pattern.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, AsyncContextManager, Dict, List, Optional, Protocol, Tuple

from .models import (
    Campaign,
    CampaignStatus,
    DiscountBracket,
    Invoice,
    InvoiceStatus,
    NotificationEvent,
    Order,
    Payment,
    Pledge,
    PledgeStatus,
)


# ====================
# Repository Protocols
# ====================


class UnitOfWorkProtocol(Protocol):
    """
    Transaction-scoped store access.

    Everything done through one unit of work commits together or not at all.
    Reads with ``for_update=True`` hold a row lock until the unit ends.
    """

    # Campaigns
    async def get_campaign(
        self, campaign_id: str, for_update: bool = False
    ) -> Optional[Campaign]:
        ...

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        ...

    async def list_campaigns_by_status(self, status: CampaignStatus) -> List[Campaign]:
        ...

    async def list_campaigns_ending_before(
        self, status: CampaignStatus, cutoff: datetime
    ) -> List[Campaign]:
        """Campaigns in ``status`` whose end_date is at or before cutoff"""
        ...

    async def list_campaigns_grace_expired(self, now: datetime) -> List[Campaign]:
        """GRACE_PERIOD campaigns whose grace_period_end_date has passed"""
        ...

    # Brackets
    async def get_brackets(self, campaign_id: str) -> List[DiscountBracket]:
        """Brackets ordered by bracket_order"""
        ...

    # Pledges
    async def create_pledge(self, pledge: Pledge) -> Pledge:
        """Insert a pledge; raises DuplicatePledgeError on (campaign, buyer) clash"""
        ...

    async def get_pledge(
        self, pledge_id: str, for_update: bool = False
    ) -> Optional[Pledge]:
        ...

    async def find_pledge(self, campaign_id: str, buyer_org_id: str) -> Optional[Pledge]:
        ...

    async def save_pledge(self, pledge: Pledge) -> Pledge:
        ...

    async def list_pledges(
        self,
        campaign_id: Optional[str] = None,
        buyer_org_id: Optional[str] = None,
        statuses: Optional[List[PledgeStatus]] = None,
    ) -> List[Pledge]:
        ...

    async def withdraw_pending_pledges(self, campaign_id: str, withdrawn_at: datetime) -> int:
        """Move every PENDING pledge of a campaign to WITHDRAWN, return the count"""
        ...

    async def sum_pledge_quantity(
        self, campaign_id: str, statuses: List[PledgeStatus]
    ) -> int:
        ...

    # Invoices and payments
    async def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        ...

    async def list_invoices_due(
        self, campaign_id: str, status: InvoiceStatus, due_before: datetime
    ) -> List[Invoice]:
        ...

    async def list_failed_payments_for_unpaid_invoices(
        self, since: datetime
    ) -> List[Tuple[Invoice, Payment]]:
        """Latest FAILED/EXPIRED payment since ``since`` per unpaid invoice"""
        ...

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        ...

    # Orders
    async def get_order(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        ...

    async def get_order_by_payment(self, payment_id: str) -> Optional[Order]:
        ...

    async def insert_order(self, order: Order) -> Optional[Order]:
        """Insert an order; returns None when an order for the payment already exists"""
        ...

    async def save_order(self, order: Order) -> Order:
        ...

    async def list_orders(self, campaign_id: str) -> List[Order]:
        ...

    async def count_orders_with_number_prefix(self, prefix: str) -> int:
        ...


class GroupBuyRepositoryProtocol(Protocol):
    """Protocol for the group-buy data repository"""

    async def initialize(self) -> None:
        """Initialize repository connection"""
        ...

    async def close(self) -> None:
        """Close repository connection"""
        ...

    async def health_check(self) -> bool:
        """Check repository health"""
        ...

    def unit_of_work(self) -> AsyncContextManager[UnitOfWorkProtocol]:
        """Open a transaction; commit on normal exit, roll back on exception"""
        ...


# ====================
# Collaborator Protocols
# ====================


class NotificationClientProtocol(Protocol):
    """Protocol for the notification sink"""

    async def send(self, event: NotificationEvent) -> None:
        ...

    async def close(self) -> None:
        ...


class AddressDirectoryProtocol(Protocol):
    """Looks up an organization's primary delivery address"""

    async def find_primary_address(self, org_id: str) -> Optional[str]:
        ...


class MinimumQuantityPolicyProtocol(Protocol):
    """Decides the minimum committed quantity a campaign needs to lock"""

    name: str

    def minimum_quantity(self, campaign: Campaign, brackets: List[DiscountBracket]) -> int:
        ...


class CampaignLockHookProtocol(Protocol):
    """Runs inside the locking transaction (invoice generation hook point)"""

    async def on_locked(
        self,
        uow: UnitOfWorkProtocol,
        campaign: Campaign,
        committed_pledges: List[Pledge],
        unit_price: Decimal,
    ) -> None:
        ...


class RefundHookProtocol(Protocol):
    """Runs after a campaign with committed pledges is cancelled"""

    async def on_committed_pledges_cancelled(
        self, campaign: Campaign, committed_pledges: List[Pledge]
    ) -> None:
        ...


# ====================
# Custom Exceptions
# ====================


class ErrorKind(str, Enum):
    """Machine-readable failure category carried by every service error"""
    NOT_FOUND = "not_found"
    INVALID_CAMPAIGN_STATE = "invalid_campaign_state"
    INVALID_PLEDGE_STATE = "invalid_pledge_state"
    INVALID_STATE_TRANSITION = "invalid_state_transition"
    ACCESS_DENIED = "access_denied"
    VALIDATION = "validation"
    CONFLICT = "conflict"


class GroupBuyServiceError(Exception):
    """Base exception for group-buy service errors"""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        kind: Optional[ErrorKind] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.details = details or {}


class CampaignNotFoundError(GroupBuyServiceError):
    """Raised when campaign is not found"""
    kind = ErrorKind.NOT_FOUND


class PledgeNotFoundError(GroupBuyServiceError):
    """Raised when pledge is not found"""
    kind = ErrorKind.NOT_FOUND


class InvoiceNotFoundError(GroupBuyServiceError):
    kind = ErrorKind.NOT_FOUND


class PaymentNotFoundError(GroupBuyServiceError):
    kind = ErrorKind.NOT_FOUND


class OrderNotFoundError(GroupBuyServiceError):
    kind = ErrorKind.NOT_FOUND


class InvalidCampaignStateError(GroupBuyServiceError):
    """Raised when campaign is in invalid state for operation"""

    kind = ErrorKind.INVALID_CAMPAIGN_STATE

    def __init__(
        self,
        message: str,
        current_status: Optional[CampaignStatus] = None,
        required_status: Optional[CampaignStatus] = None,
    ):
        super().__init__(
            message,
            details={
                "current_status": current_status.value if current_status else None,
                "required_status": required_status.value if required_status else None,
            },
        )
        self.current_status = current_status
        self.required_status = required_status


class InvalidPledgeStateError(GroupBuyServiceError):
    """Raised when pledge is not in the state the operation requires"""

    kind = ErrorKind.INVALID_PLEDGE_STATE

    def __init__(
        self,
        message: str,
        current_status: Optional[PledgeStatus] = None,
        required_status: Optional[PledgeStatus] = None,
    ):
        super().__init__(
            message,
            details={
                "current_status": current_status.value if current_status else None,
                "required_status": required_status.value if required_status else None,
            },
        )
        self.current_status = current_status
        self.required_status = required_status


class InvalidStateTransitionError(GroupBuyServiceError):
    """Raised when a status change is not in the transition table"""

    kind = ErrorKind.INVALID_STATE_TRANSITION

    def __init__(self, message: str, from_status: Enum, to_status: Enum):
        super().__init__(
            message,
            details={"from_status": from_status.value, "to_status": to_status.value},
        )
        self.from_status = from_status
        self.to_status = to_status


class InvalidOrderStatusTransitionError(InvalidStateTransitionError):
    pass


class PledgeAccessDeniedError(GroupBuyServiceError):
    """Raised when an organization acts on a pledge it does not own"""
    kind = ErrorKind.ACCESS_DENIED


class DuplicatePledgeError(GroupBuyServiceError):
    """Raised when a buyer already holds a pledge in the campaign"""
    kind = ErrorKind.CONFLICT


class GroupBuyValidationError(GroupBuyServiceError):
    """Raised when input validation fails"""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, details={"field": field} if field else None)
        self.field = field


class UnpricedCampaignError(GroupBuyServiceError):
    """Raised when no bracket resolves a unit price for a quantity"""
    kind = ErrorKind.VALIDATION


__all__ = [
    "UnitOfWorkProtocol",
    "GroupBuyRepositoryProtocol",
    "NotificationClientProtocol",
    "AddressDirectoryProtocol",
    "MinimumQuantityPolicyProtocol",
    "CampaignLockHookProtocol",
    "RefundHookProtocol",
    "ErrorKind",
    "GroupBuyServiceError",
    "CampaignNotFoundError",
    "PledgeNotFoundError",
    "InvoiceNotFoundError",
    "PaymentNotFoundError",
    "OrderNotFoundError",
    "InvalidCampaignStateError",
    "InvalidPledgeStateError",
    "InvalidStateTransitionError",
    "InvalidOrderStatusTransitionError",
    "PledgeAccessDeniedError",
    "DuplicatePledgeError",
    "GroupBuyValidationError",
    "UnpricedCampaignError",
]
