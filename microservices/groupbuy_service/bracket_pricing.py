"""
Bracket Pricing Engine

Resolves the unit price tier for a cumulative pledged quantity.

Brackets partition [0, inf) in ``bracket_order``: bracket ``i`` covers
``min_quantity..max_quantity`` inclusive and bracket ``i + 1`` starts at
``max_quantity + 1``, so a quantity on a tier boundary belongs to the higher
tier. Only the last bracket is unbounded.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Sequence

from .models import BracketProgress, DiscountBracket, PledgeStatus
from .protocols import (
    CampaignNotFoundError,
    GroupBuyRepositoryProtocol,
    GroupBuyValidationError,
    UnitOfWorkProtocol,
    UnpricedCampaignError,
)

logger = logging.getLogger(__name__)

ACTIVE_PLEDGE_STATUSES = [PledgeStatus.PENDING, PledgeStatus.COMMITTED]


def _ordered(brackets: Sequence[DiscountBracket]) -> List[DiscountBracket]:
    return sorted(brackets, key=lambda b: b.bracket_order)


def _current_index(brackets: List[DiscountBracket], quantity: int) -> Optional[int]:
    for index, bracket in enumerate(brackets):
        if bracket.contains(quantity):
            return index
    return None


def find_current_bracket(
    brackets: Sequence[DiscountBracket], quantity: int
) -> Optional[DiscountBracket]:
    """Bracket containing ``quantity``, or None below the first tier or with no brackets"""
    ordered = _ordered(brackets)
    index = _current_index(ordered, quantity)
    return ordered[index] if index is not None else None


def find_next_bracket(
    brackets: Sequence[DiscountBracket], quantity: int
) -> Optional[DiscountBracket]:
    """Bracket after the current one; the first tier when below it; None at the top"""
    ordered = _ordered(brackets)
    if not ordered:
        return None
    if quantity < ordered[0].min_quantity:
        return ordered[0]
    index = _current_index(ordered, quantity)
    if index is None or index + 1 >= len(ordered):
        return None
    return ordered[index + 1]


def units_to_next_bracket(
    brackets: Sequence[DiscountBracket], quantity: int
) -> Optional[int]:
    next_bracket = find_next_bracket(brackets, quantity)
    if next_bracket is None:
        return None
    return next_bracket.min_quantity - quantity


def validate_bracket_table(brackets: Sequence[DiscountBracket]) -> None:
    """
    Check that a bracket table partitions [0, inf) with non-increasing prices.

    Raises:
        GroupBuyValidationError: on the first violation found
    """
    ordered = _ordered(brackets)
    if not ordered:
        raise GroupBuyValidationError("Campaign must have at least one discount bracket", field="brackets")

    for position, bracket in enumerate(ordered):
        if bracket.bracket_order != position:
            raise GroupBuyValidationError(
                f"Bracket orders must be contiguous from 0, found {bracket.bracket_order} at position {position}",
                field="bracket_order",
            )
        if bracket.max_quantity is not None and bracket.max_quantity < bracket.min_quantity:
            raise GroupBuyValidationError(
                f"Bracket {position} max_quantity {bracket.max_quantity} is below min_quantity {bracket.min_quantity}",
                field="max_quantity",
            )
        is_last = position == len(ordered) - 1
        if is_last and bracket.max_quantity is not None:
            raise GroupBuyValidationError("Last bracket must be unbounded", field="max_quantity")
        if not is_last and bracket.max_quantity is None:
            raise GroupBuyValidationError(
                f"Only the last bracket may be unbounded (bracket {position})", field="max_quantity"
            )

        if position == 0:
            if bracket.min_quantity != 0:
                raise GroupBuyValidationError("First bracket must start at quantity 0", field="min_quantity")
            continue

        previous = ordered[position - 1]
        if bracket.min_quantity != previous.max_quantity + 1:
            raise GroupBuyValidationError(
                f"Bracket {position} must start at {previous.max_quantity + 1}, found {bracket.min_quantity}",
                field="min_quantity",
            )
        if bracket.unit_price > previous.unit_price:
            raise GroupBuyValidationError(
                f"Bracket {position} unit price {bracket.unit_price} exceeds previous {previous.unit_price}",
                field="unit_price",
            )


def calculate_discount_percentage(
    brackets: Sequence[DiscountBracket], final_unit_price: Decimal
) -> int:
    """Discount of ``final_unit_price`` against the first tier's price, whole percent half-up"""
    ordered = _ordered(brackets)
    if not ordered or ordered[0].unit_price <= 0:
        return 0
    base_price = ordered[0].unit_price
    percentage = (base_price - final_unit_price) * Decimal(100) / base_price
    return int(percentage.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class BracketPricingService:
    """Store-backed bracket lookups for a campaign"""

    def __init__(self, repository: GroupBuyRepositoryProtocol):
        self.repository = repository

    async def _load_brackets(self, campaign_id: str) -> List[DiscountBracket]:
        async with self.repository.unit_of_work() as uow:
            if not await uow.get_campaign(campaign_id):
                raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
            return await uow.get_brackets(campaign_id)

    async def current_bracket(self, campaign_id: str, quantity: int) -> Optional[DiscountBracket]:
        return find_current_bracket(await self._load_brackets(campaign_id), quantity)

    async def next_bracket(self, campaign_id: str, quantity: int) -> Optional[DiscountBracket]:
        return find_next_bracket(await self._load_brackets(campaign_id), quantity)

    async def get_progress(self, campaign_id: str) -> BracketProgress:
        """Bracket position of everything currently pledged (PENDING + COMMITTED)"""
        async with self.repository.unit_of_work() as uow:
            campaign = await uow.get_campaign(campaign_id)
            if not campaign:
                raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
            brackets = await uow.get_brackets(campaign_id)
            total = await uow.sum_pledge_quantity(campaign_id, ACTIVE_PLEDGE_STATUSES)

        current = find_current_bracket(brackets, total)
        return BracketProgress(
            campaign_id=campaign_id,
            total_quantity=total,
            current_bracket=current,
            next_bracket=find_next_bracket(brackets, total),
            units_to_next_bracket=units_to_next_bracket(brackets, total),
            current_unit_price=current.unit_price if current else None,
        )

    async def resolve_final_bracket(
        self, uow: UnitOfWorkProtocol, campaign_id: str
    ) -> DiscountBracket:
        """
        Bracket for the campaign's committed quantity as of now.

        Always re-reads the committed total; commits made during the grace
        period can move the campaign into a cheaper tier.

        Raises:
            UnpricedCampaignError: if no bracket contains the committed quantity
        """
        brackets = await uow.get_brackets(campaign_id)
        committed = await uow.sum_pledge_quantity(campaign_id, [PledgeStatus.COMMITTED])
        bracket = find_current_bracket(brackets, committed)
        if bracket is None:
            raise UnpricedCampaignError(
                f"No discount bracket resolves a price for campaign {campaign_id} at quantity {committed}",
                details={"campaign_id": campaign_id, "quantity": committed},
            )
        logger.debug(
            f"Campaign {campaign_id} final bracket {bracket.bracket_order} "
            f"at {committed} units, unit price {bracket.unit_price}"
        )
        return bracket


__all__ = [
    "ACTIVE_PLEDGE_STATUSES",
    "find_current_bracket",
    "find_next_bracket",
    "units_to_next_bracket",
    "validate_bracket_table",
    "calculate_discount_percentage",
    "BracketPricingService",
]
