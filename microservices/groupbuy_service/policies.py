"""
Minimum quantity policies

A campaign locks at evaluation when its committed quantity reaches the
policy's minimum; otherwise it is cancelled.
"""

from typing import Dict, List, Type

from .models import Campaign, DiscountBracket
from .protocols import GroupBuyValidationError, MinimumQuantityPolicyProtocol


class TargetQuantityPolicy:
    """Minimum is the supplier-declared target quantity of the campaign"""

    name = "target_quantity"

    def minimum_quantity(self, campaign: Campaign, brackets: List[DiscountBracket]) -> int:
        return campaign.target_quantity


class LowestBracketMinimumPolicy:
    """Minimum is the first bracket's min_quantity (0 with no brackets)"""

    name = "lowest_bracket"

    def minimum_quantity(self, campaign: Campaign, brackets: List[DiscountBracket]) -> int:
        if not brackets:
            return 0
        return min(brackets, key=lambda b: b.bracket_order).min_quantity


MINIMUM_QUANTITY_POLICIES: Dict[str, Type] = {
    TargetQuantityPolicy.name: TargetQuantityPolicy,
    LowestBracketMinimumPolicy.name: LowestBracketMinimumPolicy,
}


def get_minimum_quantity_policy(name: str) -> MinimumQuantityPolicyProtocol:
    """Build a policy by its configured name"""
    try:
        return MINIMUM_QUANTITY_POLICIES[name]()
    except KeyError:
        raise GroupBuyValidationError(
            f"Unknown minimum quantity policy '{name}', expected one of {sorted(MINIMUM_QUANTITY_POLICIES)}",
            field="minimum_quantity_policy",
        )
