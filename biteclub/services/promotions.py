"""
Promotion Engine

Pure evaluation of a restaurant's promotions for one checkout:
    - First-time discount: percentage off the first order at a restaurant
    - Loyalty reward: credit earned each time cumulative spend crosses
      the restaurant's threshold, with the remainder carried over

Nothing here touches the database. The same evaluation backs the
check-promotions preview and order creation; only order creation persists
the result.

Loyalty progress accumulates the pre-discount subtotal.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from biteclub.models import CustomerRelationship, PromotionConfig, PromotionType
from biteclub.services.ledger import to_money

ZERO = Decimal("0.00")


def _money(value) -> Decimal:
    return to_money(value if value is not None else 0)


@dataclass(frozen=True)
class PromotionResult:
    """
    Outcome of evaluating promotions for a subtotal.

    Attributes:
        subtotal: Client-declared order total before promotions
        discount_amount: Amount taken off by the first-time discount
        final_amount: What the student will be charged on acceptance
        promotion_applied: Discount tag, at most one per order
        loyalty_reward_earned: Credit granted at order creation (0 if none)
        updated_loyalty_progress: Progress stored after the order
        updated_total_spent: Lifetime spend stored after the order
        first_time_percent: Percentage behind the discount, for display
        loyalty_threshold: Spend needed per reward (None if loyalty off)
        loyalty_reward_amount: Configured reward (None if loyalty off)
    """
    subtotal: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    promotion_applied: Optional[PromotionType]
    loyalty_reward_earned: Decimal
    updated_loyalty_progress: Decimal
    updated_total_spent: Decimal
    prior_loyalty_progress: Decimal = ZERO
    first_time_percent: Optional[Decimal] = None
    loyalty_threshold: Optional[Decimal] = None
    loyalty_reward_amount: Optional[Decimal] = None
    updated_is_first_time: bool = False

    @property
    def loyalty_amount_needed(self) -> Optional[Decimal]:
        """Spend still needed for the next reward, when none was earned."""
        if self.loyalty_threshold is None or self.loyalty_reward_earned > 0:
            return None
        return max(ZERO, self.loyalty_threshold - (self.prior_loyalty_progress + self.subtotal))


def evaluate_promotions(
    subtotal,
    config: Optional[PromotionConfig],
    relationship: Optional[CustomerRelationship],
) -> PromotionResult:
    """
    Compute discount and loyalty effects of one order.

    Args:
        subtotal: Order total before promotions
        config: Restaurant promotion settings, None if the restaurant has none
        relationship: Customer history at the restaurant, None for a new customer

    Returns:
        PromotionResult: Identical for identical inputs
    """
    subtotal = _money(subtotal)
    is_first_time = relationship is None or relationship.is_first_time
    prior_progress = _money(relationship.loyalty_progress) if relationship else ZERO
    prior_spent = _money(relationship.total_spent) if relationship else ZERO

    discount = ZERO
    promotion_applied = None
    reward = ZERO
    progress = prior_progress + subtotal
    percent = threshold = reward_amount = None

    if config is not None:
        if config.first_time_enabled and is_first_time:
            percent = Decimal(str(config.first_time_percent))
            discount = _money(subtotal * percent / 100)
            promotion_applied = PromotionType.FIRST_TIME

        if config.loyalty_enabled:
            threshold = _money(config.loyalty_spend_threshold)
            reward_amount = _money(config.loyalty_reward_amount)
            if progress >= threshold:
                reward = reward_amount
                progress = max(ZERO, progress - threshold)

    discount = min(discount, subtotal)

    return PromotionResult(
        subtotal=subtotal,
        discount_amount=discount,
        final_amount=subtotal - discount,
        promotion_applied=promotion_applied,
        loyalty_reward_earned=reward,
        updated_loyalty_progress=progress,
        updated_total_spent=prior_spent + subtotal,
        prior_loyalty_progress=prior_progress,
        first_time_percent=percent,
        loyalty_threshold=threshold,
        loyalty_reward_amount=reward_amount,
    )
