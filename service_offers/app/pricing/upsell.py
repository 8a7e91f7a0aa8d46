"""
Upsell advice: how far the customer is from the next reward threshold.
"""

from typing import List, Optional, Tuple

from ..rules.models import OfferRule, OfferType
from .models import CalculationMode, UpsellSuggestion, round_money
from .strategies import PricingContext


def upsell_type(offer_type: OfferType) -> str:
    if offer_type in (OfferType.BONUS_FREE_PRODUCT, OfferType.FREE_LENS):
        return "BONUS_FREE_PRODUCT"
    if offer_type == OfferType.YOPO:
        return "UPGRADE_LENS"
    return "ADD_ON_FEATURE"


class UpsellAdvisor:
    """Suggests spending up to the next threshold when it is close enough."""

    def __init__(self, proximity_window: float = 1000.0, currency: str = "₹"):
        self.proximity_window = proximity_window
        self.currency = currency

    def thresholds(self, ctx: PricingContext) -> List[Tuple[float, OfferRule]]:
        """Threshold table from live upsell-enabled rules visible to this cart."""
        frame = ctx.request.frame if ctx.mode == CalculationMode.FRAME_AND_LENS else None
        table = []
        for rule in sorted(ctx.snapshot.offer_rules, key=OfferRule.sort_key):
            if not rule.upsell_enabled or rule.upsell_threshold is None or not rule.upsell_reward_text:
                continue
            if rule.organization_id != ctx.request.organization_id or not rule.is_live(ctx.now):
                continue
            if not ctx.snapshot.store_permits(ctx.request.store_id, rule.id):
                continue
            brands = {brand.upper() for brand in rule.frame_brands}
            if brands and "*" not in brands and (frame is None or frame.brand.upper() not in brands):
                continue
            table.append((rule.upsell_threshold, rule))
        return table

    def advise(self, ctx: PricingContext, final_payable: float) -> Optional[UpsellSuggestion]:
        above = [(threshold, rule) for threshold, rule in self.thresholds(ctx) if threshold > final_payable]
        if not above:
            return None

        # Sort is stable, so equal thresholds keep rule priority order
        threshold, rule = sorted(above, key=lambda entry: entry[0])[0]
        remaining = round_money(threshold - final_payable)
        if remaining > self.proximity_window:
            return None

        return UpsellSuggestion(
            type=upsell_type(rule.offer_type),
            rule_code=rule.code,
            message=f"Add {self.currency}{remaining:g} more to unlock {rule.upsell_reward_text}",
            reward_text=rule.upsell_reward_text,
            threshold=threshold,
            remaining=remaining,
        )
