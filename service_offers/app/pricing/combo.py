"""
Combo tier eligibility and upgrade advice.

A lens can only join a combo when both its brand line and its own SKU
allow it (double-lock). Tier rules then check the frame, lens, needs
profile and second-eyewear choice, in that order; the first failing group
names the upgrade reason.
"""

from typing import List, Optional
from dataclasses import dataclass, field

from shared.logging import get_logger

from ..rules.models import ComboRuleType, ComboTier, RuleSnapshot, SecondEyewearPolicy
from .models import UpgradeReason, UpgradeSuggestion

CUSTOMER_MESSAGES = {
    UpgradeReason.BRAND_NOT_ELIGIBLE: "This selection works best in the {tier} Combo for complete coverage.",
    UpgradeReason.LENS_NOT_ELIGIBLE: "This lens selection works best in the {tier} Combo for better options.",
    UpgradeReason.NEEDS_MISMATCH: "For your usage needs, the {tier} Combo provides better comfort and backup options.",
    UpgradeReason.BOTH_OPTIONS: "The {tier} Combo allows you to choose both frame and sunglasses options.",
}


@dataclass
class ComboSelection:
    """What the customer picked, as seen by combo rules."""
    frame_brand: Optional[str] = None
    frame_sub_category: Optional[str] = None
    frame_mrp: Optional[float] = None
    sun_brand: Optional[str] = None
    lens_it_code: Optional[str] = None
    lens_price: Optional[float] = None
    needs_level: int = 0
    store_id: Optional[str] = None


@dataclass
class ComboCheck:
    tier: ComboTier
    eligible: bool
    reason: Optional[UpgradeReason] = None
    blocked_items: List[str] = field(default_factory=list)
    store_permitted: bool = True

    @property
    def detail(self) -> str:
        if self.eligible:
            return "eligible"
        if not self.store_permitted:
            return "combo not activated at store"
        return f"{self.reason.value}: {', '.join(self.blocked_items)}"


def _listed(values: List[str], *candidates: Optional[str]) -> bool:
    wanted = {value.upper() for value in values}
    if "*" in wanted:
        return True
    return any(candidate and candidate.upper() in wanted for candidate in candidates)


class ComboEligibility:
    """Evaluates combo tiers against a selection within one snapshot."""

    def __init__(self, snapshot: RuleSnapshot):
        self.snapshot = snapshot

    def double_lock(self, it_code: Optional[str]) -> bool:
        """Lens brand line and lens SKU must both allow combos."""
        sku = self.snapshot.lens_sku(it_code)
        if sku is None or not sku.combo_allowed:
            return False
        brand = self.snapshot.lens_brand(sku.brand_line)
        return brand is not None and brand.is_active and brand.combo_allowed

    def _brand_combo_allowed(self, brand_code: str, sub_category: Optional[str]) -> bool:
        brand = self.snapshot.frame_brand(brand_code)
        if brand is None or not brand.combo_allowed:
            return False
        sub = brand.sub_brand(sub_category)
        return sub is None or sub.combo_allowed

    def _brand_blocks(self, tier: ComboTier, selection: ComboSelection) -> List[str]:
        blocked = []
        picks = []
        if selection.frame_brand:
            picks.append(("frame_brand", selection.frame_brand, selection.frame_sub_category))
        if selection.sun_brand:
            picks.append(("sun_brand", selection.sun_brand, None))

        for kind, brand, sub_category in picks:
            ok = True
            for rule in tier.rules_of(ComboRuleType.REQUIRE_FRAME_BRAND_COMBO_ALLOWED):
                if rule.enabled and not self._brand_combo_allowed(brand, sub_category):
                    ok = False
            for rule in tier.rules_of(ComboRuleType.FRAME_BRANDS):
                if not _listed(rule.values, brand, sub_category):
                    ok = False
            if not ok:
                blocked.append(f"{kind}_{brand}")

        if selection.frame_mrp is not None:
            for rule in tier.rules_of(ComboRuleType.MAX_FRAME_MRP):
                if selection.frame_mrp > rule.limit:
                    blocked.append("frame_mrp")
                    break
        return blocked

    def _lens_blocks(self, tier: ComboTier, selection: ComboSelection) -> List[str]:
        if not selection.lens_it_code:
            return []
        item = f"lens_sku_{selection.lens_it_code}"
        if not self.double_lock(selection.lens_it_code):
            return [item]

        sku = self.snapshot.lens_sku(selection.lens_it_code)
        for rule in tier.rules_of(ComboRuleType.LENS_BRAND_LINES):
            if not _listed(rule.values, sku.brand_line):
                return [item]
        for rule in tier.rules_of(ComboRuleType.LENS_SKUS):
            if not _listed(rule.values, sku.it_code):
                return [item]
        if selection.lens_price is not None:
            for rule in tier.rules_of(ComboRuleType.MAX_LENS_PRICE):
                if selection.lens_price > rule.limit:
                    return [item]
        return []

    def _needs_blocks(self, tier: ComboTier, selection: ComboSelection) -> List[str]:
        for rule in tier.rules_of(ComboRuleType.MAX_NEEDS_LEVEL):
            if selection.needs_level > rule.limit:
                return ["needs_profile"]
        return []

    def _both_blocks(self, tier: ComboTier, selection: ComboSelection) -> List[str]:
        if not (selection.frame_brand and selection.sun_brand):
            return []
        policies = [rule.policy for rule in tier.rules_of(ComboRuleType.SECOND_EYEWEAR)]
        if SecondEyewearPolicy.BOTH in policies:
            return []
        return ["both_eyewear_options"]

    def evaluate(self, tier: ComboTier, selection: ComboSelection) -> ComboCheck:
        checks = (
            (UpgradeReason.BRAND_NOT_ELIGIBLE, self._brand_blocks),
            (UpgradeReason.LENS_NOT_ELIGIBLE, self._lens_blocks),
            (UpgradeReason.NEEDS_MISMATCH, self._needs_blocks),
            (UpgradeReason.BOTH_OPTIONS, self._both_blocks),
        )
        reason = None
        blocked: List[str] = []
        for code, check in checks:
            items = check(tier, selection)
            if items and reason is None:
                reason = code
            blocked.extend(items)

        store_permitted = self.snapshot.store_permits(selection.store_id, tier.offer_rule_id)
        return ComboCheck(
            tier=tier,
            eligible=reason is None and store_permitted,
            reason=reason,
            blocked_items=blocked,
            store_permitted=store_permitted,
        )


class UpgradeAdvisor:
    """Suggests the next tier that accepts a selection the picked tier rejects."""

    def __init__(self, snapshot: RuleSnapshot, eligibility: Optional[ComboEligibility] = None):
        self.snapshot = snapshot
        self.eligibility = eligibility or ComboEligibility(snapshot)
        self.logger = get_logger("offers.upgrade_advisor")

    def advise(self, picked: ComboTier, selection: ComboSelection) -> Optional[UpgradeSuggestion]:
        check = self.eligibility.evaluate(picked, selection)
        if check.eligible or check.reason is None:
            return None

        higher = [
            tier for tier in self.snapshot.active_combo_tiers()
            if (tier.sort_order, tier.combo_code) > (picked.sort_order, picked.combo_code)
        ]
        for tier in higher:
            if self.eligibility.evaluate(tier, selection).eligible:
                self.logger.info(
                    "Upgrade suggested",
                    from_tier=picked.combo_code,
                    to_tier=tier.combo_code,
                    reason_code=check.reason.value
                )
                return UpgradeSuggestion(
                    reason_code=check.reason,
                    from_tier=picked.combo_code,
                    to_tier=tier.combo_code,
                    customer_message=CUSTOMER_MESSAGES[check.reason].format(tier=tier.combo_code),
                )
        return None
