"""
Primary offer resolution.

Exactly one primary offer applies to a cart. Strategies run in fixed
precedence (combo tier, YOPO, then generic free-lens/percent/flat rules);
within a strategy candidates are ordered by priority, creation time and
code. Every candidate gets an evaluation record so the simulator can show
why a rule lost.
"""

from abc import ABC, abstractmethod
from typing import List, Optional
from dataclasses import dataclass
from datetime import datetime

from shared.logging import get_logger

from ..rules.models import (
    AppliesTo,
    BenefitType,
    FreeLensRule,
    FreeUnderYopo,
    GENERIC_OFFER_TYPES,
    OfferRule,
    OfferType,
    RuleSnapshot,
)
from .combo import ComboEligibility, ComboSelection
from .models import (
    CalculationMode,
    ComboBenefitApplied,
    OfferCalculationInput,
    PricedCart,
    PrimaryOutcome,
    PrimaryResolution,
    RuleEvaluation,
    StrategyOutcome,
    round_money,
)

DEFAULT_PRIORITY = 100


@dataclass
class PricingContext:
    """Everything a strategy may read. Nothing in it is mutated."""
    request: OfferCalculationInput
    snapshot: RuleSnapshot
    cart: PricedCart
    now: datetime
    currency: str = "₹"

    @property
    def mode(self) -> CalculationMode:
        return self.cart.mode

    @property
    def pair_total(self) -> float:
        """Frame and lens, without contact lenses or accessories."""
        return self.cart.frame_mrp + self.cart.lens_price


def _matches(values: List[str], candidate: Optional[str]) -> bool:
    if not values:
        return True
    wanted = {value.upper() for value in values}
    return "*" in wanted or (candidate is not None and candidate.upper() in wanted)


def scope_miss(rule: OfferRule, ctx: PricingContext) -> Optional[str]:
    """Reason the rule cannot be used for this cart, or None."""
    request = ctx.request
    if rule.organization_id != request.organization_id:
        return "belongs to another organization"
    if not rule.is_active:
        return "inactive"
    if rule.start_date and ctx.now < rule.start_date:
        return "not yet started"
    if rule.end_date and ctx.now > rule.end_date:
        return "expired"
    if request.selected_offer_type and rule.offer_type != request.selected_offer_type:
        return f"offer type {request.selected_offer_type.value} selected"
    if not ctx.snapshot.store_permits(request.store_id, rule.id):
        return "not activated at store"

    if ctx.mode == CalculationMode.CONTACT_LENS_ONLY:
        brands = [item.brand for item in request.other_items if item.brand]
        if not rule.contact_lens_brands:
            return "not a contact lens offer"
        if not any(_matches(rule.contact_lens_brands, brand) for brand in brands):
            return "contact lens brand not in scope"
        return None

    if rule.contact_lens_brands:
        return "contact lens offer"
    frame = request.frame if ctx.mode == CalculationMode.FRAME_AND_LENS else None
    if rule.frame_brands and not _matches(rule.frame_brands, frame.brand if frame else None):
        return "frame brand not in scope"
    if rule.frame_sub_categories and not _matches(rule.frame_sub_categories, frame.sub_category if frame else None):
        return "frame sub-category not in scope"
    if rule.min_frame_mrp is not None and (frame is None or frame.mrp < rule.min_frame_mrp):
        return f"frame MRP below {rule.min_frame_mrp:g}"
    if rule.max_frame_mrp is not None and (frame is None or frame.mrp > rule.max_frame_mrp):
        return f"frame MRP above {rule.max_frame_mrp:g}"
    lens = request.lens
    if rule.lens_brand_lines and not _matches(rule.lens_brand_lines, lens.brand_line if lens else None):
        return "lens brand line not in scope"
    return None


class PrimaryStrategy(ABC):
    """One link of the primary offer chain."""

    name = "strategy"

    def __init__(self):
        self.logger = get_logger(f"offers.strategy.{self.name}")

    @abstractmethod
    def evaluate(self, ctx: PricingContext) -> StrategyOutcome:
        """Evaluate all candidates of this strategy against the cart."""

    @staticmethod
    def _pick(candidates: List[PrimaryOutcome], evaluations: List[RuleEvaluation]) -> StrategyOutcome:
        if not candidates:
            return StrategyOutcome(applicable=False, evaluations=evaluations)
        winner = candidates[0]
        for evaluation in evaluations:
            if evaluation.applicable and evaluation.rule_code != winner.rule_code:
                evaluation.reason = f"outranked by {winner.rule_code}"
        return StrategyOutcome(applicable=True, result=winner, evaluations=evaluations)


class ComboTierStrategy(PrimaryStrategy):
    """Fixed-price bundle when the double-lock and tier rules are satisfied."""

    name = "combo"

    def _ordered_tiers(self, ctx: PricingContext):
        tiers = ctx.snapshot.active_combo_tiers()
        if ctx.request.selected_combo_code:
            code = ctx.request.selected_combo_code.strip().upper()
            tiers = [tier for tier in tiers if tier.combo_code == code]

        def key(tier):
            rule = ctx.snapshot.offer_rule(tier.offer_rule_id)
            priority = rule.priority if rule else DEFAULT_PRIORITY
            return (priority, tier.sort_order, tier.combo_code)

        return sorted(tiers, key=key)

    def evaluate(self, ctx: PricingContext) -> StrategyOutcome:
        evaluations: List[RuleEvaluation] = []
        candidates: List[PrimaryOutcome] = []
        request = ctx.request
        if ctx.mode != CalculationMode.FRAME_AND_LENS or request.frame is None or request.lens is None:
            return StrategyOutcome(applicable=False)

        eligibility = ComboEligibility(ctx.snapshot)
        selection = ComboSelection(
            frame_brand=request.frame.brand,
            frame_sub_category=request.frame.sub_category,
            frame_mrp=request.frame.mrp,
            lens_it_code=request.lens.it_code,
            lens_price=ctx.cart.lens_price,
            needs_level=request.needs_profile.level if request.needs_profile else 0,
            store_id=request.store_id,
        )

        for tier in self._ordered_tiers(ctx):
            rule = ctx.snapshot.offer_rule(tier.offer_rule_id)
            code = rule.code if rule else tier.combo_code
            if tier.offer_rule_id and rule is None:
                reason = "linked offer rule missing"
            elif rule is not None:
                reason = scope_miss(rule, ctx)
            elif request.selected_offer_type and request.selected_offer_type != OfferType.COMBO_PRICE:
                reason = f"offer type {request.selected_offer_type.value} selected"
            else:
                reason = None

            if reason is None:
                check = eligibility.evaluate(tier, selection)
                if not check.eligible:
                    reason = check.detail
            if reason is None and tier.effective_price > ctx.pair_total:
                reason = "combo price exceeds cart"
            if reason is not None:
                evaluations.append(RuleEvaluation(code, OfferType.COMBO_PRICE, False, reason))
                continue

            savings = round_money(ctx.pair_total - tier.effective_price)
            benefits = [
                ComboBenefitApplied(
                    benefit_type=benefit.benefit_type,
                    label=benefit.label,
                    max_value=benefit.max_value,
                    deferred_credit=benefit.benefit_type == BenefitType.VOUCHER,
                )
                for benefit in tier.benefits
            ]
            candidates.append(PrimaryOutcome(
                rule_code=code,
                offer_type=OfferType.COMBO_PRICE,
                label=f"{tier.display_name} Combo: {ctx.currency}{tier.effective_price:g}",
                new_total=tier.effective_price + ctx.cart.other_items_total,
                savings=savings,
                combo_tier=tier.combo_code,
                benefits=benefits,
            ))
            evaluations.append(RuleEvaluation(code, OfferType.COMBO_PRICE, True, "applied", savings))

        return self._pick(candidates, evaluations)


class RuleStrategy(PrimaryStrategy):
    """Strategy driven by OfferRule rows of given types."""

    offer_types = ()

    def applies_to_mode(self, ctx: PricingContext) -> Optional[str]:
        return None

    @abstractmethod
    def price(self, rule: OfferRule, ctx: PricingContext) -> Optional[PrimaryOutcome]:
        """Price the cart under the rule, or None when it yields nothing."""

    def not_applicable_reason(self, rule: OfferRule, ctx: PricingContext) -> str:
        return "no saving for this cart"

    def evaluate(self, ctx: PricingContext) -> StrategyOutcome:
        evaluations: List[RuleEvaluation] = []
        candidates: List[PrimaryOutcome] = []
        mode_reason = self.applies_to_mode(ctx)

        for rule in ctx.snapshot.rules_of_type(*self.offer_types):
            reason = mode_reason or scope_miss(rule, ctx)
            if reason is None:
                outcome = self.price(rule, ctx)
                if outcome is None or outcome.savings <= 0:
                    reason = self.not_applicable_reason(rule, ctx)
                else:
                    candidates.append(outcome)
                    evaluations.append(RuleEvaluation(rule.code, rule.offer_type, True, "applied", outcome.savings))
                    continue
            evaluations.append(RuleEvaluation(rule.code, rule.offer_type, False, reason))

        return self._pick(candidates, evaluations)


class YopoStrategy(RuleStrategy):
    """Customer pays for the dearer of frame and lens."""

    name = "yopo"
    offer_types = (OfferType.YOPO,)

    def applies_to_mode(self, ctx: PricingContext) -> Optional[str]:
        if ctx.mode == CalculationMode.CONTACT_LENS_ONLY:
            return "not available for contact lenses"
        if ctx.request.lens is None or not ctx.request.lens.yopo_eligible:
            return "lens not YOPO eligible"
        if ctx.mode == CalculationMode.ONLY_LENS:
            return "requires a frame"
        return None

    def price(self, rule: OfferRule, ctx: PricingContext) -> Optional[PrimaryOutcome]:
        frame_mrp, lens_price = ctx.cart.frame_mrp, ctx.cart.lens_price
        free_under = rule.config.free_under_yopo
        if free_under == FreeUnderYopo.FRAME:
            payable, label = lens_price, "YOPO - Frame Free (Pay Lens Price)"
        elif free_under == FreeUnderYopo.LENS:
            payable, label = frame_mrp, "YOPO - Lens Free (Pay Frame Price)"
        else:
            payable = max(frame_mrp, lens_price)
            free_item = "LENS" if frame_mrp > lens_price else "FRAME"
            label = f"YOPO - Pay higher of frame or lens ({free_item} free)"

        return PrimaryOutcome(
            rule_code=rule.code,
            offer_type=rule.offer_type,
            label=label,
            new_total=payable + ctx.cart.other_items_total,
            savings=round_money(ctx.pair_total - payable),
            meta={"freeUnderYopo": free_under.value},
        )


class GenericRuleStrategy(RuleStrategy):
    """Free-lens, percent-off and flat-off rules."""

    name = "generic"
    offer_types = GENERIC_OFFER_TYPES

    def not_applicable_reason(self, rule: OfferRule, ctx: PricingContext) -> str:
        config = rule.config
        if rule.offer_type == OfferType.FLAT_OFF and config.min_bill_value and ctx.cart.base_total < config.min_bill_value:
            return f"minimum bill {ctx.currency}{config.min_bill_value:g} not met"
        if rule.offer_type == OfferType.FREE_LENS and ctx.cart.frame_mrp == 0 \
                and config.free_lens_rule == FreeLensRule.PERCENT_OF_FRAME:
            return "percent of frame needs a frame"
        return "no saving for this cart"

    def price(self, rule: OfferRule, ctx: PricingContext) -> Optional[PrimaryOutcome]:
        config = rule.config
        cart = ctx.cart
        base_total = cart.base_total

        if rule.offer_type == OfferType.FREE_LENS:
            if config.free_lens_rule == FreeLensRule.PERCENT_OF_FRAME:
                if cart.frame_mrp == 0:
                    return None
                savings = min(cart.lens_price, cart.frame_mrp * config.percent_limit)
            elif config.free_lens_rule == FreeLensRule.VALUE_LIMIT:
                savings = min(cart.lens_price, config.value_limit or 0)
            else:
                savings = cart.lens_price
            label = f"Free Lens ({config.free_lens_rule.value})"

        elif rule.offer_type == OfferType.PERCENT_OFF:
            percent = config.discount_percent or 0
            if config.applies_to == AppliesTo.FRAME_ONLY:
                percent_base = cart.frame_mrp
            elif config.applies_to == AppliesTo.LENS_ONLY:
                percent_base = cart.lens_price
            else:
                percent_base = base_total
            savings = percent_base * percent / 100
            label = f"{percent:g}% OFF"
            if config.applies_to != AppliesTo.ALL:
                label += f" ({config.applies_to.value})"

        else:
            if config.min_bill_value and base_total < config.min_bill_value:
                return None
            flat = config.flat_amount or 0
            savings = flat
            label = f"Flat {ctx.currency}{flat:g} OFF"

        savings = round_money(min(savings, base_total))
        return PrimaryOutcome(
            rule_code=rule.code,
            offer_type=rule.offer_type,
            label=label,
            new_total=base_total - savings,
            savings=savings,
        )


class PrimaryOfferResolver:
    """Runs the strategy chain and keeps the first winner."""

    def __init__(self, strategies: Optional[List[PrimaryStrategy]] = None):
        self.strategies = strategies or [ComboTierStrategy(), YopoStrategy(), GenericRuleStrategy()]
        self.logger = get_logger("offers.primary_resolver")

    def resolve(self, ctx: PricingContext) -> PrimaryResolution:
        winner: Optional[PrimaryOutcome] = None
        evaluations: List[RuleEvaluation] = []

        for strategy in self.strategies:
            outcome = strategy.evaluate(ctx)
            if winner is not None:
                for evaluation in outcome.evaluations:
                    if evaluation.applicable:
                        evaluation.reason = f"superseded by {winner.rule_code}"
            elif outcome.applicable:
                winner = outcome.result
            evaluations.extend(outcome.evaluations)

        if winner is not None:
            self.logger.debug(
                "Primary offer selected",
                rule_code=winner.rule_code,
                offer_type=winner.offer_type.value,
                savings=winner.savings
            )
        return PrimaryResolution(winner=winner, evaluations=evaluations)
