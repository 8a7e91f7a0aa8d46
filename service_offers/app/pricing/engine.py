"""
Offer engine for the Offers Service.

``OfferEngine.calculate`` is a pure function of (input, snapshot, now):
catalog lookup, price composition, primary offer, second pair, category
discount, coupon, bonus product and upsell advice, in that order. It never
writes anything; coupon usage is committed separately.
"""

from typing import List, Optional, Tuple
from datetime import datetime

from shared.errors import ValidationError
from shared.logging import get_logger

from ..rules.models import RuleSnapshot, utcnow
from .catalog import BandCoverage, BandPowerBasis, CatalogLookup, PriceComposer
from .discounts import BonusProductSelector, CategoryDiscountApplier, CouponValidator, SecondPairApplier
from .models import (
    CalculationMode,
    OfferApplied,
    OfferCalculationInput,
    OfferCalculationResult,
    OfferSimulationResult,
    PriceComponent,
    RuleEvaluation,
    RuleEvaluationView,
    round_money,
    round_payable,
)
from .strategies import PricingContext, PrimaryOfferResolver
from .upsell import UpsellAdvisor


class OfferEngine:
    """Layered pricing over one rule snapshot."""

    def __init__(self, power_basis: BandPowerBasis = BandPowerBasis.SIGNED_SPHERE,
                 band_coverage: BandCoverage = BandCoverage.OPTIONAL,
                 proximity_window: float = 1000.0,
                 currency: str = "₹",
                 resolver: Optional[PrimaryOfferResolver] = None):
        self.currency = currency
        self.catalog = CatalogLookup(power_basis, band_coverage)
        self.composer = PriceComposer()
        self.resolver = resolver or PrimaryOfferResolver()
        self.second_pair = SecondPairApplier(self.catalog)
        self.category = CategoryDiscountApplier()
        self.coupon = CouponValidator(currency)
        self.bonus = BonusProductSelector(currency)
        self.upsell = UpsellAdvisor(proximity_window, currency)
        self.logger = get_logger("offers.engine")

    def validate(self, request: OfferCalculationInput, snapshot: RuleSnapshot) -> CalculationMode:
        """Hard input checks; anything failing here aborts the whole calculation."""
        if not request.organization_id or not request.organization_id.strip():
            raise ValidationError("organizationId is required")
        if snapshot.organization_id != request.organization_id or not snapshot.organization_valid:
            raise ValidationError(
                f"Unknown organization {request.organization_id}",
                {"organizationId": request.organization_id}
            )

        mode = request.resolved_mode()
        missing = []
        if mode == CalculationMode.FRAME_AND_LENS:
            if request.frame is None:
                missing.append("frame")
            if request.lens is None:
                missing.append("lens")
        elif mode == CalculationMode.ONLY_LENS and request.lens is None:
            missing.append("lens")
        elif mode == CalculationMode.CONTACT_LENS_ONLY and not request.other_items:
            missing.append("otherItems")
        if missing:
            raise ValidationError(
                f"{mode.value} requires {' and '.join(missing)}",
                {"mode": mode.value, "missing": missing}
            )
        return mode

    def calculate(self, request: OfferCalculationInput, snapshot: RuleSnapshot,
                  now: Optional[datetime] = None) -> OfferCalculationResult:
        result, _ = self._run(request, snapshot, now or utcnow())
        return result

    def simulate(self, request: OfferCalculationInput, snapshot: RuleSnapshot,
                 now: Optional[datetime] = None) -> OfferSimulationResult:
        result, evaluations = self._run(request, snapshot, now or utcnow())
        return OfferSimulationResult(
            result=result,
            evaluations=[
                RuleEvaluationView(
                    rule_code=evaluation.rule_code,
                    offer_type=evaluation.offer_type,
                    applicable=evaluation.applicable,
                    reason=evaluation.reason,
                    estimated_savings=evaluation.estimated_savings,
                )
                for evaluation in evaluations
            ],
            snapshot_generation=snapshot.generation,
        )

    def _run(self, request: OfferCalculationInput, snapshot: RuleSnapshot,
             now: datetime) -> Tuple[OfferCalculationResult, List[RuleEvaluation]]:
        mode = self.validate(request, snapshot)

        lens_pricing = None
        if request.lens is not None and mode != CalculationMode.CONTACT_LENS_ONLY:
            lens_pricing = self.catalog.price_lens(request.lens, request.prescription, snapshot)
        cart = self.composer.compose(request, mode, lens_pricing)
        ctx = PricingContext(request=request, snapshot=snapshot, cart=cart, now=now, currency=self.currency)

        components: List[PriceComponent] = list(cart.components)
        offers_applied: List[OfferApplied] = []

        resolution = self.resolver.resolve(ctx)
        effective_base = cart.base_total
        winner = resolution.winner
        if winner is not None:
            effective_base = winner.new_total
            offers_applied.append(OfferApplied(
                rule_code=winner.rule_code,
                description=winner.label,
                savings=winner.savings,
            ))
            components.append(PriceComponent(label=winner.label, amount=-winner.savings, meta=winner.meta or None))

        subtotal = effective_base

        second_pair_discount = None
        available_second_pair_rule = None
        second_pair = self.second_pair.apply(ctx, subtotal)
        if second_pair is None and mode != CalculationMode.CONTACT_LENS_ONLY:
            rule = self.second_pair.find_rule(ctx)
            available_second_pair_rule = rule.code if rule else None
        if second_pair is not None:
            subtotal = second_pair.payable
            components.extend(second_pair.components)
            second_pair_discount = second_pair.offer
            if second_pair.offer is not None:
                offers_applied.append(second_pair.offer)

        category_discount, category_error = self.category.apply(ctx, subtotal)
        if category_discount is not None:
            subtotal -= category_discount.savings
            offers_applied.append(category_discount)
            components.append(PriceComponent(label=category_discount.description, amount=-category_discount.savings))

        coupon_discount, coupon_error = self.coupon.apply(ctx, subtotal)
        if coupon_discount is not None:
            subtotal -= coupon_discount.savings
            offers_applied.append(coupon_discount)
            components.append(PriceComponent(label=coupon_discount.description, amount=-coupon_discount.savings))

        bonus_product = self.bonus.select(ctx, subtotal)
        if bonus_product is not None:
            offers_applied.append(OfferApplied(rule_code=bonus_product.rule_code,
                                               description=bonus_product.label, savings=0.0))

        final_payable = round_payable(subtotal)
        upsell = self.upsell.advise(ctx, final_payable)

        result = OfferCalculationResult(
            frame_mrp=round_money(cart.frame_mrp),
            lens_price=round_money(cart.lens_price),
            band_surcharge=round_money(cart.band_surcharge),
            rx_add_on_breakdown=cart.add_on_charges,
            base_total=round_money(cart.base_total),
            effective_base=round_money(effective_base),
            offers_applied=offers_applied,
            price_components=[
                PriceComponent(label=component.label, amount=round_money(component.amount), meta=component.meta)
                for component in components
            ],
            combo_tier=winner.combo_tier if winner else None,
            combo_benefits=winner.benefits if winner else [],
            second_pair_discount=second_pair_discount,
            available_second_pair_rule=available_second_pair_rule,
            category_discount=category_discount,
            category_discount_error=category_error,
            coupon_discount=coupon_discount,
            coupon_error=coupon_error,
            bonus_product=bonus_product,
            final_payable=final_payable,
            upsell=upsell,
        )

        self.logger.debug(
            "Offer calculated",
            organization_id=request.organization_id,
            mode=mode.value,
            base_total=result.base_total,
            final_payable=final_payable,
            primary_rule=winner.rule_code if winner else None,
            coupon_error=coupon_error
        )
        return result, resolution.evaluations
