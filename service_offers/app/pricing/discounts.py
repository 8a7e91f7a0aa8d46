"""
Discount layers applied after the primary offer.

Each layer either applies fully or is skipped with a reason; none of them
raise for eligibility misses.
"""

from typing import List, Optional, Tuple
from dataclasses import dataclass, field
from datetime import datetime

from shared.logging import get_logger

from ..rules.models import (
    CategoryDiscount,
    Coupon,
    CustomerCategory,
    DiscountType,
    OfferRule,
    OfferType,
    RuleSnapshot,
    SECOND_PAIR_OFFER_TYPES,
    normalize_coupon_code,
)
from .catalog import CatalogLookup
from .models import (
    BonusProduct,
    CalculationMode,
    OfferApplied,
    OfferCalculationInput,
    PriceComponent,
    RxAddOnCharge,
    round_money,
)
from .strategies import PricingContext


@dataclass
class SecondPairResult:
    offer: Optional[OfferApplied]
    payable: float
    components: List[PriceComponent] = field(default_factory=list)


class SecondPairApplier:
    """BOGO / BOG50 pricing of a second pair against the post-offer first pair."""

    def __init__(self, catalog: Optional[CatalogLookup] = None):
        self.catalog = catalog or CatalogLookup()
        self.logger = get_logger("offers.second_pair")

    def find_rule(self, ctx: PricingContext) -> Optional[OfferRule]:
        for rule in ctx.snapshot.rules_of_type(*SECOND_PAIR_OFFER_TYPES):
            if rule.organization_id != ctx.request.organization_id or not rule.is_live(ctx.now):
                continue
            if ctx.snapshot.store_permits(ctx.request.store_id, rule.id):
                return rule
        return None

    def add_on_charges(self, ctx: PricingContext) -> List[RxAddOnCharge]:
        """Rx add-ons of the second lens against the shared prescription."""
        it_code = ctx.request.second_pair.second_pair_lens_it_code
        if not it_code or ctx.request.prescription is None:
            return []
        sku = ctx.snapshot.lens_sku(it_code)
        if sku is None:
            self.logger.info("Second pair lens not in catalog", it_code=it_code)
            return []
        return self.catalog.match_add_ons(ctx.snapshot.add_on_bands_for(sku.lens_id), ctx.request.prescription)

    def apply(self, ctx: PricingContext, first_pair_total: float) -> Optional[SecondPairResult]:
        second_pair = ctx.request.second_pair
        if second_pair is None or not second_pair.enabled or ctx.mode == CalculationMode.CONTACT_LENS_ONLY:
            return None

        base_total = (second_pair.second_pair_frame_mrp or 0) + (second_pair.second_pair_lens_price or 0)
        add_ons = self.add_on_charges(ctx)
        second_total = base_total + sum(charge.charge for charge in add_ons)
        if second_total <= 0:
            return None

        components = [PriceComponent(label="Second Pair (Frame + Lens)", amount=base_total)]
        components.extend(PriceComponent(label=f"2nd Pair: {charge.label}", amount=charge.charge) for charge in add_ons)
        rule = self.find_rule(ctx)
        if rule is None:
            self.logger.debug("Second pair priced without offer", second_pair_total=second_total)
            return SecondPairResult(
                offer=None,
                payable=first_pair_total + second_total,
                components=components,
            )

        lower = min(first_pair_total, second_total)
        if rule.offer_type == OfferType.BOGO:
            savings = round_money(lower)
            label = "BOGO discount 2nd pair free"
        else:
            percent = rule.config.second_pair_percent
            savings = round_money(lower * percent / 100)
            label = f"BOG50 - {percent:g}% off lower pair"

        components.append(PriceComponent(label=label, amount=-savings))
        return SecondPairResult(
            offer=OfferApplied(rule_code=rule.code, description=label, savings=savings),
            payable=first_pair_total + second_total - savings,
            components=components,
        )


class CategoryDiscountApplier:
    """At most one category discount: exact brand row, else the '*' row."""

    def __init__(self):
        self.logger = get_logger("offers.category_discount")

    @staticmethod
    def brand_code(request: OfferCalculationInput, mode: CalculationMode) -> Optional[str]:
        if request.frame and mode == CalculationMode.FRAME_AND_LENS:
            return request.frame.brand
        if request.lens and mode != CalculationMode.CONTACT_LENS_ONLY:
            return request.lens.brand_line
        for item in request.other_items:
            if item.brand:
                return item.brand
        return None

    @staticmethod
    def lookup(snapshot: RuleSnapshot, organization_id: str, category: CustomerCategory,
               brand_code: Optional[str]) -> Optional[CategoryDiscount]:
        rows = [
            row for row in snapshot.category_discounts
            if row.is_active and row.organization_id == organization_id and row.customer_category == category
        ]
        if brand_code:
            for row in rows:
                if row.brand_code.upper() == brand_code.upper():
                    return row
        for row in rows:
            if row.brand_code == "*":
                return row
        return None

    def apply(self, ctx: PricingContext, subtotal: float) -> Tuple[Optional[OfferApplied], Optional[str]]:
        request = ctx.request
        category = request.customer_category
        if category is None:
            return None, None

        row = self.lookup(ctx.snapshot, request.organization_id, category,
                          self.brand_code(request, ctx.mode))
        if row is None:
            return None, None

        if row.verification_required:
            proof = request.customer_id_proof
            allowed = {id_type.upper() for id_type in row.allowed_id_types}
            if proof is None or (allowed and proof.id_type.upper() not in allowed):
                accepted = ", ".join(row.allowed_id_types) or "any government ID"
                error = f"{category.value} discount requires ID verification (accepted: {accepted})"
                self.logger.info("Category discount withheld", category=category.value, reason="unverified")
                return None, error

        savings = subtotal * row.discount_percent / 100
        if row.max_discount is not None:
            savings = min(savings, row.max_discount)
        savings = round_money(min(savings, subtotal))
        if savings <= 0:
            return None, None

        return OfferApplied(
            rule_code=f"CATEGORY_{category.value}",
            description=f"{category.value} discount {row.discount_percent:g}%",
            savings=savings,
        ), None


class CouponValidator:
    """Validates and prices a coupon against the post-category cart."""

    def __init__(self, currency: str = "₹"):
        self.currency = currency
        self.logger = get_logger("offers.coupon")

    @staticmethod
    def availability_error(coupon: Optional[Coupon], code: str, organization_id: str,
                           now: datetime) -> Optional[str]:
        """Checks that do not depend on the cart: existence, window, usage."""
        if coupon is None or not coupon.is_active or coupon.organization_id != organization_id:
            return f'Coupon code "{code}" not found or inactive'
        if now < coupon.valid_from:
            return f'Coupon "{coupon.code}" is not yet valid'
        if coupon.valid_until is not None and now > coupon.valid_until:
            return f'Coupon "{coupon.code}" has expired'
        if coupon.exhausted:
            return f'Coupon "{coupon.code}" has reached its usage limit'
        return None

    def apply(self, ctx: PricingContext, cart_value: float) -> Tuple[Optional[OfferApplied], Optional[str]]:
        if not ctx.request.coupon_code:
            return None, None

        code = normalize_coupon_code(ctx.request.coupon_code)
        coupon = ctx.snapshot.coupon(code)
        error = self.availability_error(coupon, code, ctx.request.organization_id, ctx.now)
        if error is None and coupon.min_cart_value is not None and cart_value < coupon.min_cart_value:
            error = (
                f'Coupon "{coupon.code}" requires minimum cart value of {self.currency}{coupon.min_cart_value:g}. '
                f'Current cart value is {self.currency}{round(cart_value)}'
            )
        if error is not None:
            self.logger.info("Coupon rejected", coupon_code=code, reason=error)
            return None, error

        if coupon.discount_type == DiscountType.PERCENTAGE:
            savings = cart_value * coupon.discount_value / 100
            if coupon.max_discount is not None:
                savings = min(savings, coupon.max_discount)
            description = f"Coupon {coupon.code} ({coupon.discount_value:g}% off)"
        else:
            savings = min(coupon.discount_value, cart_value)
            description = f"Coupon {coupon.code} ({self.currency}{coupon.discount_value:g} off)"

        return OfferApplied(rule_code=coupon.code, description=description,
                            savings=round_money(min(savings, cart_value))), None


class BonusProductSelector:
    """First bonus-product rule whose trigger bill and filters match."""

    def __init__(self, currency: str = "₹"):
        self.currency = currency

    def select(self, ctx: PricingContext, subtotal: float) -> Optional[BonusProduct]:
        request = ctx.request
        frame = request.frame if ctx.mode == CalculationMode.FRAME_AND_LENS else None
        brands = {value.upper() for value in (
            frame.brand if frame else None,
            request.lens.brand_line if request.lens and ctx.mode != CalculationMode.CONTACT_LENS_ONLY else None,
            *(item.brand for item in request.other_items),
        ) if value}
        sub_category = frame.sub_category.upper() if frame and frame.sub_category else None

        for rule in ctx.snapshot.rules_of_type(OfferType.BONUS_FREE_PRODUCT):
            if rule.organization_id != request.organization_id or not rule.is_live(ctx.now):
                continue
            if not ctx.snapshot.store_permits(request.store_id, rule.id):
                continue
            config = rule.config
            if subtotal < (config.trigger_min_bill or 0):
                continue
            eligible_brands = {brand.upper() for brand in config.eligible_brands}
            if eligible_brands and "*" not in eligible_brands and not brands & eligible_brands:
                continue
            eligible_categories = {category.upper() for category in config.eligible_categories}
            if eligible_categories and "*" not in eligible_categories and sub_category not in eligible_categories:
                continue

            category = config.bonus_category or "ACCESSORY"
            label = f"Bonus: Free {category}"
            if config.bonus_limit:
                label += f" worth up to {self.currency}{config.bonus_limit:g}"
            return BonusProduct(rule_code=rule.code, label=label, category=category, max_value=config.bonus_limit)
        return None
