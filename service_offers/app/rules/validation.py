"""
Write-time validation of rule configuration.

Conflicts are rejected when an admin saves a record so that a calculation
can never meet them.
"""

from typing import Iterable, Optional

from shared.errors import ConfigurationConflict, NotFoundError

from .models import CategoryDiscount, ComboTier, Coupon, OfferRule, OfferType, PowerBand


def validate_power_band(band: PowerBand, existing: Iterable[PowerBand]) -> None:
    """Active bands of one lens must not overlap (nesting included)."""
    for other in existing:
        if other.id == band.id:
            raise ConfigurationConflict(
                "DUPLICATE_RECORD",
                f"Power band {band.id} already exists",
                {"bandId": band.id}
            )
        if not (band.is_active and other.is_active) or other.lens_id != band.lens_id:
            continue
        if band.overlaps(other):
            raise ConfigurationConflict(
                "BAND_OVERLAP",
                f"Band [{band.min_power:g}, {band.max_power:g}) overlaps existing band "
                f"[{other.min_power:g}, {other.max_power:g})",
                {"lensId": band.lens_id, "conflictingBandId": other.id}
            )


def validate_category_discount(row: CategoryDiscount, existing: Iterable[CategoryDiscount]) -> None:
    """(organization, category, brand) is unique."""
    key = (row.organization_id, row.customer_category, row.brand_code.upper())
    for other in existing:
        if (other.organization_id, other.customer_category, other.brand_code.upper()) == key:
            raise ConfigurationConflict(
                "DUPLICATE_CATEGORY_DISCOUNT",
                f"A {row.customer_category.value} discount for brand {row.brand_code} already exists",
                {"customerCategory": row.customer_category.value, "brandCode": row.brand_code}
            )


def validate_coupon(coupon: Coupon, existing: Iterable[Coupon]) -> None:
    """Coupon codes are unique per organization."""
    for other in existing:
        if other.organization_id == coupon.organization_id and other.code == coupon.code:
            raise ConfigurationConflict(
                "DUPLICATE_COUPON_CODE",
                f'Coupon "{coupon.code}" already exists',
                {"code": coupon.code}
            )


def validate_offer_rule(rule: OfferRule, existing: Iterable[OfferRule]) -> None:
    for other in existing:
        if other.id == rule.id or other.code == rule.code:
            raise ConfigurationConflict(
                "DUPLICATE_OFFER_CODE",
                f"Offer rule {rule.code} already exists",
                {"code": rule.code}
            )


def validate_combo_tier(tier: ComboTier, existing: Iterable[ComboTier],
                        rules: Iterable[OfferRule], replacing: Optional[str] = None) -> None:
    """Combo codes are unique and immutable; the linked rule must be a combo rule."""
    if replacing is not None and tier.combo_code != replacing.strip().upper():
        raise ConfigurationConflict(
            "COMBO_CODE_IMMUTABLE",
            f"Combo code {replacing} cannot be changed to {tier.combo_code}",
            {"comboCode": replacing}
        )
    if replacing is None:
        for other in existing:
            if other.combo_code == tier.combo_code:
                raise ConfigurationConflict(
                    "DUPLICATE_COMBO_CODE",
                    f"Combo tier {tier.combo_code} already exists",
                    {"comboCode": tier.combo_code}
                )

    if tier.offer_rule_id:
        linked = next((rule for rule in rules if rule.id == tier.offer_rule_id), None)
        if linked is None:
            raise NotFoundError(
                f"Offer rule {tier.offer_rule_id} not found",
                {"offerRuleId": tier.offer_rule_id}
            )
        if linked.offer_type != OfferType.COMBO_PRICE:
            raise ConfigurationConflict(
                "INVALID_COMBO_RULE",
                f"Offer rule {linked.code} is {linked.offer_type.value}, expected COMBO_PRICE",
                {"offerRuleId": tier.offer_rule_id}
            )
