"""
Unit tests for primary offer strategies and their resolution.
"""

from datetime import timedelta

import pytest

from shared.test_helpers import NOW, OffersDataFactory as factory

from service_offers.app.pricing.models import CalculationMode, OtherItem
from service_offers.app.pricing.strategies import (
    ComboTierStrategy,
    GenericRuleStrategy,
    PrimaryOfferResolver,
    YopoStrategy,
)
from service_offers.app.rules.models import (
    AppliesTo,
    FreeLensRule,
    FreeUnderYopo,
    OfferConfig,
    OfferType,
)


def by_code(evaluations):
    return {evaluation.rule_code: evaluation for evaluation in evaluations}


class TestYopoStrategy:
    """Test cases for YopoStrategy."""

    @pytest.fixture
    def strategy(self):
        """Create YopoStrategy instance."""
        return YopoStrategy()

    def test_best_of_pays_higher_item(self, strategy):
        """Test YOPO charges the dearer of frame and lens."""
        rule = factory.offer_rule("YOPO", OfferType.YOPO)
        ctx = factory.pricing_context(
            factory.calculation_input(frame_mrp=3000, lens_price=2000, yopo_eligible=True),
            factory.snapshot(offer_rules=[rule]),
        )

        outcome = strategy.evaluate(ctx)

        assert outcome.applicable
        assert outcome.result.new_total == 3000
        assert outcome.result.savings == 2000
        assert outcome.result.label == "YOPO - Pay higher of frame or lens (LENS free)"

    def test_frame_free_pays_lens(self, strategy):
        """Test FRAME mode makes the frame free."""
        rule = factory.offer_rule("YOPO", OfferType.YOPO,
                                  config=OfferConfig(free_under_yopo=FreeUnderYopo.FRAME))
        ctx = factory.pricing_context(
            factory.calculation_input(frame_mrp=3000, lens_price=2000, yopo_eligible=True),
            factory.snapshot(offer_rules=[rule]),
        )

        outcome = strategy.evaluate(ctx)

        assert outcome.result.new_total == 2000
        assert outcome.result.savings == 3000

    def test_lens_not_eligible(self, strategy):
        """Test a lens without the YOPO flag cannot take YOPO."""
        rule = factory.offer_rule("YOPO", OfferType.YOPO)
        ctx = factory.pricing_context(
            factory.calculation_input(yopo_eligible=False),
            factory.snapshot(offer_rules=[rule]),
        )

        outcome = strategy.evaluate(ctx)

        assert not outcome.applicable
        assert outcome.evaluations[0].reason == "lens not YOPO eligible"

    def test_only_lens_requires_frame(self, strategy):
        """Test YOPO needs a frame to compare against."""
        rule = factory.offer_rule("YOPO", OfferType.YOPO)
        ctx = factory.pricing_context(
            factory.calculation_input(yopo_eligible=True, mode=CalculationMode.ONLY_LENS),
            factory.snapshot(offer_rules=[rule]),
        )

        outcome = strategy.evaluate(ctx)

        assert not outcome.applicable
        assert outcome.evaluations[0].reason == "requires a frame"


class TestGenericRuleStrategy:
    """Test cases for GenericRuleStrategy."""

    @pytest.fixture
    def strategy(self):
        """Create GenericRuleStrategy instance."""
        return GenericRuleStrategy()

    def test_priority_beats_savings(self, strategy):
        """Test the lower priority number wins even with a smaller saving."""
        small = factory.offer_rule("SMALL5", OfferType.PERCENT_OFF, priority=10,
                                   config=OfferConfig(discount_percent=5))
        large = factory.offer_rule("LARGE30", OfferType.PERCENT_OFF, priority=20,
                                   config=OfferConfig(discount_percent=30))
        ctx = factory.pricing_context(factory.calculation_input(), factory.snapshot(offer_rules=[large, small]))

        outcome = strategy.evaluate(ctx)

        assert outcome.result.rule_code == "SMALL5"
        assert outcome.result.savings == 250
        assert by_code(outcome.evaluations)["LARGE30"].reason == "outranked by SMALL5"

    def test_ties_break_on_code(self, strategy):
        """Test equal priority and creation time fall back to the rule code."""
        beta = factory.offer_rule("BETA", OfferType.FLAT_OFF, priority=10, config=OfferConfig(flat_amount=100))
        alpha = factory.offer_rule("ALPHA", OfferType.FLAT_OFF, priority=10, config=OfferConfig(flat_amount=100))
        ctx = factory.pricing_context(factory.calculation_input(), factory.snapshot(offer_rules=[beta, alpha]))

        assert strategy.evaluate(ctx).result.rule_code == "ALPHA"

    def test_ties_break_on_creation_time(self, strategy):
        """Test the older rule wins when priorities are equal."""
        older = factory.offer_rule("ZULU", OfferType.FLAT_OFF, priority=10, config=OfferConfig(flat_amount=100),
                                   created_at=NOW - timedelta(days=60))
        newer = factory.offer_rule("ALPHA", OfferType.FLAT_OFF, priority=10, config=OfferConfig(flat_amount=100))
        ctx = factory.pricing_context(factory.calculation_input(), factory.snapshot(offer_rules=[newer, older]))

        assert strategy.evaluate(ctx).result.rule_code == "ZULU"

    def test_minimum_bill_not_met(self, strategy):
        """Test flat offers report an unmet minimum bill."""
        rule = factory.offer_rule("FLAT500", OfferType.FLAT_OFF,
                                  config=OfferConfig(flat_amount=500, min_bill_value=6000))
        ctx = factory.pricing_context(factory.calculation_input(), factory.snapshot(offer_rules=[rule]))

        outcome = strategy.evaluate(ctx)

        assert not outcome.applicable
        assert outcome.evaluations[0].reason == "minimum bill ₹6000 not met"

    def test_percent_of_frame_free_lens(self, strategy):
        """Test free lens is capped at a share of the frame MRP."""
        rule = factory.offer_rule("FREELENS", OfferType.FREE_LENS,
                                  config=OfferConfig(free_lens_rule=FreeLensRule.PERCENT_OF_FRAME, percent_limit=0.4))
        ctx = factory.pricing_context(factory.calculation_input(), factory.snapshot(offer_rules=[rule]))

        outcome = strategy.evaluate(ctx)

        assert outcome.result.savings == 1200
        assert outcome.result.new_total == 3800

    def test_percent_frame_only(self, strategy):
        """Test FRAME_ONLY percent discounts the frame alone."""
        rule = factory.offer_rule("FRAME15", OfferType.PERCENT_OFF,
                                  config=OfferConfig(discount_percent=15, applies_to=AppliesTo.FRAME_ONLY))
        ctx = factory.pricing_context(factory.calculation_input(), factory.snapshot(offer_rules=[rule]))

        outcome = strategy.evaluate(ctx)

        assert outcome.result.savings == 450
        assert outcome.result.label == "15% OFF (FRAME_ONLY)"

    def test_flat_never_exceeds_total(self, strategy):
        """Test a flat amount larger than the cart only zeroes it."""
        rule = factory.offer_rule("HUGE", OfferType.FLAT_OFF, config=OfferConfig(flat_amount=99999))
        ctx = factory.pricing_context(factory.calculation_input(), factory.snapshot(offer_rules=[rule]))

        outcome = strategy.evaluate(ctx)

        assert outcome.result.savings == 5000
        assert outcome.result.new_total == 0

    def test_selected_offer_type_filters(self, strategy):
        """Test a selected offer type excludes rules of other types."""
        percent = factory.offer_rule("TEN", OfferType.PERCENT_OFF, config=OfferConfig(discount_percent=10))
        flat = factory.offer_rule("FLAT100", OfferType.FLAT_OFF, priority=200, config=OfferConfig(flat_amount=100))
        ctx = factory.pricing_context(
            factory.calculation_input(selected_offer_type=OfferType.FLAT_OFF),
            factory.snapshot(offer_rules=[percent, flat]),
        )

        outcome = strategy.evaluate(ctx)

        assert outcome.result.rule_code == "FLAT100"
        assert by_code(outcome.evaluations)["TEN"].reason == "offer type FLAT_OFF selected"

    @pytest.mark.parametrize("fields,reason", [
        ({"is_active": False}, "inactive"),
        ({"end_date": NOW - timedelta(days=1)}, "expired"),
        ({"start_date": NOW + timedelta(days=1)}, "not yet started"),
        ({"organization_id": "org-other"}, "belongs to another organization"),
        ({"frame_brands": ["RAYBAN"]}, "frame brand not in scope"),
        ({"lens_brand_lines": ["ZEISS"]}, "lens brand line not in scope"),
        ({"min_frame_mrp": 5000}, "frame MRP below 5000"),
    ])
    def test_scope_misses(self, strategy, fields, reason):
        """Test rules outside the cart scope explain why."""
        rule = factory.offer_rule("TEN", OfferType.PERCENT_OFF, config=OfferConfig(discount_percent=10), **fields)
        ctx = factory.pricing_context(factory.calculation_input(), factory.snapshot(offer_rules=[rule]))

        outcome = strategy.evaluate(ctx)

        assert not outcome.applicable
        assert outcome.evaluations[0].reason == reason

    def test_store_activation_list(self, strategy):
        """Test a store with an activation list only sees listed rules."""
        listed = factory.offer_rule("LISTED", OfferType.FLAT_OFF, priority=50, config=OfferConfig(flat_amount=100))
        unlisted = factory.offer_rule("UNLISTED", OfferType.FLAT_OFF, priority=10, config=OfferConfig(flat_amount=200))
        snapshot = factory.snapshot(
            offer_rules=[listed, unlisted],
            store_offer_maps=[factory.store_map("store-1", listed.id)],
        )

        at_store = strategy.evaluate(factory.pricing_context(factory.calculation_input(store_id="store-1"), snapshot))
        org_level = strategy.evaluate(factory.pricing_context(factory.calculation_input(), snapshot))

        assert at_store.result.rule_code == "LISTED"
        assert by_code(at_store.evaluations)["UNLISTED"].reason == "not activated at store"
        assert org_level.result.rule_code == "UNLISTED"

    def test_contact_lens_scope(self, strategy):
        """Test contact lens carts only see contact lens offers for their brand."""
        acuvue = factory.offer_rule("ACUVUE10", OfferType.PERCENT_OFF, config=OfferConfig(discount_percent=10),
                                    contact_lens_brands=["ACUVUE"])
        bausch = factory.offer_rule("BAUSCH10", OfferType.PERCENT_OFF, config=OfferConfig(discount_percent=10),
                                    contact_lens_brands=["BAUSCH"])
        frames = factory.offer_rule("FRAMES10", OfferType.PERCENT_OFF, config=OfferConfig(discount_percent=10))
        request = factory.calculation_input(frame_mrp=None, lens_price=None, other_items=[
            OtherItem(brand="ACUVUE", name="Oasys", quantity=2, mrp=1800, final_price=3600),
        ])
        ctx = factory.pricing_context(request, factory.snapshot(offer_rules=[acuvue, bausch, frames]))

        outcome = strategy.evaluate(ctx)
        evaluations = by_code(outcome.evaluations)

        assert outcome.result.rule_code == "ACUVUE10"
        assert outcome.result.savings == 360
        assert evaluations["BAUSCH10"].reason == "contact lens brand not in scope"
        assert evaluations["FRAMES10"].reason == "not a contact lens offer"

    def test_contact_lens_offer_skipped_for_spectacles(self, strategy):
        """Test contact lens offers never discount a spectacle cart."""
        rule = factory.offer_rule("ACUVUE10", OfferType.PERCENT_OFF, config=OfferConfig(discount_percent=10),
                                  contact_lens_brands=["ACUVUE"])
        ctx = factory.pricing_context(factory.calculation_input(), factory.snapshot(offer_rules=[rule]))

        assert strategy.evaluate(ctx).evaluations[0].reason == "contact lens offer"


class TestPrimaryOfferResolver:
    """Test cases for PrimaryOfferResolver."""

    @pytest.fixture
    def resolver(self):
        """Create PrimaryOfferResolver with the default chain."""
        return PrimaryOfferResolver()

    @pytest.fixture
    def combo_snapshot_records(self):
        """Catalog records that pass the combo double-lock."""
        return {
            "frame_brands": [factory.frame_brand("LENSKART")],
            "lens_brands": [factory.lens_brand("BLUEXPERT")],
            "lens_skus": [factory.lens_sku()],
        }

    def test_combo_supersedes_generic(self, resolver, combo_snapshot_records):
        """Test an eligible combo wins over any generic rule."""
        flat = factory.offer_rule("FLAT500", OfferType.FLAT_OFF, priority=1, config=OfferConfig(flat_amount=500))
        snapshot = factory.snapshot(
            offer_rules=[flat],
            combo_tiers=[factory.combo_tier("BRONZE", 2999)],
            **combo_snapshot_records
        )

        resolution = resolver.resolve(factory.pricing_context(factory.calculation_input(), snapshot))

        assert resolution.winner.rule_code == "BRONZE"
        assert resolution.winner.combo_tier == "BRONZE"
        assert resolution.winner.new_total == 2999
        assert by_code(resolution.evaluations)["FLAT500"].reason == "superseded by BRONZE"

    def test_yopo_supersedes_generic(self, resolver):
        """Test YOPO wins over generic rules when it applies."""
        yopo = factory.offer_rule("YOPO", OfferType.YOPO, priority=90)
        flat = factory.offer_rule("FLAT500", OfferType.FLAT_OFF, priority=1, config=OfferConfig(flat_amount=500))
        snapshot = factory.snapshot(offer_rules=[flat, yopo])

        resolution = resolver.resolve(factory.pricing_context(
            factory.calculation_input(yopo_eligible=True), snapshot))

        assert resolution.winner.rule_code == "YOPO"
        assert by_code(resolution.evaluations)["FLAT500"].reason == "superseded by YOPO"

    def test_combo_price_above_cart_is_skipped(self, resolver, combo_snapshot_records):
        """Test a combo dearer than the cart is not applied."""
        snapshot = factory.snapshot(combo_tiers=[factory.combo_tier("GOLD", 6000)], **combo_snapshot_records)

        resolution = resolver.resolve(factory.pricing_context(factory.calculation_input(), snapshot))

        assert resolution.winner is None
        assert by_code(resolution.evaluations)["GOLD"].reason == "combo price exceeds cart"

    def test_combo_uses_linked_rule_code(self, resolver, combo_snapshot_records):
        """Test a tier linked to an offer rule reports the rule code."""
        rule = factory.offer_rule("COMBO-BRONZE", OfferType.COMBO_PRICE)
        snapshot = factory.snapshot(
            offer_rules=[rule],
            combo_tiers=[factory.combo_tier("BRONZE", 2999, offer_rule_id=rule.id)],
            **combo_snapshot_records
        )

        resolution = resolver.resolve(factory.pricing_context(factory.calculation_input(), snapshot))

        assert resolution.winner.rule_code == "COMBO-BRONZE"
        assert resolution.winner.label == "Bronze Combo: ₹2999"

    def test_no_rules_no_winner(self, resolver):
        """Test an empty snapshot resolves to no primary offer."""
        resolution = resolver.resolve(factory.pricing_context(factory.calculation_input(), factory.snapshot()))

        assert resolution.winner is None
        assert resolution.evaluations == []

    def test_combo_strategy_ignores_lens_only(self, combo_snapshot_records):
        """Test combos need both a frame and a lens."""
        snapshot = factory.snapshot(combo_tiers=[factory.combo_tier("BRONZE", 999)], **combo_snapshot_records)
        ctx = factory.pricing_context(factory.calculation_input(mode=CalculationMode.ONLY_LENS), snapshot)

        assert not ComboTierStrategy().evaluate(ctx).applicable
