"""
Unit tests for upsell advice.
"""

import pytest

from shared.test_helpers import OffersDataFactory as factory

from service_offers.app.pricing.upsell import UpsellAdvisor
from service_offers.app.rules.models import OfferConfig, OfferType


def upsell_rule(code, threshold, offer_type=OfferType.FLAT_OFF, reward="a flat ₹500 discount", **fields):
    return factory.offer_rule(
        code, offer_type,
        config=OfferConfig(flat_amount=500, min_bill_value=threshold),
        upsell_enabled=True,
        upsell_threshold=threshold,
        upsell_reward_text=reward,
        **fields
    )


class TestUpsellAdvisor:
    """Test cases for UpsellAdvisor."""

    @pytest.fixture
    def advisor(self):
        """Create UpsellAdvisor with a 1000 proximity window."""
        return UpsellAdvisor(proximity_window=1000)

    def context(self, *rules, **request_fields):
        return factory.pricing_context(factory.calculation_input(**request_fields),
                                       factory.snapshot(offer_rules=list(rules)))

    def test_suggests_close_threshold(self, advisor):
        """Test a threshold inside the window produces a suggestion."""
        ctx = self.context(upsell_rule("FLAT500", 6000))

        suggestion = advisor.advise(ctx, 5000)

        assert suggestion.remaining == 1000
        assert suggestion.threshold == 6000
        assert suggestion.type == "ADD_ON_FEATURE"
        assert suggestion.message == "Add ₹1000 more to unlock a flat ₹500 discount"

    def test_far_threshold_is_ignored(self, advisor):
        """Test thresholds beyond the window are not suggested."""
        ctx = self.context(upsell_rule("FLAT500", 6000))

        assert advisor.advise(ctx, 4999) is None

    def test_nearest_threshold_wins(self, advisor):
        """Test the smallest threshold above the payable is suggested."""
        ctx = self.context(upsell_rule("FAR", 6000, priority=1), upsell_rule("NEAR", 5500, priority=50))

        assert advisor.advise(ctx, 5000).rule_code == "NEAR"

    def test_threshold_already_reached(self, advisor):
        """Test nothing is suggested once every threshold is met."""
        ctx = self.context(upsell_rule("FLAT500", 6000))

        assert advisor.advise(ctx, 6000) is None

    def test_bonus_rule_type(self, advisor):
        """Test bonus rules are suggested as free products."""
        rule = upsell_rule("FREE-CASE", 4000, OfferType.BONUS_FREE_PRODUCT, "a free premium case")
        ctx = self.context(rule)

        suggestion = advisor.advise(ctx, 3500)

        assert suggestion.type == "BONUS_FREE_PRODUCT"
        assert suggestion.message == "Add ₹500 more to unlock a free premium case"

    def test_disabled_rule_is_ignored(self, advisor):
        """Test rules without upsell enabled never produce advice."""
        rule = upsell_rule("FLAT500", 6000).model_copy(update={"upsell_enabled": False})

        assert advisor.advise(self.context(rule), 5500) is None

    def test_frame_brand_scope(self, advisor):
        """Test brand-limited thresholds only show for that brand."""
        rule = upsell_rule("RAYBAN500", 6000, frame_brands=["RAYBAN"])

        assert advisor.advise(self.context(rule), 5500) is None
        assert advisor.advise(self.context(rule, frame_brand="RAYBAN"), 5500).rule_code == "RAYBAN500"
