"""
Unit tests for the in-memory rule repository and write-time validation.
"""

import pytest

from shared.errors import ConfigurationConflict, NotFoundError
from shared.test_helpers import DEMO_RULES_PATH, ORG_ID, OffersDataFactory as factory, populate_repository

from service_offers.app.rules.models import CustomerCategory, OfferType
from service_offers.app.rules.repository import InMemoryRuleRepository, RecordKind, RedemptionOutcome


class TestPowerBandValidation:
    """Test cases for power band writes."""

    @pytest.fixture
    def repository(self):
        """Create InMemoryRuleRepository instance."""
        return InMemoryRuleRepository()

    @pytest.mark.asyncio
    async def test_overlapping_band_rejected(self, repository):
        """Test a band overlapping an existing one is rejected."""
        await populate_repository(repository, power_bands=[factory.power_band(-6, -2)])

        with pytest.raises(ConfigurationConflict) as exc_info:
            await repository.add_power_band(ORG_ID, factory.power_band(-4, 0))

        assert exc_info.value.code == "BAND_OVERLAP"
        assert exc_info.value.details["conflictingBandId"] == "band--6--2"

    @pytest.mark.asyncio
    async def test_nested_band_rejected(self, repository):
        """Test a band inside an existing one is rejected."""
        await populate_repository(repository, power_bands=[factory.power_band(-10, -2)])

        with pytest.raises(ConfigurationConflict):
            await repository.add_power_band(ORG_ID, factory.power_band(-6, -4))

    @pytest.mark.asyncio
    async def test_adjacent_bands_allowed(self, repository):
        """Test half-open bands may share a boundary."""
        await populate_repository(repository, power_bands=[factory.power_band(-6, -2)])

        await repository.add_power_band(ORG_ID, factory.power_band(-10, -6))
        await repository.add_power_band(ORG_ID, factory.power_band(-2, 2))

        assert len(await repository.list_records(ORG_ID, RecordKind.POWER_BAND)) == 3

    @pytest.mark.asyncio
    async def test_other_lens_and_inactive_bands_ignored(self, repository):
        """Test overlap is only checked between active bands of one lens."""
        await populate_repository(repository, power_bands=[factory.power_band(-6, -2)])

        await repository.add_power_band(ORG_ID, factory.power_band(-6, -2, band_id="other-lens", lens_id="lens-dp"))
        await repository.add_power_band(ORG_ID, factory.power_band(-5, -3, band_id="inactive", is_active=False))

        assert len(await repository.list_records(ORG_ID, RecordKind.POWER_BAND)) == 3

    @pytest.mark.asyncio
    async def test_unknown_organization(self, repository):
        """Test writes to an unregistered organization fail."""
        with pytest.raises(NotFoundError):
            await repository.add_power_band("org-missing", factory.power_band(-6, -2))


class TestRuleValidation:
    """Test cases for offer, category, coupon and combo writes."""

    @pytest.fixture
    def repository(self):
        """Create InMemoryRuleRepository instance."""
        return InMemoryRuleRepository()

    @pytest.mark.asyncio
    async def test_duplicate_coupon_code(self, repository):
        """Test coupon codes are unique per organization after normalization."""
        await populate_repository(repository, coupons=[factory.coupon("FLAT50OFF")])

        with pytest.raises(ConfigurationConflict) as exc_info:
            await repository.add_coupon(factory.coupon(" flat50off ").model_copy(update={"id": "coupon-2"}))

        assert exc_info.value.code == "DUPLICATE_COUPON_CODE"

    @pytest.mark.asyncio
    async def test_same_coupon_code_in_other_organization(self, repository):
        """Test another organization may reuse a coupon code."""
        await populate_repository(repository, coupons=[factory.coupon("FLAT50OFF")])
        await populate_repository(repository, organization_id="org-other",
                                  coupons=[factory.coupon("FLAT50OFF", organization_id="org-other")])

        assert await repository.get_coupon("org-other", "flat50off") is not None

    @pytest.mark.asyncio
    async def test_duplicate_category_discount(self, repository):
        """Test (category, brand) rows are unique."""
        await populate_repository(repository, category_discounts=[factory.category_discount()])

        with pytest.raises(ConfigurationConflict) as exc_info:
            await repository.add_category_discount(
                factory.category_discount(discount_percent=20).model_copy(update={"id": "cat-2"}))
        await repository.add_category_discount(factory.category_discount(brand_code="RAYBAN"))

        assert exc_info.value.code == "DUPLICATE_CATEGORY_DISCOUNT"

    @pytest.mark.asyncio
    async def test_duplicate_offer_code(self, repository):
        """Test offer rule codes are unique."""
        await populate_repository(repository, offer_rules=[factory.offer_rule("FLAT500", OfferType.FLAT_OFF)])

        with pytest.raises(ConfigurationConflict):
            await repository.add_offer_rule(
                factory.offer_rule("FLAT500", OfferType.FLAT_OFF).model_copy(update={"id": "rule-2"}))

    @pytest.mark.asyncio
    async def test_combo_code_unique_and_immutable(self, repository):
        """Test combo codes cannot be duplicated or renamed."""
        await populate_repository(repository, combo_tiers=[factory.combo_tier("BRONZE", 2999)])

        with pytest.raises(ConfigurationConflict) as duplicate:
            await repository.add_combo_tier(factory.combo_tier("bronze", 1999))
        with pytest.raises(ConfigurationConflict) as renamed:
            await repository.replace_combo_tier("BRONZE", factory.combo_tier("GOLD", 2999))

        assert duplicate.value.code == "DUPLICATE_COMBO_CODE"
        assert renamed.value.code == "COMBO_CODE_IMMUTABLE"

    @pytest.mark.asyncio
    async def test_replace_combo_tier(self, repository):
        """Test a tier can be updated under its own code."""
        await populate_repository(repository, combo_tiers=[factory.combo_tier("BRONZE", 2999)])

        await repository.replace_combo_tier("bronze", factory.combo_tier("BRONZE", 2499))
        tiers = await repository.list_records(ORG_ID, RecordKind.COMBO_TIER)

        assert [tier.effective_price for tier in tiers] == [2499]

    @pytest.mark.asyncio
    async def test_replace_missing_combo_tier(self, repository):
        """Test replacing an unknown tier fails."""
        await populate_repository(repository)

        with pytest.raises(NotFoundError):
            await repository.replace_combo_tier("GOLD", factory.combo_tier("GOLD", 2999))

    @pytest.mark.asyncio
    async def test_combo_linked_rule_must_be_combo(self, repository):
        """Test a tier can only link a COMBO_PRICE rule."""
        flat = factory.offer_rule("FLAT500", OfferType.FLAT_OFF)
        await populate_repository(repository, offer_rules=[flat])

        with pytest.raises(ConfigurationConflict) as exc_info:
            await repository.add_combo_tier(factory.combo_tier("BRONZE", 2999, offer_rule_id=flat.id))
        with pytest.raises(NotFoundError):
            await repository.add_combo_tier(factory.combo_tier("SILVER", 4499, offer_rule_id="rule-missing"))

        assert exc_info.value.code == "INVALID_COMBO_RULE"

    @pytest.mark.asyncio
    async def test_store_activation_needs_rule(self, repository):
        """Test store activation of an unknown rule fails."""
        await populate_repository(repository)

        with pytest.raises(NotFoundError):
            await repository.set_store_activation(ORG_ID, factory.store_map("store-1", "rule-missing"))


class TestSnapshotsAndRedemptions:
    """Test cases for snapshots, generations and coupon redemption."""

    @pytest.fixture
    def repository(self):
        """Create InMemoryRuleRepository instance."""
        return InMemoryRuleRepository()

    @pytest.mark.asyncio
    async def test_generation_bumps_on_write(self, repository):
        """Test every write moves the generation forward."""
        await populate_repository(repository)
        before = await repository.generation(ORG_ID)

        await repository.add_category_discount(factory.category_discount(CustomerCategory.DOCTOR))
        snapshot = await repository.load_snapshot(ORG_ID)

        assert snapshot.generation == before + 1
        assert snapshot.category_discounts[0].customer_category == CustomerCategory.DOCTOR

    @pytest.mark.asyncio
    async def test_snapshot_of_unknown_organization(self, repository):
        """Test an unknown organization gives an empty snapshot."""
        snapshot = await repository.load_snapshot("org-missing")

        assert snapshot.organization is None
        assert not snapshot.organization_valid
        assert snapshot.generation == 0

    @pytest.mark.asyncio
    async def test_redeem_coupon(self, repository):
        """Test limit-conditional redemption outcomes."""
        coupon = factory.coupon(usage_limit=2)
        await populate_repository(repository, coupons=[coupon])

        first = await repository.redeem_coupon(coupon.id, "order-1")
        repeat = await repository.redeem_coupon(coupon.id, "order-1")
        second = await repository.redeem_coupon(coupon.id, "order-2")
        over_limit = await repository.redeem_coupon(coupon.id, "order-3")
        unknown = await repository.redeem_coupon("coupon-missing", "order-4")

        assert first == (RedemptionOutcome.COMMITTED, 1)
        assert repeat == (RedemptionOutcome.ALREADY_COMMITTED, 1)
        assert second == (RedemptionOutcome.COMMITTED, 2)
        assert over_limit == (RedemptionOutcome.EXHAUSTED, 2)
        assert unknown.outcome == RedemptionOutcome.EXHAUSTED
        assert not await repository.has_redemption(coupon.id, "order-3")
        assert (await repository.get_coupon(ORG_ID, coupon.code)).used_count == 2
        assert await repository.has_redemption(coupon.id, "order-2")

    @pytest.mark.asyncio
    async def test_load_demo_seed(self, repository):
        """Test the demo seed loads through the validated write paths."""
        count = await repository.load_seed(DEMO_RULES_PATH)
        snapshot = await repository.load_snapshot("org-demo")

        assert count == 34
        assert snapshot.organization_valid
        assert len(snapshot.offer_rules) == 8
        assert len(snapshot.coupons) == 3
        assert [tier.combo_code for tier in snapshot.active_combo_tiers()] == ["BRONZE", "SILVER"]
        assert snapshot.frame_brand("lenskart").sub_brand("air-titanium").combo_allowed is False

    @pytest.mark.asyncio
    async def test_demo_seed_cannot_load_twice(self, repository):
        """Test loading the same seed twice trips duplicate checks."""
        await repository.load_seed(DEMO_RULES_PATH)

        with pytest.raises(ConfigurationConflict):
            await repository.load_seed(DEMO_RULES_PATH)
