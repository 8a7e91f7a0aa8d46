"""
Integration tests for the offer flow over the demo rule set.
"""

import pytest
from fastapi.testclient import TestClient

from shared.config import get_config
from shared.test_helpers import DEMO_RULES_PATH

from service_offers.app.main import OffersService

DEMO_ORG = "org-demo"


def cart(frame_brand="LENSKART", frame_mrp=2000, it_code="BX-156", lens_price=2000,
         brand_line="BLUEXPERT", **fields):
    payload = {
        "organizationId": DEMO_ORG,
        "frame": {"brand": frame_brand, "mrp": frame_mrp},
        "lens": {"itCode": it_code, "price": lens_price, "brandLine": brand_line},
    }
    payload.update(fields)
    return payload


class TestOfferFlow:
    """Integration tests from seed load to coupon commit."""

    @pytest.fixture
    def client(self):
        """Offers service seeded from the demo rules file."""
        config = get_config("offers", 8020, rules_seed_file=DEMO_RULES_PATH)
        service = OffersService(config=config)
        with TestClient(service.app) as client:
            yield client

    def test_bronze_combo(self, client):
        """Test a combo-eligible selection is priced at the Bronze price."""
        response = client.post("/offers/calculate", json=cart())

        assert response.status_code == 200
        data = response.json()
        assert data["baseTotal"] == 4000
        assert data["comboTier"] == "BRONZE"
        assert data["finalPayable"] == 2999

    def test_store_deactivation_blocks_combo(self, client):
        """Test a store that switched Bronze off pays the full price."""
        response = client.post("/offers/calculate", json=cart(storeId="store-airport"))

        data = response.json()
        assert data["comboTier"] is None
        assert data["finalPayable"] == 4000

    def test_priority_then_category_then_coupon(self, client):
        """Test the layered flow on a cart outside every combo."""
        response = client.post("/offers/calculate", json=cart(
            frame_brand="VINCENT", frame_mrp=3000, it_code="BX-167", lens_price=3500,
            customerCategory="STUDENT",
            customerIdProof={"idType": "STUDENT_ID"},
            couponCode="welcome10",
        ))

        data = response.json()
        assert data["baseTotal"] == 6500
        assert data["comboTier"] is None
        assert data["offersApplied"][0]["ruleCode"] == "FLAT500"
        assert data["categoryDiscount"]["savings"] == 300
        assert data["couponDiscount"]["savings"] == 400
        assert data["finalPayable"] == 5300

    def test_unverified_student(self, client):
        """Test a student without an accepted ID keeps the price and gets a reason."""
        response = client.post("/offers/calculate", json=cart(
            frame_brand="VINCENT", frame_mrp=3000, it_code="BX-167", lens_price=3500,
            customerCategory="STUDENT",
        ))

        data = response.json()
        assert data["categoryDiscount"] is None
        assert data["categoryDiscountError"] == (
            "STUDENT discount requires ID verification (accepted: STUDENT_ID, COLLEGE_ID)")

    def test_band_surcharge_and_yopo(self, client):
        """Test a band surcharge feeds the YOPO best-of price."""
        response = client.post("/offers/calculate", json=cart(
            frame_brand="RAYBAN", frame_mrp=1500,
            lens={"itCode": "BX-156", "price": 2000, "brandLine": "BLUEXPERT", "yopoEligible": True},
            prescription={"rSph": -4, "lSph": -4},
        ))

        data = response.json()
        assert data["bandSurcharge"] == 200
        assert data["lensPrice"] == 2200
        assert data["offersApplied"][0]["ruleCode"] == "YOPO-BLUEXPERT"
        assert data["finalPayable"] == 2200

    def test_simulate_lists_every_primary_rule(self, client):
        """Test the simulator reports each competing rule."""
        response = client.post("/offers/simulate", json=cart())

        codes = {view["ruleCode"] for view in response.json()["evaluations"]}
        assert {"COMBO-BRONZE", "COMBO-SILVER", "YOPO-BLUEXPERT", "FLAT500", "VINCENT15"} <= codes

    def test_upgrade_from_bronze(self, client):
        """Test a frame above the Bronze cap is pointed at Silver."""
        response = client.post("/combo/validate-selection", json={
            "organizationId": DEMO_ORG,
            "comboCode": "BRONZE",
            "frameBrand": "LENSKART",
            "frameMRP": 3500,
            "lensItCode": "BX-156",
        })

        data = response.json()
        assert data["eligible"] is False
        assert data["upgrade"]["toTier"] == "SILVER"

    def test_single_use_coupon(self, client):
        """Test a single-use coupon is spent by the first order."""
        first = client.post("/coupons/commit", json={
            "organizationId": DEMO_ORG, "couponCode": "LAUNCH1", "orderId": "order-100"})
        second = client.post("/coupons/commit", json={
            "organizationId": DEMO_ORG, "couponCode": "LAUNCH1", "orderId": "order-101"})
        priced = client.post("/offers/calculate", json=cart(couponCode="LAUNCH1"))

        assert first.status_code == 200
        assert second.status_code == 409
        assert second.json()["code"] == "COUPON_USAGE_EXHAUSTED"
        assert priced.json()["couponDiscount"] is None
        assert priced.json()["couponError"] is not None
