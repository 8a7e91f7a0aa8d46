"""
Offers service for the optical offers platform.
"""

import time
import uuid
from typing import Any, Dict, Optional, Type
from datetime import datetime

from fastapi import HTTPException
from pydantic import BaseModel, ValidationError as PydanticValidationError

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import NotFoundError, OffersPlatformException, ValidationError
from shared.observability import get_observability_manager

from .cache.redis_cache import RedisCache
from .cache.snapshot_cache import SnapshotCache
from .persistence.postgres import PostgresRuleRepository
from .pricing.catalog import BandCoverage, BandPowerBasis
from .pricing.combo import ComboEligibility, ComboSelection, UpgradeAdvisor
from .pricing.commit import CouponCommitService
from .pricing.engine import OfferEngine
from .pricing.models import (
    ComboSelectionRequest,
    ComboSelectionResponse,
    CouponCommitRequest,
    CouponCommitResponse,
    OfferCalculationInput,
    OfferCalculationResult,
    OfferSimulationResult,
)
from .rules.models import (
    CategoryDiscount,
    ComboTier,
    Coupon,
    FrameBrand,
    LensBrand,
    LensSku,
    OfferRule,
    Organization,
    PowerBand,
    PowerBandRequest,
    RxAddOnBand,
    RxAddOnBandRequest,
    StoreOfferMap,
)
from .rules.provider import RuleSnapshotProvider
from .rules.repository import InMemoryRuleRepository, RuleRepository


def _build(model: Type[BaseModel], data: Dict[str, Any]):
    """Validate a record assembled inside a route."""
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {model.__name__}",
            {"errors": e.errors(include_url=False, include_context=False, include_input=False)}
        )


class OffersService(BaseService):
    """Offers service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, repository: Optional[RuleRepository] = None):
        super().__init__("offers", 8020, config or get_config("offers", 8020))

        # Initialize observability
        self.observability = get_observability_manager(
            "offers",
            log_level=self.config.log_level,
            otel_exporter=self.config.otel_exporter if self.config.enable_tracing else None,
            enable_console=self.config.enable_console_tracing
        )

        # Initialize components
        self.repository = repository or self._create_repository()
        self.redis_cache = (
            RedisCache(self.config.redis_url, self.config.redis_snapshot_ttl_seconds)
            if self.config.enable_redis_cache else None
        )
        self.provider = RuleSnapshotProvider(
            self.repository,
            local_cache=SnapshotCache(self.config.snapshot_ttl_seconds),
            redis_cache=self.redis_cache,
            metrics=self.metrics
        )
        self.engine = OfferEngine(
            power_basis=BandPowerBasis(self.config.band_power_basis),
            band_coverage=BandCoverage(self.config.band_coverage),
            proximity_window=self.config.upsell_proximity_window,
            currency=self.config.currency_symbol
        )
        self.coupon_commits = CouponCommitService(
            self.repository,
            max_attempts=self.config.coupon_commit_max_attempts,
            metrics=self.metrics
        )

        self._setup_offers_routes()

    def _create_repository(self) -> RuleRepository:
        if self.config.rules_backend == "postgres":
            return PostgresRuleRepository(self.config.postgres_dsn)
        if self.config.rules_backend != "memory":
            raise ValueError(f"Unknown rules backend: {self.config.rules_backend}")
        return InMemoryRuleRepository()

    async def _run_pricing(self, operation: str, request: OfferCalculationInput):
        start_time = time.time()
        self.observability.trace_request(
            organization_id=request.organization_id,
            store_id=request.store_id
        )
        try:
            with self.observability.trace_operation(operation, organization_id=request.organization_id):
                snapshot = await self.provider.get(request.organization_id)
                if operation == "simulate":
                    response = self.engine.simulate(request, snapshot)
                    result = response.result
                else:
                    response = self.engine.calculate(request, snapshot)
                    result = response

            self.metrics.record_calculation("ok", time.time() - start_time, operation=operation)
            self.observability.log_business_event(
                "offer_calculated",
                operation=operation,
                organization_id=request.organization_id,
                final_payable=result.final_payable,
                offers_applied=len(result.offers_applied),
                snapshot_generation=snapshot.generation
            )
            return response

        except OffersPlatformException:
            self.metrics.record_calculation("rejected", time.time() - start_time, operation=operation)
            raise
        except Exception as e:
            self.metrics.record_calculation("error", time.time() - start_time, operation=operation)
            self.observability.log_error("offer_calculation_error", str(e), operation=operation)
            raise HTTPException(status_code=500, detail="Internal server error")
        finally:
            self.observability.clear_request_context()

    async def _after_write(self, organization_id: str, kind: str, key: str):
        await self.provider.invalidate(organization_id)
        self.observability.log_business_event(
            "offer_config_changed",
            organization_id=organization_id,
            kind=kind,
            key=key
        )

    def _setup_offers_routes(self):
        """Set up offers-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "offers",
                "message": "Optical Offers Platform - Offers Service",
                "version": "1.0.0",
                "capabilities": ["offer_engine", "combo_tiers", "coupons", "snapshot_cache"]
            }

        @self.app.post("/offers/calculate", response_model=OfferCalculationResult)
        async def calculate_offers(request: OfferCalculationInput):
            """Price a cart and apply the best offers."""
            return await self._run_pricing("calculate", request)

        @self.app.post("/offers/simulate", response_model=OfferSimulationResult)
        async def simulate_offers(request: OfferCalculationInput):
            """Price a cart and explain every candidate rule."""
            return await self._run_pricing("simulate", request)

        @self.app.post("/combo/validate-selection", response_model=ComboSelectionResponse)
        async def validate_combo_selection(request: ComboSelectionRequest):
            """Check a selection against a combo tier and suggest an upgrade."""
            snapshot = await self.provider.get(request.organization_id)
            if not snapshot.organization_valid:
                raise ValidationError(
                    f"Unknown organization {request.organization_id}",
                    {"organizationId": request.organization_id}
                )
            tier = snapshot.combo_tier(request.combo_code)
            if tier is None or not tier.is_active:
                raise NotFoundError(f"Combo tier {request.combo_code} not found", {"comboCode": request.combo_code})

            sku = snapshot.lens_sku(request.lens_it_code)
            selection = ComboSelection(
                frame_brand=request.frame_brand,
                frame_sub_category=request.frame_sub_category,
                frame_mrp=request.frame_mrp,
                sun_brand=request.sun_brand,
                lens_it_code=request.lens_it_code,
                lens_price=sku.base_price if sku else None,
                needs_level=request.needs_profile.level if request.needs_profile else 0,
                store_id=request.store_id,
            )
            eligibility = ComboEligibility(snapshot)
            check = eligibility.evaluate(tier, selection)
            upgrade = UpgradeAdvisor(snapshot, eligibility).advise(tier, selection)
            return ComboSelectionResponse(
                eligible=check.eligible,
                combo_code=tier.combo_code,
                blocked_items=check.blocked_items,
                reason_code=check.reason,
                upgrade=upgrade,
            )

        @self.app.post("/coupons/commit", response_model=CouponCommitResponse)
        async def commit_coupon(request: CouponCommitRequest):
            """Consume one coupon use for a confirmed order."""
            response = await self.coupon_commits.commit(
                request.organization_id,
                request.coupon_code,
                request.order_id
            )
            if not response.already_committed:
                await self._after_write(request.organization_id, "coupon_usage", response.coupon_code)
            return response

        @self.app.post("/admin/organizations", status_code=201)
        async def create_organization(organization: Organization):
            """Register or update an organization."""
            await self.repository.save_organization(organization)
            await self._after_write(organization.id, "organization", organization.id)
            return organization.model_dump(by_alias=True)

        @self.app.post("/admin/organizations/{organization_id}/frame-brands", status_code=201)
        async def add_frame_brand(organization_id: str, brand: FrameBrand):
            """Add or replace a frame brand."""
            await self.repository.add_frame_brand(organization_id, brand)
            await self._after_write(organization_id, "frame_brand", brand.code)
            return brand.model_dump(by_alias=True)

        @self.app.post("/admin/organizations/{organization_id}/lens-brands", status_code=201)
        async def add_lens_brand(organization_id: str, brand: LensBrand):
            """Add or replace a lens brand line."""
            await self.repository.add_lens_brand(organization_id, brand)
            await self._after_write(organization_id, "lens_brand", brand.name)
            return brand.model_dump(by_alias=True)

        @self.app.post("/admin/organizations/{organization_id}/lens-skus", status_code=201)
        async def add_lens_sku(organization_id: str, sku: LensSku):
            """Add or replace a lens SKU."""
            await self.repository.add_lens_sku(organization_id, sku)
            await self._after_write(organization_id, "lens_sku", sku.it_code)
            return sku.model_dump(by_alias=True)

        @self.app.post("/admin/organizations/{organization_id}/store-activations", status_code=201)
        async def set_store_activation(organization_id: str, mapping: StoreOfferMap):
            """Activate or deactivate an offer rule at a store."""
            await self.repository.set_store_activation(organization_id, mapping)
            await self._after_write(organization_id, "store_offer_map", f"{mapping.store_id}:{mapping.offer_rule_id}")
            return mapping.model_dump(by_alias=True)

        @self.app.post("/admin/offer-rules", status_code=201)
        async def add_offer_rule(rule: OfferRule):
            """Add an offer rule."""
            await self.repository.add_offer_rule(rule)
            await self._after_write(rule.organization_id, "offer_rule", rule.code)
            return rule.model_dump(by_alias=True)

        @self.app.post("/admin/lenses/{lens_id}/band-pricing", status_code=201)
        async def add_band_pricing(lens_id: str, request: PowerBandRequest):
            """Add a power band to a lens; overlapping bands are rejected."""
            data = request.model_dump(exclude={"organization_id", "id"})
            band = _build(PowerBand, {**data, "id": request.id or str(uuid.uuid4()), "lens_id": lens_id})
            await self.repository.add_power_band(request.organization_id, band)
            await self._after_write(request.organization_id, "power_band", band.id)
            return band.model_dump(by_alias=True)

        @self.app.post("/admin/lenses/{lens_id}/power-addon-pricing", status_code=201)
        async def add_power_addon_pricing(lens_id: str, request: RxAddOnBandRequest):
            """Add a prescription add-on band to a lens."""
            data = request.model_dump(exclude={"organization_id", "id"})
            band = _build(RxAddOnBand, {**data, "id": request.id or str(uuid.uuid4()), "lens_id": lens_id})
            await self.repository.add_rx_add_on_band(request.organization_id, band)
            await self._after_write(request.organization_id, "rx_add_on_band", band.id)
            return {**band.model_dump(by_alias=True), "label": band.label()}

        @self.app.post("/admin/category-discounts", status_code=201)
        async def add_category_discount(row: CategoryDiscount):
            """Add a category discount; one row per (category, brand)."""
            await self.repository.add_category_discount(row)
            await self._after_write(row.organization_id, "category_discount", row.id)
            return row.model_dump(by_alias=True)

        @self.app.post("/admin/combo-tiers", status_code=201)
        async def add_combo_tier(tier: ComboTier):
            """Add a combo tier."""
            await self.repository.add_combo_tier(tier)
            await self._after_write(tier.organization_id, "combo_tier", tier.combo_code)
            return tier.model_dump(by_alias=True)

        @self.app.put("/admin/combo-tiers/{combo_code}")
        async def replace_combo_tier(combo_code: str, tier: ComboTier):
            """Replace a combo tier; its code cannot change."""
            await self.repository.replace_combo_tier(combo_code, tier)
            await self._after_write(tier.organization_id, "combo_tier", tier.combo_code)
            return tier.model_dump(by_alias=True)

        @self.app.post("/admin/coupons", status_code=201)
        async def add_coupon(coupon: Coupon):
            """Add a coupon; codes are unique per organization."""
            await self.repository.add_coupon(coupon)
            await self._after_write(coupon.organization_id, "coupon", coupon.code)
            return coupon.model_dump(by_alias=True)

        @self.app.post("/offers/cache/invalidate/{organization_id}")
        async def invalidate_cache(organization_id: str):
            """Drop cached rule snapshots of an organization."""
            removed = await self.provider.invalidate(organization_id)
            return {"organizationId": organization_id, "removed": removed}

        @self.app.get("/offers/stats")
        async def get_stats():
            """Get offers service statistics."""
            try:
                redis_stats = await self.redis_cache.get_cache_stats() if self.redis_cache else None
                return {
                    "backend": self.config.rules_backend,
                    "snapshot_cache": self.provider.local_cache.stats(),
                    "redis": redis_stats,
                    "settings": {
                        "band_power_basis": self.config.band_power_basis,
                        "band_coverage": self.config.band_coverage,
                        "upsell_proximity_window": self.config.upsell_proximity_window,
                        "coupon_commit_max_attempts": self.config.coupon_commit_max_attempts
                    },
                    "timestamp": datetime.now().isoformat()
                }

            except Exception as e:
                self.logger.error("Error getting stats", error=str(e))
                raise HTTPException(status_code=500, detail="Internal server error")

    async def _check_dependencies(self):
        """Check offers service dependencies."""
        dependencies = {}

        try:
            if await self.repository.health_check():
                dependencies[self.config.rules_backend] = "ok"
            else:
                dependencies[self.config.rules_backend] = "error"
        except Exception:
            dependencies[self.config.rules_backend] = "error"

        if self.redis_cache is not None:
            try:
                if await self.redis_cache.health_check():
                    dependencies["redis"] = "ok"
                else:
                    dependencies["redis"] = "error"
            except Exception:
                dependencies["redis"] = "error"

        return dependencies

    async def start(self):
        """Start offers service components."""
        await self.repository.start()
        if self.redis_cache is not None:
            await self.redis_cache.start()

        records = 0
        if self.config.rules_seed_file:
            records = await self.repository.load_seed(self.config.rules_seed_file)

        self.logger.info("Offers service started", backend=self.config.rules_backend, seeded_records=records)

    async def stop(self):
        """Stop offers service components."""
        await self.repository.stop()
        if self.redis_cache is not None:
            await self.redis_cache.stop()

        self.logger.info("Offers service stopped")


def create_app():
    """Create offers service application."""
    service = OffersService()
    return service.app


if __name__ == "__main__":
    service = OffersService()
    service.run()
