"""
Rule repository for the Offers Service.

The repository owns the rule records of every organization. Typed write
methods validate against what is already stored; ``load_snapshot``
returns one immutable view of an organization for a calculation.
"""

import asyncio
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, NamedTuple, Optional, Tuple
from enum import Enum
from pathlib import Path

import yaml

from shared.errors import ConfigurationConflict, NotFoundError
from shared.logging import get_logger

from .models import (
    CategoryDiscount,
    ComboTier,
    Coupon,
    FrameBrand,
    LensBrand,
    LensSku,
    OfferRule,
    Organization,
    PowerBand,
    RecordModel,
    RuleSnapshot,
    RxAddOnBand,
    StoreOfferMap,
    normalize_coupon_code,
    utcnow,
)
from .validation import (
    validate_category_discount,
    validate_combo_tier,
    validate_coupon,
    validate_offer_rule,
    validate_power_band,
)


class RecordKind(str, Enum):
    """Record families stored per organization."""
    FRAME_BRAND = "frame_brand"
    LENS_BRAND = "lens_brand"
    LENS_SKU = "lens_sku"
    POWER_BAND = "power_band"
    RX_ADD_ON_BAND = "rx_add_on_band"
    OFFER_RULE = "offer_rule"
    CATEGORY_DISCOUNT = "category_discount"
    COMBO_TIER = "combo_tier"
    STORE_OFFER_MAP = "store_offer_map"


# kind -> (model, snapshot field, seed file key)
RECORD_TYPES: Dict[RecordKind, Tuple[type, str, str]] = {
    RecordKind.FRAME_BRAND: (FrameBrand, "frame_brands", "frameBrands"),
    RecordKind.LENS_BRAND: (LensBrand, "lens_brands", "lensBrands"),
    RecordKind.LENS_SKU: (LensSku, "lens_skus", "lensSkus"),
    RecordKind.POWER_BAND: (PowerBand, "power_bands", "powerBands"),
    RecordKind.RX_ADD_ON_BAND: (RxAddOnBand, "rx_add_on_bands", "rxAddOnBands"),
    RecordKind.OFFER_RULE: (OfferRule, "offer_rules", "offerRules"),
    RecordKind.CATEGORY_DISCOUNT: (CategoryDiscount, "category_discounts", "categoryDiscounts"),
    RecordKind.COMBO_TIER: (ComboTier, "combo_tiers", "comboTiers"),
    RecordKind.STORE_OFFER_MAP: (StoreOfferMap, "store_offer_maps", "storeOfferMaps"),
}


def record_key(kind: RecordKind, record: RecordModel) -> str:
    """Natural key of a record within its organization."""
    if kind == RecordKind.FRAME_BRAND:
        return record.code.upper()
    if kind == RecordKind.LENS_BRAND:
        return record.name.upper()
    if kind == RecordKind.LENS_SKU:
        return record.it_code
    if kind == RecordKind.COMBO_TIER:
        return record.combo_code
    if kind == RecordKind.STORE_OFFER_MAP:
        return f"{record.store_id}:{record.offer_rule_id}"
    return record.id


class RedemptionOutcome(str, Enum):
    COMMITTED = "committed"
    ALREADY_COMMITTED = "already_committed"
    EXHAUSTED = "exhausted"


class Redemption(NamedTuple):
    outcome: RedemptionOutcome
    used_count: Optional[int] = None


class RuleRepository(ABC):
    """Storage contract shared by the in-memory and PostgreSQL backends."""

    async def start(self):
        """Open connections. Nothing to do by default."""

    async def stop(self):
        """Release connections. Nothing to do by default."""

    @abstractmethod
    async def get_organization(self, organization_id: str) -> Optional[Organization]:
        """Organization record, or None."""

    @abstractmethod
    async def save_organization(self, organization: Organization) -> None:
        """Create or update an organization."""

    @abstractmethod
    async def list_records(self, organization_id: str, kind: RecordKind) -> List[Any]:
        """All records of one kind for an organization."""

    @abstractmethod
    async def put_record(self, organization_id: str, kind: RecordKind, record: RecordModel) -> None:
        """Store a record under its natural key, replacing any previous one."""

    @abstractmethod
    async def list_coupons(self, organization_id: str) -> List[Coupon]:
        """All coupons of an organization."""

    @abstractmethod
    async def insert_coupon(self, coupon: Coupon) -> None:
        """Store a new coupon."""

    @abstractmethod
    async def get_coupon(self, organization_id: str, code: str) -> Optional[Coupon]:
        """Current coupon row, bypassing any cache."""

    @abstractmethod
    async def has_redemption(self, coupon_id: str, order_id: str) -> bool:
        """Whether the order already consumed the coupon."""

    @abstractmethod
    async def redeem_coupon(self, coupon_id: str, order_id: str) -> Redemption:
        """Atomically record the order and bump used_count while the usage limit allows.

        The increment is conditional on the limit only, so concurrent orders
        never fail each other while uses remain. ``used_count`` is the value
        after the increment when committed.
        """

    @abstractmethod
    async def generation(self, organization_id: str) -> int:
        """Counter bumped on every write of the organization."""

    async def health_check(self) -> bool:
        return True

    async def load_snapshot(self, organization_id: str) -> RuleSnapshot:
        """Read every record of the organization into one snapshot."""
        organization = await self.get_organization(organization_id)
        generation = await self.generation(organization_id)
        fields: Dict[str, Any] = {}
        for kind, (_, field_name, _) in RECORD_TYPES.items():
            fields[field_name] = await self.list_records(organization_id, kind)
        fields["coupons"] = await self.list_coupons(organization_id)
        return RuleSnapshot(
            organization=organization,
            organization_id=organization_id,
            generation=generation,
            loaded_at=utcnow(),
            **fields,
        )

    async def _require_organization(self, organization_id: str) -> None:
        if await self.get_organization(organization_id) is None:
            raise NotFoundError(f"Organization {organization_id} not found", {"organizationId": organization_id})

    async def add_frame_brand(self, organization_id: str, brand: FrameBrand) -> FrameBrand:
        await self._require_organization(organization_id)
        await self.put_record(organization_id, RecordKind.FRAME_BRAND, brand)
        return brand

    async def add_lens_brand(self, organization_id: str, brand: LensBrand) -> LensBrand:
        await self._require_organization(organization_id)
        await self.put_record(organization_id, RecordKind.LENS_BRAND, brand)
        return brand

    async def add_lens_sku(self, organization_id: str, sku: LensSku) -> LensSku:
        await self._require_organization(organization_id)
        await self.put_record(organization_id, RecordKind.LENS_SKU, sku)
        return sku

    async def add_power_band(self, organization_id: str, band: PowerBand) -> PowerBand:
        await self._require_organization(organization_id)
        validate_power_band(band, await self.list_records(organization_id, RecordKind.POWER_BAND))
        await self.put_record(organization_id, RecordKind.POWER_BAND, band)
        return band

    async def add_rx_add_on_band(self, organization_id: str, band: RxAddOnBand) -> RxAddOnBand:
        await self._require_organization(organization_id)
        existing = await self.list_records(organization_id, RecordKind.RX_ADD_ON_BAND)
        if any(other.id == band.id for other in existing):
            raise ConfigurationConflict("DUPLICATE_RECORD", f"Add-on band {band.id} already exists", {"bandId": band.id})
        await self.put_record(organization_id, RecordKind.RX_ADD_ON_BAND, band)
        return band

    async def add_offer_rule(self, rule: OfferRule) -> OfferRule:
        await self._require_organization(rule.organization_id)
        validate_offer_rule(rule, await self.list_records(rule.organization_id, RecordKind.OFFER_RULE))
        await self.put_record(rule.organization_id, RecordKind.OFFER_RULE, rule)
        return rule

    async def add_category_discount(self, row: CategoryDiscount) -> CategoryDiscount:
        await self._require_organization(row.organization_id)
        validate_category_discount(row, await self.list_records(row.organization_id, RecordKind.CATEGORY_DISCOUNT))
        await self.put_record(row.organization_id, RecordKind.CATEGORY_DISCOUNT, row)
        return row

    async def add_coupon(self, coupon: Coupon) -> Coupon:
        await self._require_organization(coupon.organization_id)
        validate_coupon(coupon, await self.list_coupons(coupon.organization_id))
        await self.insert_coupon(coupon)
        return coupon

    async def add_combo_tier(self, tier: ComboTier) -> ComboTier:
        await self._require_organization(tier.organization_id)
        validate_combo_tier(
            tier,
            await self.list_records(tier.organization_id, RecordKind.COMBO_TIER),
            await self.list_records(tier.organization_id, RecordKind.OFFER_RULE),
        )
        await self.put_record(tier.organization_id, RecordKind.COMBO_TIER, tier)
        return tier

    async def replace_combo_tier(self, combo_code: str, tier: ComboTier) -> ComboTier:
        existing = await self.list_records(tier.organization_id, RecordKind.COMBO_TIER)
        if not any(other.combo_code == combo_code.strip().upper() for other in existing):
            raise NotFoundError(f"Combo tier {combo_code} not found", {"comboCode": combo_code})
        validate_combo_tier(
            tier,
            existing,
            await self.list_records(tier.organization_id, RecordKind.OFFER_RULE),
            replacing=combo_code,
        )
        await self.put_record(tier.organization_id, RecordKind.COMBO_TIER, tier)
        return tier

    async def set_store_activation(self, organization_id: str, mapping: StoreOfferMap) -> StoreOfferMap:
        rules = await self.list_records(organization_id, RecordKind.OFFER_RULE)
        if not any(rule.id == mapping.offer_rule_id for rule in rules):
            raise NotFoundError(f"Offer rule {mapping.offer_rule_id} not found",
                                {"offerRuleId": mapping.offer_rule_id})
        await self.put_record(organization_id, RecordKind.STORE_OFFER_MAP, mapping)
        return mapping

    async def load_seed(self, path: str) -> int:
        """Load organizations and their records from a YAML file. Returns the record count."""
        raw = await asyncio.to_thread(Path(path).read_text, encoding="utf-8")
        document = yaml.safe_load(raw) or {}
        count = 0
        for entry in document.get("organizations", []):
            organization = Organization.model_validate(entry)
            await self.save_organization(organization)
            org_id = organization.id

            for kind, (model, _, seed_key) in RECORD_TYPES.items():
                for item in entry.get(seed_key, []):
                    record = model.model_validate({"organizationId": org_id, **item})
                    await self.add_record(org_id, kind, record)
                    count += 1
            for item in entry.get("coupons", []):
                await self.add_coupon(Coupon.model_validate({"organizationId": org_id, **item}))
                count += 1
        return count

    async def add_record(self, organization_id: str, kind: RecordKind, record: RecordModel) -> None:
        """Add a record through the validated write path of its kind."""
        adders = {
            RecordKind.POWER_BAND: lambda: self.add_power_band(organization_id, record),
            RecordKind.RX_ADD_ON_BAND: lambda: self.add_rx_add_on_band(organization_id, record),
            RecordKind.OFFER_RULE: lambda: self.add_offer_rule(record),
            RecordKind.CATEGORY_DISCOUNT: lambda: self.add_category_discount(record),
            RecordKind.COMBO_TIER: lambda: self.add_combo_tier(record),
            RecordKind.STORE_OFFER_MAP: lambda: self.set_store_activation(organization_id, record),
        }
        adder = adders.get(kind)
        if adder is None:
            await self.put_record(organization_id, kind, record)
        else:
            await adder()


class InMemoryRuleRepository(RuleRepository):
    """Process-local repository used for development, tests and the simulator CLI."""

    def __init__(self):
        self.logger = get_logger("offers.repository.memory")
        self._lock = threading.Lock()
        self._organizations: Dict[str, Organization] = {}
        self._records: Dict[Tuple[str, RecordKind], Dict[str, RecordModel]] = {}
        self._coupons: Dict[Tuple[str, str], Coupon] = {}
        self._redemptions: set = set()
        self._generations: Dict[str, int] = {}

    def _bump(self, organization_id: str) -> None:
        self._generations[organization_id] = self._generations.get(organization_id, 0) + 1

    async def load_snapshot(self, organization_id: str) -> RuleSnapshot:
        # One lock hold so a concurrent write cannot split the snapshot
        with self._lock:
            fields: Dict[str, Any] = {
                field_name: list(self._records.get((organization_id, kind), {}).values())
                for kind, (_, field_name, _) in RECORD_TYPES.items()
            }
            fields["coupons"] = [
                coupon for (org_id, _), coupon in self._coupons.items() if org_id == organization_id
            ]
            return RuleSnapshot(
                organization=self._organizations.get(organization_id),
                organization_id=organization_id,
                generation=self._generations.get(organization_id, 0),
                loaded_at=utcnow(),
                **fields,
            )

    async def get_organization(self, organization_id: str) -> Optional[Organization]:
        with self._lock:
            return self._organizations.get(organization_id)

    async def save_organization(self, organization: Organization) -> None:
        with self._lock:
            self._organizations[organization.id] = organization
            self._bump(organization.id)

    async def list_records(self, organization_id: str, kind: RecordKind) -> List[Any]:
        with self._lock:
            return list(self._records.get((organization_id, kind), {}).values())

    async def put_record(self, organization_id: str, kind: RecordKind, record: RecordModel) -> None:
        with self._lock:
            self._records.setdefault((organization_id, kind), {})[record_key(kind, record)] = record
            self._bump(organization_id)

    async def list_coupons(self, organization_id: str) -> List[Coupon]:
        with self._lock:
            return [coupon for (org_id, _), coupon in self._coupons.items() if org_id == organization_id]

    async def insert_coupon(self, coupon: Coupon) -> None:
        with self._lock:
            key = (coupon.organization_id, coupon.code)
            if key in self._coupons:
                raise ConfigurationConflict("DUPLICATE_COUPON_CODE", f'Coupon "{coupon.code}" already exists',
                                            {"code": coupon.code})
            self._coupons[key] = coupon
            self._bump(coupon.organization_id)

    async def get_coupon(self, organization_id: str, code: str) -> Optional[Coupon]:
        with self._lock:
            return self._coupons.get((organization_id, normalize_coupon_code(code)))

    async def has_redemption(self, coupon_id: str, order_id: str) -> bool:
        with self._lock:
            return (coupon_id, order_id) in self._redemptions

    async def redeem_coupon(self, coupon_id: str, order_id: str) -> Redemption:
        with self._lock:
            key = next((key for key, coupon in self._coupons.items() if coupon.id == coupon_id), None)
            if key is None:
                return Redemption(RedemptionOutcome.EXHAUSTED)
            coupon = self._coupons[key]
            if (coupon_id, order_id) in self._redemptions:
                return Redemption(RedemptionOutcome.ALREADY_COMMITTED, coupon.used_count)
            if coupon.exhausted:
                return Redemption(RedemptionOutcome.EXHAUSTED, coupon.used_count)
            used_count = coupon.used_count + 1
            self._coupons[key] = coupon.model_copy(update={"used_count": used_count})
            self._redemptions.add((coupon_id, order_id))
            self._bump(coupon.organization_id)
            return Redemption(RedemptionOutcome.COMMITTED, used_count)

    async def generation(self, organization_id: str) -> int:
        with self._lock:
            return self._generations.get(organization_id, 0)
