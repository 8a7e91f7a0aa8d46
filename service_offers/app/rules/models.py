"""
Rule and catalog records for the Offers Service.

Records are configured by admins and read-only during a calculation. They
are validated when they enter the system (admin write, YAML seed, database
row) so the pricing code can rely on their invariants.
"""

from typing import Annotated, Any, Dict, List, Optional
from datetime import datetime, timezone
from enum import Enum

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDateTime = Annotated[datetime, AfterValidator(_as_utc)]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OfferType(str, Enum):
    """Offer rule types."""
    COMBO_PRICE = "COMBO_PRICE"
    YOPO = "YOPO"
    FREE_LENS = "FREE_LENS"
    PERCENT_OFF = "PERCENT_OFF"
    FLAT_OFF = "FLAT_OFF"
    BOGO = "BOGO"
    BOG50 = "BOG50"
    BONUS_FREE_PRODUCT = "BONUS_FREE_PRODUCT"


SECOND_PAIR_OFFER_TYPES = (OfferType.BOGO, OfferType.BOG50)
GENERIC_OFFER_TYPES = (OfferType.FREE_LENS, OfferType.PERCENT_OFF, OfferType.FLAT_OFF)


class CustomerCategory(str, Enum):
    """Customer categories eligible for category discounts."""
    STUDENT = "STUDENT"
    DOCTOR = "DOCTOR"
    TEACHER = "TEACHER"
    ARMED_FORCES = "ARMED_FORCES"
    SENIOR_CITIZEN = "SENIOR_CITIZEN"
    CORPORATE = "CORPORATE"
    REGULAR = "REGULAR"


class DiscountType(str, Enum):
    """Coupon discount types."""
    PERCENTAGE = "PERCENTAGE"
    FLAT_AMOUNT = "FLAT_AMOUNT"


class AppliesTo(str, Enum):
    """Which part of the cart a percent rule discounts."""
    ALL = "ALL"
    FRAME_ONLY = "FRAME_ONLY"
    LENS_ONLY = "LENS_ONLY"


class FreeUnderYopo(str, Enum):
    """Which item a YOPO rule makes free."""
    BEST_OF = "BEST_OF"
    FRAME = "FRAME"
    LENS = "LENS"


class FreeLensRule(str, Enum):
    """How much of the lens a FREE_LENS rule covers."""
    FULL = "FULL"
    PERCENT_OF_FRAME = "PERCENT_OF_FRAME"
    VALUE_LIMIT = "VALUE_LIMIT"


class BenefitType(str, Enum):
    """Combo benefit types."""
    FRAME = "frame"
    LENS = "lens"
    EYEWEAR = "eyewear"
    ADDON = "addon"
    VOUCHER = "voucher"


class ComboRuleType(str, Enum):
    """Eligibility predicates a combo tier may carry."""
    REQUIRE_FRAME_BRAND_COMBO_ALLOWED = "REQUIRE_FRAME_BRAND_COMBO_ALLOWED"
    FRAME_BRANDS = "FRAME_BRANDS"
    LENS_BRAND_LINES = "LENS_BRAND_LINES"
    LENS_SKUS = "LENS_SKUS"
    MAX_FRAME_MRP = "MAX_FRAME_MRP"
    MAX_LENS_PRICE = "MAX_LENS_PRICE"
    MAX_NEEDS_LEVEL = "MAX_NEEDS_LEVEL"
    SECOND_EYEWEAR = "SECOND_EYEWEAR"


class SecondEyewearPolicy(str, Enum):
    """How many second-eyewear options a combo tier allows."""
    EXACTLY_ONE = "EXACTLY_ONE"
    BOTH = "BOTH"


class RecordModel(BaseModel):
    """Base for persisted records: camelCase on the wire, immutable in memory."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class Organization(RecordModel):
    id: str
    name: str = ""
    is_active: bool = True


class FrameSubBrand(RecordModel):
    code: str
    combo_allowed: bool = True


class FrameBrand(RecordModel):
    code: str
    name: Optional[str] = None
    combo_allowed: bool = False
    sub_brands: List[FrameSubBrand] = Field(default_factory=list)

    def sub_brand(self, code: Optional[str]) -> Optional[FrameSubBrand]:
        if not code:
            return None
        for sub in self.sub_brands:
            if sub.code.upper() == code.upper():
                return sub
        return None


class LensBrand(RecordModel):
    name: str
    combo_allowed: bool = False
    is_active: bool = True


class LensSku(RecordModel):
    it_code: str
    lens_id: str
    brand_line: str
    name: Optional[str] = None
    base_price: Optional[float] = Field(default=None, ge=0)
    combo_allowed: bool = False
    yopo_eligible: bool = False
    is_active: bool = True


class PowerBand(RecordModel):
    """Half-open power interval [min_power, max_power) with a surcharge."""

    id: str
    lens_id: str
    min_power: float
    max_power: float
    extra_charge: float = Field(ge=0)
    is_active: bool = True

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.min_power >= self.max_power:
            raise ValueError("minPower must be less than maxPower")
        return self

    def contains(self, power: float) -> bool:
        return self.min_power <= power < self.max_power

    def overlaps(self, other: "PowerBand") -> bool:
        return self.min_power < other.max_power and self.max_power > other.min_power


class RxAddOnBand(RecordModel):
    """Prescription add-on surcharge. Unset bounds match any value."""

    id: str
    lens_id: str
    sph_min: Optional[float] = None
    sph_max: Optional[float] = None
    cyl_min: Optional[float] = None
    cyl_max: Optional[float] = None
    add_min: Optional[float] = None
    add_max: Optional[float] = None
    extra_charge: int = Field(ge=0)
    is_active: bool = True

    @model_validator(mode="after")
    def _check_ranges(self):
        bounds = (self.sph_min, self.sph_max, self.cyl_min, self.cyl_max, self.add_min, self.add_max)
        if all(bound is None for bound in bounds):
            raise ValueError("at least one of the SPH, CYL or ADD ranges must be set")
        if self.sph_min is not None and self.sph_max is not None and self.sph_min >= self.sph_max:
            raise ValueError("sphMin must be less than sphMax")
        if self.cyl_min is not None and self.cyl_max is not None and abs(self.cyl_min) >= abs(self.cyl_max):
            raise ValueError("cylMin must be smaller in magnitude than cylMax")
        if self.add_min is not None and self.add_max is not None and self.add_min >= self.add_max:
            raise ValueError("addMin must be less than addMax")
        return self

    def label(self) -> str:
        parts = []
        for name, low, high in (
            ("SPH", self.sph_min, self.sph_max),
            ("CYL", self.cyl_min, self.cyl_max),
            ("ADD", self.add_min, self.add_max),
        ):
            if low is not None and high is not None:
                parts.append(f"{name} {low:g} to {high:g}")
            elif low is not None:
                parts.append(f"{name} ≥ {low:g}")
            elif high is not None:
                parts.append(f"{name} ≤ {high:g}")
        return " + ".join(parts) or "Any Power"


class OfferConfig(RecordModel):
    """Type-specific knobs of an offer rule."""

    discount_percent: Optional[float] = Field(default=None, ge=0, le=100)
    flat_amount: Optional[float] = Field(default=None, ge=0)
    min_bill_value: Optional[float] = Field(default=None, ge=0)
    applies_to: AppliesTo = AppliesTo.ALL
    free_under_yopo: FreeUnderYopo = FreeUnderYopo.BEST_OF
    free_lens_rule: FreeLensRule = FreeLensRule.FULL
    percent_limit: float = Field(default=0.4, ge=0)
    value_limit: Optional[float] = Field(default=None, ge=0)
    second_pair_percent: float = Field(default=50.0, ge=0, le=100)
    trigger_min_bill: Optional[float] = Field(default=None, ge=0)
    eligible_brands: List[str] = Field(default_factory=list)
    eligible_categories: List[str] = Field(default_factory=list)
    bonus_category: Optional[str] = None
    bonus_limit: Optional[float] = Field(default=None, ge=0)


class OfferRule(RecordModel):
    """An organization-level offer competing for the cart."""

    id: str
    code: str
    organization_id: str
    offer_type: OfferType
    title: Optional[str] = None
    priority: int = 100
    is_active: bool = True
    created_at: UtcDateTime = Field(default_factory=utcnow)
    frame_brands: List[str] = Field(default_factory=list)
    frame_sub_categories: List[str] = Field(default_factory=list)
    lens_brand_lines: List[str] = Field(default_factory=list)
    contact_lens_brands: List[str] = Field(default_factory=list)
    min_frame_mrp: Optional[float] = Field(default=None, alias="minFrameMRP", ge=0)
    max_frame_mrp: Optional[float] = Field(default=None, alias="maxFrameMRP", ge=0)
    start_date: Optional[UtcDateTime] = None
    end_date: Optional[UtcDateTime] = None
    config: OfferConfig = Field(default_factory=OfferConfig)
    upsell_enabled: bool = False
    upsell_threshold: Optional[float] = Field(default=None, gt=0)
    upsell_reward_text: Optional[str] = None

    @model_validator(mode="after")
    def _check_ranges(self):
        if self.min_frame_mrp is not None and self.max_frame_mrp is not None \
                and self.min_frame_mrp > self.max_frame_mrp:
            raise ValueError("minFrameMRP must not exceed maxFrameMRP")
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("startDate must not be after endDate")
        return self

    def is_live(self, now: datetime) -> bool:
        """Active and inside its validity window."""
        if not self.is_active:
            return False
        if self.start_date and now < self.start_date:
            return False
        if self.end_date and now > self.end_date:
            return False
        return True

    def sort_key(self):
        return (self.priority, self.created_at, self.code)


class CategoryDiscount(RecordModel):
    id: str
    organization_id: str
    customer_category: CustomerCategory
    brand_code: str = "*"
    discount_percent: float = Field(ge=0, le=100)
    max_discount: Optional[float] = Field(default=None, ge=0)
    is_active: bool = True
    verification_required: bool = False
    allowed_id_types: List[str] = Field(default_factory=list)


class Coupon(RecordModel):
    id: str
    organization_id: str
    code: str
    description: Optional[str] = None
    discount_type: DiscountType
    discount_value: float = Field(gt=0)
    min_cart_value: Optional[float] = Field(default=None, ge=0)
    max_discount: Optional[float] = Field(default=None, ge=0)
    usage_limit: Optional[int] = Field(default=None, ge=0)
    used_count: int = Field(default=0, ge=0)
    valid_from: UtcDateTime
    valid_until: Optional[UtcDateTime] = None
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def _normalize_code(cls, value: str) -> str:
        return normalize_coupon_code(value)

    @model_validator(mode="after")
    def _check_discount(self):
        if self.discount_type == DiscountType.PERCENTAGE and self.discount_value > 100:
            raise ValueError("percentage coupons cannot exceed 100")
        return self

    @property
    def exhausted(self) -> bool:
        return self.usage_limit is not None and self.used_count >= self.usage_limit


def normalize_coupon_code(code: str) -> str:
    return code.strip().upper()


class ComboBenefit(RecordModel):
    benefit_type: BenefitType
    label: str
    max_value: Optional[float] = Field(default=None, ge=0)
    constraints: Dict[str, Any] = Field(default_factory=dict)


class ComboRule(RecordModel):
    """Eligibility predicate of a combo tier.

    ``values`` carries brand, brand-line or SKU lists, ``limit`` the
    numeric caps, ``policy`` the second-eyewear choice and ``enabled``
    switches REQUIRE_FRAME_BRAND_COMBO_ALLOWED.
    """

    rule_type: ComboRuleType
    values: List[str] = Field(default_factory=list)
    limit: Optional[float] = None
    policy: Optional[SecondEyewearPolicy] = None
    enabled: bool = True

    @model_validator(mode="after")
    def _check_shape(self):
        list_rules = (ComboRuleType.FRAME_BRANDS, ComboRuleType.LENS_BRAND_LINES, ComboRuleType.LENS_SKUS)
        limit_rules = (ComboRuleType.MAX_FRAME_MRP, ComboRuleType.MAX_LENS_PRICE, ComboRuleType.MAX_NEEDS_LEVEL)
        if self.rule_type in list_rules and not self.values:
            raise ValueError(f"{self.rule_type.value} requires a non-empty values list")
        if self.rule_type in limit_rules and self.limit is None:
            raise ValueError(f"{self.rule_type.value} requires a limit")
        if self.rule_type == ComboRuleType.SECOND_EYEWEAR and self.policy is None:
            raise ValueError("SECOND_EYEWEAR requires a policy")
        return self


class ComboTier(RecordModel):
    id: str
    organization_id: str
    combo_code: str
    display_name: str
    effective_price: float = Field(ge=0)
    total_combo_value: Optional[float] = Field(default=None, ge=0)
    badge: Optional[str] = None
    sort_order: int = 0
    is_active: bool = True
    offer_rule_id: Optional[str] = None
    benefits: List[ComboBenefit] = Field(default_factory=list)
    rules: List[ComboRule] = Field(default_factory=list)

    @field_validator("combo_code")
    @classmethod
    def _normalize_code(cls, value: str) -> str:
        return value.strip().upper()

    def rules_of(self, rule_type: ComboRuleType) -> List[ComboRule]:
        return [rule for rule in self.rules if rule.rule_type == rule_type]


class StoreOfferMap(RecordModel):
    store_id: str
    offer_rule_id: str
    is_active: bool = True
    activated_at: Optional[UtcDateTime] = None
    deactivated_at: Optional[UtcDateTime] = None


class RuleSnapshot(RecordModel):
    """Every record of one organization as loaded at one point in time.

    A calculation reads exactly one snapshot, so it never mixes rule data
    from two cache generations.
    """

    organization: Optional[Organization] = None
    organization_id: str
    generation: int = 0
    loaded_at: UtcDateTime = Field(default_factory=utcnow)
    frame_brands: List[FrameBrand] = Field(default_factory=list)
    lens_brands: List[LensBrand] = Field(default_factory=list)
    lens_skus: List[LensSku] = Field(default_factory=list)
    power_bands: List[PowerBand] = Field(default_factory=list)
    rx_add_on_bands: List[RxAddOnBand] = Field(default_factory=list)
    offer_rules: List[OfferRule] = Field(default_factory=list)
    category_discounts: List[CategoryDiscount] = Field(default_factory=list)
    coupons: List[Coupon] = Field(default_factory=list)
    combo_tiers: List[ComboTier] = Field(default_factory=list)
    store_offer_maps: List[StoreOfferMap] = Field(default_factory=list)

    @property
    def organization_valid(self) -> bool:
        return self.organization is not None and self.organization.is_active

    def frame_brand(self, code: Optional[str]) -> Optional[FrameBrand]:
        if not code:
            return None
        for brand in self.frame_brands:
            if brand.code.upper() == code.upper():
                return brand
        return None

    def lens_brand(self, name: Optional[str]) -> Optional[LensBrand]:
        if not name:
            return None
        for brand in self.lens_brands:
            if brand.name.upper() == name.upper():
                return brand
        return None

    def lens_sku(self, it_code: Optional[str]) -> Optional[LensSku]:
        if not it_code:
            return None
        for sku in self.lens_skus:
            if sku.it_code == it_code and sku.is_active:
                return sku
        return None

    def bands_for(self, lens_id: str) -> List[PowerBand]:
        return [band for band in self.power_bands if band.lens_id == lens_id and band.is_active]

    def add_on_bands_for(self, lens_id: str) -> List[RxAddOnBand]:
        return [band for band in self.rx_add_on_bands if band.lens_id == lens_id and band.is_active]

    def coupon(self, code: str) -> Optional[Coupon]:
        normalized = normalize_coupon_code(code)
        for coupon in self.coupons:
            if coupon.code == normalized:
                return coupon
        return None

    def rules_of_type(self, *offer_types: OfferType) -> List[OfferRule]:
        rules = [rule for rule in self.offer_rules if rule.offer_type in offer_types]
        return sorted(rules, key=OfferRule.sort_key)

    def offer_rule(self, rule_id: Optional[str]) -> Optional[OfferRule]:
        for rule in self.offer_rules:
            if rule.id == rule_id:
                return rule
        return None

    def active_combo_tiers(self) -> List[ComboTier]:
        tiers = [tier for tier in self.combo_tiers if tier.is_active]
        return sorted(tiers, key=lambda tier: (tier.sort_order, tier.combo_code))

    def combo_tier(self, combo_code: Optional[str]) -> Optional[ComboTier]:
        if not combo_code:
            return None
        code = combo_code.strip().upper()
        for tier in self.combo_tiers:
            if tier.combo_code == code:
                return tier
        return None

    def store_permits(self, store_id: Optional[str], offer_rule_id: Optional[str]) -> bool:
        """Whether a store may use an org-level rule.

        No store means org-level use. An explicit map row decides for its
        rule. Without a row the rule is allowed only when the store has not
        opted into an explicit activation list.
        """
        if not store_id or not offer_rule_id:
            return True
        store_rows = [row for row in self.store_offer_maps if row.store_id == store_id]
        for row in store_rows:
            if row.offer_rule_id == offer_rule_id:
                return row.is_active
        return not any(row.is_active for row in store_rows)


class PowerBandRequest(RecordModel):
    """Admin write of one power band for a lens."""

    organization_id: str
    id: Optional[str] = None
    min_power: float
    max_power: float
    extra_charge: float = Field(ge=0)
    is_active: bool = True


class RxAddOnBandRequest(RecordModel):
    """Admin write of one prescription add-on band for a lens."""

    organization_id: str
    id: Optional[str] = None
    sph_min: Optional[float] = None
    sph_max: Optional[float] = None
    cyl_min: Optional[float] = None
    cyl_max: Optional[float] = None
    add_min: Optional[float] = None
    add_max: Optional[float] = None
    extra_charge: int = Field(ge=0)
    is_active: bool = True
