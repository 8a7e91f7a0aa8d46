"""
Calculation input and result models for the Offers Service.

Wire names are camelCase and must stay stable for the admin simulator and
the POS front end.
"""

from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..rules.models import BenefitType, CustomerCategory, OfferType


class CalculationMode(str, Enum):
    """What the customer is buying."""
    FRAME_AND_LENS = "FRAME_AND_LENS"
    ONLY_LENS = "ONLY_LENS"
    CONTACT_LENS_ONLY = "CONTACT_LENS_ONLY"


class FrameType(str, Enum):
    FULL_RIM = "FULL_RIM"
    HALF_RIM = "HALF_RIM"
    RIMLESS = "RIMLESS"


class OtherItemType(str, Enum):
    CONTACT_LENS = "CONTACT_LENS"
    ACCESSORY = "ACCESSORY"


class ScreenTime(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class LensComplexity(str, Enum):
    BASIC = "BASIC"
    STANDARD = "STANDARD"
    ADVANCED = "ADVANCED"
    PREMIUM = "PREMIUM"


class UpgradeReason(str, Enum):
    BRAND_NOT_ELIGIBLE = "BRAND_NOT_ELIGIBLE"
    LENS_NOT_ELIGIBLE = "LENS_NOT_ELIGIBLE"
    NEEDS_MISMATCH = "NEEDS_MISMATCH"
    BOTH_OPTIONS = "BOTH_OPTIONS"


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FrameInput(ApiModel):
    brand: str = Field(..., min_length=1, description="Frame brand code")
    sub_category: Optional[str] = Field(None, description="Sub-brand code")
    mrp: float = Field(..., gt=0, description="Frame MRP")
    frame_type: Optional[FrameType] = Field(None, description="Rim style")


class LensInput(ApiModel):
    it_code: str = Field(..., min_length=1, description="Lens SKU code")
    price: float = Field(..., gt=0, description="Lens offer price before power surcharges")
    brand_line: str = Field(..., min_length=1, description="Lens brand line")
    yopo_eligible: bool = Field(False, description="Whether the SKU may take YOPO")
    name: Optional[str] = Field(None, description="Display name")


class PrescriptionInput(ApiModel):
    r_sph: Optional[float] = None
    r_cyl: Optional[float] = None
    r_axis: Optional[int] = Field(None, ge=0, le=180)
    l_sph: Optional[float] = None
    l_cyl: Optional[float] = None
    l_axis: Optional[int] = Field(None, ge=0, le=180)
    add: Optional[float] = Field(None, ge=0)


class OtherItem(ApiModel):
    type: OtherItemType = Field(OtherItemType.CONTACT_LENS, description="Line item type")
    brand: Optional[str] = Field(None, description="Brand code")
    name: Optional[str] = Field(None, description="Display name")
    mrp: float = Field(0, ge=0, description="Unit MRP")
    quantity: int = Field(1, ge=1, description="Units")
    final_price: float = Field(..., ge=0, description="Line total")


class SecondPairInput(ApiModel):
    enabled: bool = False
    first_pair_total: Optional[float] = Field(
        None, ge=0, description="Ignored; the first pair is taken after the primary offer"
    )
    second_pair_frame_mrp: Optional[float] = Field(None, alias="secondPairFrameMRP", ge=0)
    second_pair_lens_price: Optional[float] = Field(None, ge=0)
    second_pair_lens_it_code: Optional[str] = Field(None, description="Lens SKU whose Rx add-ons are charged")


class CustomerIdProof(ApiModel):
    id_type: str = Field(..., min_length=1, description="Document type, e.g. STUDENT_ID")
    id_number: Optional[str] = Field(None, description="Document number")


class NeedsProfile(ApiModel):
    screen_time: Optional[ScreenTime] = None
    backup_need: bool = False
    lens_complexity: Optional[LensComplexity] = None

    @property
    def level(self) -> int:
        """0 basic, 1 advanced lens with a backup pair, 2 same with heavy screen use."""
        advanced = self.lens_complexity in (LensComplexity.ADVANCED, LensComplexity.PREMIUM)
        if not (advanced and self.backup_need):
            return 0
        return 2 if self.screen_time == ScreenTime.HIGH else 1


class OfferCalculationInput(ApiModel):
    """Request model for offer calculation."""
    organization_id: str = Field(..., description="Organization ID")
    store_id: Optional[str] = Field(None, description="Store ID for store-level activation")
    mode: Optional[CalculationMode] = Field(None, description="Derived from the items when omitted")
    frame: Optional[FrameInput] = None
    lens: Optional[LensInput] = None
    prescription: Optional[PrescriptionInput] = None
    other_items: List[OtherItem] = Field(default_factory=list)
    customer_category: Optional[CustomerCategory] = None
    customer_id_proof: Optional[CustomerIdProof] = None
    coupon_code: Optional[str] = None
    second_pair: Optional[SecondPairInput] = None
    selected_offer_type: Optional[OfferType] = Field(None, description="Restrict primary candidates to one type")
    selected_combo_code: Optional[str] = Field(None, description="Restrict combo evaluation to one tier")
    needs_profile: Optional[NeedsProfile] = None

    @field_validator("coupon_code")
    @classmethod
    def _blank_coupon_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return value

    def resolved_mode(self) -> CalculationMode:
        if self.mode is not None:
            return self.mode
        if self.frame is None and self.lens is None and self.other_items:
            return CalculationMode.CONTACT_LENS_ONLY
        if self.frame is None and self.lens is not None:
            return CalculationMode.ONLY_LENS
        return CalculationMode.FRAME_AND_LENS


class OfferApplied(ApiModel):
    rule_code: str
    description: str
    savings: float


class PriceComponent(ApiModel):
    label: str
    amount: float
    meta: Optional[Dict[str, Any]] = None


class RxAddOnCharge(ApiModel):
    band_id: str
    label: str
    charge: float


class ComboBenefitApplied(ApiModel):
    benefit_type: BenefitType
    label: str
    max_value: Optional[float] = None
    deferred_credit: bool = False


class BonusProduct(ApiModel):
    rule_code: str
    label: str
    category: Optional[str] = None
    max_value: Optional[float] = None


class UpsellSuggestion(ApiModel):
    type: str = "BONUS_THRESHOLD"
    rule_code: str
    message: str
    reward_text: str
    threshold: float
    remaining: float


class UpgradeSuggestion(ApiModel):
    suggest_upgrade: bool = True
    reason_code: UpgradeReason
    from_tier: str
    to_tier: str
    customer_message: str


class OfferCalculationResult(ApiModel):
    """Response model for offer calculation."""
    frame_mrp: float = Field(0.0, alias="frameMRP")
    lens_price: float = 0.0
    band_surcharge: float = 0.0
    rx_add_on_breakdown: List[RxAddOnCharge] = Field(default_factory=list)
    base_total: float = 0.0
    effective_base: float = 0.0
    offers_applied: List[OfferApplied] = Field(default_factory=list)
    price_components: List[PriceComponent] = Field(default_factory=list)
    combo_tier: Optional[str] = None
    combo_benefits: List[ComboBenefitApplied] = Field(default_factory=list)
    second_pair_discount: Optional[OfferApplied] = None
    available_second_pair_rule: Optional[str] = None
    category_discount: Optional[OfferApplied] = None
    category_discount_error: Optional[str] = None
    coupon_discount: Optional[OfferApplied] = None
    coupon_error: Optional[str] = None
    bonus_product: Optional[BonusProduct] = None
    final_payable: int = 0
    upsell: Optional[UpsellSuggestion] = None


class RuleEvaluationView(ApiModel):
    rule_code: str
    offer_type: OfferType
    applicable: bool
    reason: str
    estimated_savings: float = 0.0


class OfferSimulationResult(ApiModel):
    """Response model for the admin simulator."""
    result: OfferCalculationResult
    evaluations: List[RuleEvaluationView] = Field(default_factory=list)
    snapshot_generation: int


class ComboSelectionRequest(ApiModel):
    """Request model for combo selection validation."""
    organization_id: str
    store_id: Optional[str] = None
    combo_code: str = Field(..., min_length=1)
    frame_brand: Optional[str] = None
    frame_sub_category: Optional[str] = None
    frame_mrp: Optional[float] = Field(None, alias="frameMRP", gt=0)
    sun_brand: Optional[str] = None
    lens_it_code: Optional[str] = None
    needs_profile: Optional[NeedsProfile] = None


class ComboSelectionResponse(ApiModel):
    eligible: bool
    combo_code: str
    blocked_items: List[str] = Field(default_factory=list)
    reason_code: Optional[UpgradeReason] = None
    upgrade: Optional[UpgradeSuggestion] = None


class CouponCommitRequest(ApiModel):
    organization_id: str
    coupon_code: str = Field(..., min_length=1)
    order_id: str = Field(..., min_length=1)


class CouponCommitResponse(ApiModel):
    coupon_code: str
    order_id: str
    used_count: int
    usage_limit: Optional[int] = None
    already_committed: bool = False


@dataclass
class PricedCart:
    """Base cart produced by catalog lookup and price composition."""
    mode: CalculationMode
    frame_mrp: float
    base_lens_price: float
    band_surcharge: float
    add_on_charges: List[RxAddOnCharge] = field(default_factory=list)
    other_items_total: float = 0.0
    components: List[PriceComponent] = field(default_factory=list)

    @property
    def lens_price(self) -> float:
        return self.base_lens_price + self.band_surcharge + sum(charge.charge for charge in self.add_on_charges)

    @property
    def base_total(self) -> float:
        return self.frame_mrp + self.lens_price + self.other_items_total


@dataclass
class RuleEvaluation:
    """Why a candidate primary rule did or did not win."""
    rule_code: str
    offer_type: OfferType
    applicable: bool
    reason: str
    estimated_savings: float = 0.0


@dataclass
class PrimaryOutcome:
    """Result of a primary strategy that fired."""
    rule_code: str
    offer_type: OfferType
    label: str
    new_total: float
    savings: float
    combo_tier: Optional[str] = None
    benefits: List[ComboBenefitApplied] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StrategyOutcome:
    applicable: bool
    result: Optional[PrimaryOutcome] = None
    evaluations: List[RuleEvaluation] = field(default_factory=list)


@dataclass
class PrimaryResolution:
    winner: Optional[PrimaryOutcome]
    evaluations: List[RuleEvaluation] = field(default_factory=list)


def round_money(value: float) -> float:
    """Round to paise, half up."""
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def round_payable(value: float) -> int:
    """Whole currency units, half up, never negative."""
    return max(0, int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)))
