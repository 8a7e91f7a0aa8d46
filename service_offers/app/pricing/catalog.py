"""
Catalog lookup and price composition.

Band pricing picks at most one half-open band for the lens; add-on pricing
sums every matching closed-interval row. The asymmetry is deliberate.
"""

from typing import List, Optional, Tuple
from dataclasses import dataclass, field
from enum import Enum

from shared.errors import ValidationError
from shared.logging import get_logger

from ..rules.models import LensSku, PowerBand, RuleSnapshot, RxAddOnBand
from .models import (
    CalculationMode,
    LensInput,
    OfferCalculationInput,
    OtherItemType,
    PrescriptionInput,
    PricedCart,
    PriceComponent,
    RxAddOnCharge,
)


class BandPowerBasis(str, Enum):
    """Which prescription value selects a power band."""
    SIGNED_SPHERE = "signed_sphere"
    ABSOLUTE_TOTAL = "absolute_total"


class BandCoverage(str, Enum):
    """What happens when bands exist for a lens but none contains the power."""
    OPTIONAL = "optional"
    REQUIRED = "required"


def band_power(rx: PrescriptionInput, basis: BandPowerBasis = BandPowerBasis.SIGNED_SPHERE) -> float:
    """Power used for band lookup.

    SIGNED_SPHERE takes the sphere of the eye with the larger absolute
    sphere (right eye on ties). ABSOLUTE_TOTAL takes the larger |sph|+|cyl|.
    """
    r_sph, l_sph = rx.r_sph or 0.0, rx.l_sph or 0.0
    if basis == BandPowerBasis.ABSOLUTE_TOTAL:
        return max(abs(r_sph) + abs(rx.r_cyl or 0.0), abs(l_sph) + abs(rx.l_cyl or 0.0))
    return r_sph if abs(r_sph) >= abs(l_sph) else l_sph


def worse_eye(rx: PrescriptionInput) -> Tuple[float, float]:
    """(sph, cyl) of the eye with the larger |sph|+|cyl|, right eye on ties."""
    r_sph, r_cyl = rx.r_sph or 0.0, rx.r_cyl or 0.0
    l_sph, l_cyl = rx.l_sph or 0.0, rx.l_cyl or 0.0
    if abs(r_sph) + abs(r_cyl) >= abs(l_sph) + abs(l_cyl):
        return r_sph, r_cyl
    return l_sph, l_cyl


def add_on_matches(band: RxAddOnBand, sph: float, cyl: float, add: float) -> bool:
    if band.sph_min is not None and sph < band.sph_min:
        return False
    if band.sph_max is not None and sph > band.sph_max:
        return False
    magnitude = abs(cyl)
    if band.cyl_min is not None and magnitude < abs(band.cyl_min):
        return False
    if band.cyl_max is not None and magnitude > abs(band.cyl_max):
        return False
    if band.add_min is not None and add < band.add_min:
        return False
    if band.add_max is not None and add > band.add_max:
        return False
    return True


@dataclass
class LensPricing:
    base_price: float
    band: Optional[PowerBand] = None
    band_surcharge: float = 0.0
    add_on_charges: List[RxAddOnCharge] = field(default_factory=list)
    sku: Optional[LensSku] = None


class CatalogLookup:
    """Resolves a lens and prescription into a priced lens."""

    def __init__(self, power_basis: BandPowerBasis = BandPowerBasis.SIGNED_SPHERE,
                 coverage: BandCoverage = BandCoverage.OPTIONAL):
        self.power_basis = power_basis
        self.coverage = coverage
        self.logger = get_logger("offers.catalog")

    def match_band(self, bands: List[PowerBand], power: float) -> Optional[PowerBand]:
        matches = [band for band in bands if band.contains(power)]
        if not matches:
            return None
        if len(matches) > 1:
            # Write-time validation should make this unreachable
            self.logger.warning(
                "Overlapping power bands matched",
                power=power,
                band_ids=[band.id for band in matches]
            )
            matches.sort(key=lambda band: (band.min_power, band.id))
        return matches[0]

    def match_add_ons(self, bands: List[RxAddOnBand], rx: PrescriptionInput) -> List[RxAddOnCharge]:
        sph, cyl = worse_eye(rx)
        add = rx.add or 0.0
        return [
            RxAddOnCharge(band_id=band.id, label=band.label(), charge=float(band.extra_charge))
            for band in bands
            if add_on_matches(band, sph, cyl, add)
        ]

    def price_lens(self, lens: LensInput, rx: Optional[PrescriptionInput],
                   snapshot: RuleSnapshot) -> LensPricing:
        sku = snapshot.lens_sku(lens.it_code)
        pricing = LensPricing(base_price=lens.price, sku=sku)
        if sku is None or rx is None:
            return pricing

        bands = snapshot.bands_for(sku.lens_id)
        if bands:
            power = band_power(rx, self.power_basis)
            band = self.match_band(bands, power)
            if band is not None:
                pricing.band = band
                pricing.band_surcharge = band.extra_charge
            elif self.coverage == BandCoverage.REQUIRED:
                raise ValidationError(
                    f"No power band of lens {lens.it_code} covers power {power:g}",
                    {"itCode": lens.it_code, "power": power}
                )

        pricing.add_on_charges = self.match_add_ons(snapshot.add_on_bands_for(sku.lens_id), rx)
        return pricing


class PriceComposer:
    """Combines priced items into the pre-discount cart."""

    def compose(self, request: OfferCalculationInput, mode: CalculationMode,
                lens_pricing: Optional[LensPricing]) -> PricedCart:
        frame_mrp = request.frame.mrp if request.frame and mode == CalculationMode.FRAME_AND_LENS else 0.0
        if mode == CalculationMode.CONTACT_LENS_ONLY:
            lens_pricing = None

        cart = PricedCart(
            mode=mode,
            frame_mrp=frame_mrp,
            base_lens_price=lens_pricing.base_price if lens_pricing else 0.0,
            band_surcharge=lens_pricing.band_surcharge if lens_pricing else 0.0,
            add_on_charges=list(lens_pricing.add_on_charges) if lens_pricing else [],
            other_items_total=sum(item.final_price for item in request.other_items),
        )

        if frame_mrp:
            cart.components.append(PriceComponent(label="Frame MRP", amount=frame_mrp))
        if lens_pricing:
            cart.components.append(PriceComponent(label="Lens Offer Price", amount=lens_pricing.base_price))
            if lens_pricing.band is not None and lens_pricing.band_surcharge:
                cart.components.append(PriceComponent(
                    label="Power Band Surcharge",
                    amount=lens_pricing.band_surcharge,
                    meta={
                        "bandId": lens_pricing.band.id,
                        "minPower": lens_pricing.band.min_power,
                        "maxPower": lens_pricing.band.max_power,
                    },
                ))
            for charge in lens_pricing.add_on_charges:
                cart.components.append(PriceComponent(label=f"Rx Add-on: {charge.label}", amount=charge.charge))
        for item in request.other_items:
            kind = "Contact Lens" if item.type == OtherItemType.CONTACT_LENS else "Accessory"
            name = item.name or item.brand or kind
            cart.components.append(PriceComponent(
                label=f"{kind}: {name} x{item.quantity}",
                amount=item.final_price,
            ))
        return cart
