# services/rent_calculator.py - Unit rent pricing from building policy and overrides

from decimal import Decimal
from typing import Optional

from bms_billing.core.exceptions import ValidationError
from bms_billing.core.money import quantize, round_whole
from bms_billing.models.rent import RentPolicy, RentQuote, RentSource, UnitAttributes


def calculate_rent(policy: Optional[RentPolicy], unit: UnitAttributes) -> RentQuote:
    """
    Periodic rent for a unit. First match wins:

    1. flat override on the unit
    2. per-sqm rate override on the unit
    3. floor override from the building policy
    4. building formula ``max(min_rate, (base - decrement * max(0, floor - 1)) * ground_multiplier)``,
       the multiplier applying only on floors 0 and 1

    Totals are rounded to whole currency units.
    """
    if unit.flat_rent_override is not None:
        total = round_whole(unit.flat_rent_override)
        return RentQuote(
            applied_rate=quantize(total / unit.area) if unit.area else None,
            total=total,
            source=RentSource.MANUAL,
            breakdown={"flat_rent_override": unit.flat_rent_override},
        )

    if not unit.area:
        raise ValidationError("Unit area is required to price by rate")

    if unit.rate_per_sqm_override is not None:
        rate = unit.rate_per_sqm_override
        return RentQuote(
            applied_rate=quantize(rate),
            total=round_whole(rate * unit.area),
            source=RentSource.UNIT_OVERRIDE,
            breakdown={"rate_per_sqm_override": rate, "area": unit.area},
        )

    if policy is None:
        raise ValidationError("No rent policy and no unit override")

    floor = unit.floor if unit.floor is not None else 0

    for override in policy.floor_overrides:
        if override.floor == floor:
            return RentQuote(
                applied_rate=quantize(override.rate_per_sqm),
                total=round_whole(override.rate_per_sqm * unit.area),
                source=RentSource.FLOOR_OVERRIDE,
                breakdown={"floor": floor, "floor_rate": override.rate_per_sqm, "area": unit.area},
            )

    floor_adjustment = -policy.decrement_per_floor * max(0, floor - 1)
    multiplier = policy.ground_floor_multiplier if floor in (0, 1) else Decimal("1")
    rate = max(policy.min_rate_per_sqm, (policy.base_rate_per_sqm + floor_adjustment) * multiplier)
    return RentQuote(
        applied_rate=quantize(rate),
        total=round_whole(rate * unit.area),
        source=RentSource.BUILDING_POLICY,
        breakdown={
            "base_rate": policy.base_rate_per_sqm,
            "floor": floor,
            "floor_adjustment": floor_adjustment,
            "ground_multiplier": multiplier,
            "min_rate": policy.min_rate_per_sqm,
            "area": unit.area,
        },
    )


def resolve_rent(policy: Optional[RentPolicy], unit: UnitAttributes) -> Optional[RentQuote]:
    """Like calculate_rent, but None when the unit cannot be priced."""
    try:
        return calculate_rent(policy, unit)
    except ValidationError:
        return None
