from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class RentSource(str, Enum):
    MANUAL = "manual"
    UNIT_OVERRIDE = "unit_override"
    FLOOR_OVERRIDE = "floor_override"
    BUILDING_POLICY = "building_policy"


class FloorOverride(BaseModel):
    floor: int
    rate_per_sqm: Decimal = Field(ge=0)


class RentPolicy(BaseModel):
    """Building-level pricing formula"""
    base_rate_per_sqm: Decimal = Field(ge=0)
    decrement_per_floor: Decimal = Decimal("0")
    ground_floor_multiplier: Decimal = Decimal("1")
    min_rate_per_sqm: Decimal = Decimal("0")
    floor_overrides: List[FloorOverride] = Field(default_factory=list)


class UnitAttributes(BaseModel):
    floor: Optional[int] = None
    area: Optional[Decimal] = Field(default=None, ge=0)
    rate_per_sqm_override: Optional[Decimal] = Field(default=None, ge=0)
    flat_rent_override: Optional[Decimal] = Field(default=None, ge=0)


class RentQuote(BaseModel):
    applied_rate: Optional[Decimal] = None
    total: Decimal
    source: RentSource
    breakdown: Dict[str, Optional[Decimal]] = Field(default_factory=dict)


class RentQuoteRequest(BaseModel):
    policy: Optional[RentPolicy] = None
    unit: UnitAttributes
