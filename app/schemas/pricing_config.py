"""
Pricing configuration model.

A PricingConfig is supplied per scope by the configuration store and is
read-only to the engine. It is validated once on construction and frozen, so
every table the factor evaluators index into is known to be fully populated.
"""
import re
from decimal import Decimal
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.core.enums import LoyaltyTier, VehicleClass

MAX_FRACTION_DISCOUNT = 0.20

_MMDD = re.compile(r"^(0[1-9]|1[0-2])-(0[1-9]|[12][0-9]|3[01])$")


class DemandBreakpoint(BaseModel):
    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    occupancy: float = Field(ge=0.0, le=1.0)
    multiplier: float = Field(gt=0.0)


class SeasonalRule(BaseModel):
    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    name: str = Field(min_length=1, max_length=80)
    start: str  # MM-DD
    end: str  # MM-DD, may wrap past new year
    multiplier: float = Field(gt=0.0, le=5.0)

    @field_validator("start", "end")
    @classmethod
    def _check_mmdd(cls, v: str) -> str:
        if not _MMDD.match(v):
            raise ValueError(f"expected MM-DD, got {v!r}")
        return v

    def covers(self, mmdd: str) -> bool:
        if self.start <= self.end:
            return self.start <= mmdd <= self.end
        return mmdd >= self.start or mmdd <= self.end


DEFAULT_HOURLY_MULTIPLIERS = [
    0.70, 0.70, 0.70, 0.70, 0.70, 0.80,  # 00-05 overnight
    0.90, 1.20, 1.30, 1.10, 1.00, 1.00,  # 06-11 morning rush
    1.00, 1.00, 1.00, 1.10, 1.30, 1.30,  # 12-17 afternoon rush
    1.20, 1.10, 1.00, 0.90, 0.80, 0.70,  # 18-23 evening
]

# index 0 = Sunday
DEFAULT_DAY_OF_WEEK_MULTIPLIERS = [1.25, 1.00, 1.00, 1.00, 1.05, 1.15, 1.30]

DEFAULT_DEMAND_CURVE = [
    DemandBreakpoint(occupancy=0.00, multiplier=0.85),
    DemandBreakpoint(occupancy=0.40, multiplier=1.00),
    DemandBreakpoint(occupancy=0.60, multiplier=1.00),
    DemandBreakpoint(occupancy=0.85, multiplier=1.40),
    DemandBreakpoint(occupancy=1.00, multiplier=1.75),
]

DEFAULT_VEHICLE_SURCHARGES = {
    VehicleClass.STANDARD: 0.00,
    VehicleClass.COMPACT: -0.05,
    VehicleClass.SUV: 0.10,
    VehicleClass.TRUCK: 0.10,
    VehicleClass.LUXURY: 0.25,
    VehicleClass.OVERSIZED: 0.30,
    VehicleClass.EV: -0.05,
}

DEFAULT_SEASONAL_RULES = [
    SeasonalRule(name="Christmas/New Year", start="12-20", end="01-03", multiplier=1.40),
    SeasonalRule(name="Thanksgiving", start="11-22", end="11-30", multiplier=1.35),
    SeasonalRule(name="Independence Day", start="07-01", end="07-07", multiplier=1.25),
    SeasonalRule(name="Spring Break", start="03-10", end="03-25", multiplier=1.20),
    SeasonalRule(name="Labor Day", start="08-29", end="09-05", multiplier=1.20),
    SeasonalRule(name="Memorial Day", start="05-22", end="05-30", multiplier=1.20),
]

DEFAULT_LOYALTY_DISCOUNTS = {
    LoyaltyTier.BRONZE: 0.05,
    LoyaltyTier.SILVER: 0.10,
    LoyaltyTier.GOLD: 0.15,
    LoyaltyTier.PLATINUM: 0.20,
}


class PricingConfig(BaseModel):
    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    base_hourly_rate: Decimal = Field(default=Decimal("5.00"), gt=0, le=10000)
    base_daily_rate: Decimal = Field(default=Decimal("30.00"), gt=0, le=100000)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    tax_rate: float = Field(default=0.0, ge=0.0, le=1.0)

    hourly_multipliers: List[float] = Field(default_factory=lambda: list(DEFAULT_HOURLY_MULTIPLIERS))
    day_of_week_multipliers: List[float] = Field(
        default_factory=lambda: list(DEFAULT_DAY_OF_WEEK_MULTIPLIERS)
    )
    vehicle_surcharges: Dict[VehicleClass, float] = Field(
        default_factory=lambda: dict(DEFAULT_VEHICLE_SURCHARGES)
    )
    demand_curve: List[DemandBreakpoint] = Field(default_factory=lambda: list(DEFAULT_DEMAND_CURVE))
    seasonal_rules: List[SeasonalRule] = Field(default_factory=lambda: list(DEFAULT_SEASONAL_RULES))

    advance_discount_per_day: float = Field(default=0.02, ge=0.0)
    max_advance_discount: float = Field(default=0.20, ge=0.0, le=MAX_FRACTION_DISCOUNT)
    loyalty_discounts: Dict[LoyaltyTier, float] = Field(
        default_factory=lambda: dict(DEFAULT_LOYALTY_DISCOUNTS)
    )

    full_rate_hours: float = Field(default=4.0, gt=0.0)
    duration_floor: float = Field(default=0.40, gt=0.0, le=1.0)

    min_total_multiplier: float = Field(default=0.50, gt=0.0, le=1.0)
    max_total_multiplier: float = Field(default=2.50, ge=1.0, le=10.0)
    smoothing_factor: float = Field(default=0.30, ge=0.0, le=1.0)

    timezone: str = "UTC"
    quote_validity_minutes: int = Field(default=15, gt=0)
    version: int = Field(default=1, ge=1)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v: str) -> str:
        if not v.isalpha():
            raise ValueError("currency must be a 3-letter code")
        return v.upper()

    @field_validator("hourly_multipliers")
    @classmethod
    def _check_hourly(cls, v: List[float]) -> List[float]:
        if len(v) != 24:
            raise ValueError(f"expected 24 hourly multipliers, got {len(v)}")
        return _positive_table(v, "hourly multiplier")

    @field_validator("day_of_week_multipliers")
    @classmethod
    def _check_weekdays(cls, v: List[float]) -> List[float]:
        if len(v) != 7:
            raise ValueError(f"expected 7 day-of-week multipliers, got {len(v)}")
        return _positive_table(v, "day-of-week multiplier")

    @field_validator("vehicle_surcharges")
    @classmethod
    def _check_vehicles(cls, v: Dict[VehicleClass, float]) -> Dict[VehicleClass, float]:
        missing = [c.value for c in VehicleClass if c not in v]
        if missing:
            raise ValueError(f"missing surcharge for vehicle classes: {', '.join(missing)}")
        for vehicle_class, surcharge in v.items():
            if not -1.0 < surcharge <= 5.0:
                raise ValueError(f"surcharge for {vehicle_class} out of range (-1, 5]: {surcharge}")
        return v

    @field_validator("loyalty_discounts")
    @classmethod
    def _check_loyalty(cls, v: Dict[LoyaltyTier, float]) -> Dict[LoyaltyTier, float]:
        missing = [t.value for t in LoyaltyTier if t not in v]
        if missing:
            raise ValueError(f"missing discount for loyalty tiers: {', '.join(missing)}")
        for tier, discount in v.items():
            if not 0.0 <= discount <= MAX_FRACTION_DISCOUNT:
                raise ValueError(f"loyalty discount for {tier} out of range [0, 0.2]: {discount}")
        return v

    @field_validator("demand_curve")
    @classmethod
    def _check_demand_curve(cls, v: List[DemandBreakpoint]) -> List[DemandBreakpoint]:
        if len(v) < 2:
            raise ValueError("demand curve needs at least two breakpoints")
        if v[0].occupancy != 0.0 or v[-1].occupancy != 1.0:
            raise ValueError("demand curve must start at occupancy 0 and end at occupancy 1")
        for prev, cur in zip(v, v[1:]):
            if cur.occupancy <= prev.occupancy:
                raise ValueError("demand curve occupancies must be strictly increasing")
            if cur.multiplier < prev.multiplier:
                raise ValueError("demand curve multipliers must be non-decreasing")
        return v

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone {v!r}")
        return v

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.min_total_multiplier > self.max_total_multiplier:
            raise ValueError("min_total_multiplier must not exceed max_total_multiplier")
        return self

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def price_version(self) -> str:
        return f"v{self.version}"


def _positive_table(values: List[float], label: str) -> List[float]:
    for i, value in enumerate(values):
        if value <= 0.0:
            raise ValueError(f"{label} at index {i} must be positive, got {value}")
    return values


class PricingConfigUpdate(BaseModel):
    """Partial update; only supplied fields are merged onto the current config."""

    model_config = ConfigDict(allow_inf_nan=False)

    base_hourly_rate: Optional[Decimal] = None
    base_daily_rate: Optional[Decimal] = None
    currency: Optional[str] = None
    tax_rate: Optional[float] = None
    hourly_multipliers: Optional[List[float]] = None
    day_of_week_multipliers: Optional[List[float]] = None
    vehicle_surcharges: Optional[Dict[VehicleClass, float]] = None
    demand_curve: Optional[List[DemandBreakpoint]] = None
    seasonal_rules: Optional[List[SeasonalRule]] = None
    advance_discount_per_day: Optional[float] = None
    max_advance_discount: Optional[float] = None
    loyalty_discounts: Optional[Dict[LoyaltyTier, float]] = None
    full_rate_hours: Optional[float] = None
    duration_floor: Optional[float] = None
    min_total_multiplier: Optional[float] = None
    max_total_multiplier: Optional[float] = None
    smoothing_factor: Optional[float] = None
    timezone: Optional[str] = None
    quote_validity_minutes: Optional[int] = None

    def merged_into(self, current: PricingConfig) -> dict:
        data = current.model_dump()
        data.update(self.model_dump(exclude_unset=True, exclude_none=True))
        return data


DEFAULT_PRICING_CONFIG = PricingConfig()
