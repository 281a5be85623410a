from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.core.enums import LoyaltyTier, VehicleClass


class QuoteRequest(BaseModel):
    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    scope: str = Field(min_length=1, max_length=100)
    estimated_hours: float = Field(gt=0.0, le=720.0)
    vehicle_class: VehicleClass = VehicleClass.STANDARD
    days_in_advance: int = Field(default=0, ge=0, le=365)
    loyalty_tier: Optional[LoyaltyTier] = None
    occupancy: float = Field(default=0.5, ge=0.0, le=1.0)
    requested_at: Optional[datetime] = None
    seasonal_multiplier: Optional[float] = Field(default=None, gt=0.0, le=5.0)


class CompletionQuoteRequest(BaseModel):
    """Price an active ticket by the time actually parked."""

    model_config = ConfigDict(allow_inf_nan=False)

    scope: str = Field(min_length=1, max_length=100)
    started_at: datetime
    vehicle_make: str = Field(default="", max_length=50)
    vehicle_class: Optional[VehicleClass] = None
    loyalty_tier: Optional[LoyaltyTier] = None
    completed_bookings: Optional[int] = Field(default=None, ge=0)
    occupancy: float = Field(default=0.5, ge=0.0, le=1.0)


class FactorResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    multiplier: float
    applied: bool


class PriceQuote(BaseModel):
    model_config = ConfigDict(frozen=True)

    quote_id: str
    scope: str
    config_version: int
    price_version: str
    currency: str

    base_hourly_rate: Decimal
    base_daily_rate: Decimal
    tax_rate: float

    estimated_hours: float
    vehicle_class: VehicleClass
    days_in_advance: int
    loyalty_tier: Optional[LoyaltyTier] = None
    occupancy: float

    factors: List[FactorResult]

    raw_multiplier: float
    clamped_multiplier: float
    previous_multiplier: float
    smoothed_multiplier: float
    fairness_cap_applied: bool

    effective_hourly_rate: Decimal
    subtotal: Decimal
    tax_amount: Decimal
    total_price: Decimal
    daily_cap: Decimal
    daily_cap_applied: bool
    savings_from_loyalty: Decimal
    savings_from_advance: Decimal

    requested_at: datetime
    created_at: datetime
    valid_until: datetime

    def factor(self, name: str) -> Optional[FactorResult]:
        for f in self.factors:
            if f.name == name:
                return f
        return None
