"""
Pricing factor evaluators.

Each factor is a small stateless object with an ``evaluate(request, config)``
method returning a FactorResult. FACTORS holds the eight multiplier-producing
factors in composition order (surcharges, then discounts, then duration
degression). The fairness cap and smoothing factors are not computed here: the
clamp and smoothing stages report them after the fact through
``fairness_cap_result`` and ``smoothing_result``.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from app.core.enums import FactorKind
from app.schemas.pricing_config import DemandBreakpoint, PricingConfig
from app.schemas.quote import FactorResult, QuoteRequest

NEUTRAL_TOLERANCE = 0.01

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]

TIME_OF_DAY = "Time of Day"
DAY_OF_WEEK = "Day of Week"
DEMAND = "Demand & Availability"
SEASONAL = "Seasonal"
VEHICLE_TYPE = "Vehicle Type"
ADVANCE_BOOKING = "Advance Booking"
LOYALTY = "Loyalty"
DURATION = "Duration Degression"
FAIRNESS_CAP = "Fairness Cap"
SMOOTHING = "Price Smoothing"


def is_material(multiplier: float) -> bool:
    return abs(multiplier - 1.0) > NEUTRAL_TOLERANCE


def request_time(request: QuoteRequest, config: PricingConfig) -> datetime:
    """The request's moment in the scope's local timezone."""
    ts = request.requested_at or datetime.now(timezone.utc)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(config.tz)


def demand_multiplier(curve: Sequence[DemandBreakpoint], occupancy: float) -> float:
    """Piecewise-linear interpolation of the demand curve at ``occupancy``."""
    occ = min(1.0, max(0.0, occupancy))
    for lo, hi in zip(curve, curve[1:]):
        if occ <= hi.occupancy:
            span = hi.occupancy - lo.occupancy
            t = (occ - lo.occupancy) / span
            return lo.multiplier + t * (hi.multiplier - lo.multiplier)
    return curve[-1].multiplier


def advance_discount(days_in_advance: int, per_day: float, cap: float) -> float:
    if days_in_advance <= 0:
        return 0.0
    return min(cap, days_in_advance * per_day)


def duration_multiplier(hours: float, full_rate_hours: float, floor: float) -> float:
    """
    Hyperbolic decay of the hourly rate toward ``floor``.

    Within the first ``full_rate_hours`` the rate is untouched. Past that,
    ``hours * m(hours)`` grows by exactly ``floor`` per extra hour, so every
    additional hour is cheaper than the first one and never free.
    """
    if hours <= full_rate_hours:
        return 1.0
    return floor + (1.0 - floor) * full_rate_hours / hours


class PricingFactor(ABC):
    name: str = ""
    kind: FactorKind = FactorKind.SURCHARGE

    @abstractmethod
    def evaluate(self, request: QuoteRequest, config: PricingConfig) -> FactorResult:
        ...

    def _result(self, multiplier: float, description: str, applied: Optional[bool] = None) -> FactorResult:
        return FactorResult(
            name=self.name,
            description=description,
            multiplier=multiplier,
            applied=is_material(multiplier) if applied is None else applied,
        )

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.kind}>"


class TimeOfDayFactor(PricingFactor):
    name = TIME_OF_DAY

    def evaluate(self, request, config):
        hour = request_time(request, config).hour
        mult = config.hourly_multipliers[hour]
        if not is_material(mult):
            desc = f"Standard hour ({hour}:00)"
        elif mult > 1.0:
            desc = f"Peak hour ({hour}:00)"
        else:
            desc = f"Off-peak hour ({hour}:00)"
        return self._result(mult, desc)


class DayOfWeekFactor(PricingFactor):
    name = DAY_OF_WEEK

    def evaluate(self, request, config):
        # datetime.weekday() is Monday=0; the table starts on Sunday
        day = (request_time(request, config).weekday() + 1) % 7
        mult = config.day_of_week_multipliers[day]
        return self._result(mult, f"{DAY_NAMES[day]} rate")


class DemandFactor(PricingFactor):
    name = DEMAND

    def evaluate(self, request, config):
        mult = demand_multiplier(config.demand_curve, request.occupancy)
        pct = round(request.occupancy * 100)
        if mult < 1.0 and is_material(mult):
            desc = f"Low demand ({pct}% full), discount applied"
        elif not is_material(mult):
            desc = f"Normal demand ({pct}% full)"
        elif request.occupancy < 0.95:
            desc = f"High demand ({pct}% full)"
        else:
            desc = f"Near capacity ({pct}% full)"
        return self._result(mult, desc)


class SeasonalFactor(PricingFactor):
    name = SEASONAL

    def evaluate(self, request, config):
        if request.seasonal_multiplier is not None:
            return self._result(request.seasonal_multiplier, "Event premium")
        mmdd = request_time(request, config).strftime("%m-%d")
        for rule in config.seasonal_rules:
            if rule.covers(mmdd):
                return self._result(rule.multiplier, f"{rule.name} premium")
        return self._result(1.0, "No seasonal adjustment", applied=False)


class VehicleTypeFactor(PricingFactor):
    name = VEHICLE_TYPE

    def evaluate(self, request, config):
        vehicle_class = request.vehicle_class
        surcharge = config.vehicle_surcharges[vehicle_class]
        if surcharge > 0:
            desc = f"{vehicle_class} surcharge (+{round(surcharge * 100)}%)"
        elif surcharge < 0:
            desc = f"{vehicle_class} discount ({round(surcharge * 100)}%)"
        else:
            desc = "Standard vehicle"
        return self._result(1.0 + surcharge, desc)


class AdvanceBookingFactor(PricingFactor):
    name = ADVANCE_BOOKING
    kind = FactorKind.DISCOUNT

    def evaluate(self, request, config):
        days = request.days_in_advance
        discount = advance_discount(days, config.advance_discount_per_day, config.max_advance_discount)
        if discount <= 0.0:
            return self._result(1.0, "Walk-in / same-day booking", applied=False)
        plural = "s" if days > 1 else ""
        return self._result(
            1.0 - discount,
            f"Booked {days} day{plural} ahead ({round(discount * 100)}% off)",
            applied=True,
        )


class LoyaltyFactor(PricingFactor):
    name = LOYALTY
    kind = FactorKind.DISCOUNT

    def evaluate(self, request, config):
        tier = request.loyalty_tier
        if tier is None:
            return self._result(1.0, "No loyalty tier", applied=False)
        discount = config.loyalty_discounts[tier]
        return self._result(
            1.0 - discount,
            f"{tier.value.capitalize()} member ({round(discount * 100)}% off)",
            applied=discount > 0.0,
        )


class DurationDegressionFactor(PricingFactor):
    name = DURATION
    kind = FactorKind.DEGRESSION

    def evaluate(self, request, config):
        hours = request.estimated_hours
        mult = duration_multiplier(hours, config.full_rate_hours, config.duration_floor)
        if mult >= 1.0:
            return self._result(1.0, f"Full hourly rate for {hours:g}h", applied=False)
        return self._result(mult, f"Long stay ({hours:g}h): {round((1.0 - mult) * 100)}% off per hour")


FACTORS: Tuple[PricingFactor, ...] = (
    TimeOfDayFactor(),
    DayOfWeekFactor(),
    DemandFactor(),
    SeasonalFactor(),
    VehicleTypeFactor(),
    AdvanceBookingFactor(),
    LoyaltyFactor(),
    DurationDegressionFactor(),
)


def evaluate_factors(
    request: QuoteRequest,
    config: PricingConfig,
    factors: Sequence[PricingFactor] = FACTORS,
) -> List[FactorResult]:
    return [factor.evaluate(request, config) for factor in factors]


def fairness_cap_result(raw: float, clamped: float, config: PricingConfig) -> FactorResult:
    if clamped < raw:
        desc = f"Capped at {config.max_total_multiplier:.2f}x (raw {raw:.2f}x)"
    elif clamped > raw:
        desc = f"Raised to floor {config.min_total_multiplier:.2f}x (raw {raw:.2f}x)"
    else:
        desc = "Within fairness bounds"
    return FactorResult(
        name=FAIRNESS_CAP,
        description=desc,
        multiplier=clamped / raw,
        applied=clamped != raw,
    )


def smoothing_result(clamped: float, smoothed: float, previous: float) -> FactorResult:
    mult = smoothed / clamped
    applied = is_material(mult)
    if applied:
        desc = f"Smoothed {clamped:.3f}x toward previous {previous:.3f}x: {smoothed:.3f}x"
    else:
        desc = "No material smoothing"
    return FactorResult(name=SMOOTHING, description=desc, multiplier=mult, applied=applied)
