"""
Dynamic pricing engine.

Pipeline per quote: factor evaluation -> combiner -> fairness clamp ->
smoothing (read-modify-write of the scope's SmoothingState) -> quote assembly
-> audit. Everything up to the clamp is pure; the smoothing stage is the only
step that mutates shared state and it does so through compare-and-set.
"""
import asyncio
import logging
import math
import time
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional, Sequence, Tuple

from pydantic import ValidationError

from app.core.config import settings
from app.core.enums import FactorKind, LoyaltyTier, QuoteOutcome
from app.core.exceptions import (
    ConcurrencyConflictError,
    DuplicateQuoteError,
    PricingConfigError,
    PricingError,
    PricingValidationError,
    TransientStoreError,
)
from app.core.metrics import (
    config_updates,
    quote_duration,
    quotes_total,
    smoothed_multiplier as smoothed_multiplier_gauge,
    smoothing_conflicts,
)
from app.schemas.pricing_config import PricingConfig, PricingConfigUpdate
from app.schemas.quote import CompletionQuoteRequest, FactorResult, PriceQuote, QuoteRequest
from app.services.config_store import PricingConfigStore
from app.services.factors import (
    ADVANCE_BOOKING,
    FACTORS,
    LOYALTY,
    PricingFactor,
    evaluate_factors,
    fairness_cap_result,
    smoothing_result,
)
from app.services.quote_audit import QuoteAuditLog
from app.services.smoothing_store import SmoothingStateStore
from app.services.vehicle import detect_vehicle_class
from app.utils.ids import generate_quote_id

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
MIN_COMPLETION_HOURS = 0.5

_KIND_ORDER = {FactorKind.SURCHARGE: 0, FactorKind.DISCOUNT: 1, FactorKind.DEGRESSION: 2}

_OUTCOMES = {
    PricingValidationError: QuoteOutcome.VALIDATION_ERROR,
    PricingConfigError: QuoteOutcome.CONFIG_ERROR,
    ConcurrencyConflictError: QuoteOutcome.CONFLICT,
    TransientStoreError: QuoteOutcome.TRANSIENT_ERROR,
    DuplicateQuoteError: QuoteOutcome.DUPLICATE_QUOTE,
}


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def check_composition_order(factors: Sequence[PricingFactor]) -> None:
    """Surcharges first, then discounts, then duration degression."""
    ranks = []
    for factor in factors:
        if factor.kind not in _KIND_ORDER:
            raise ValueError(f"{factor!r} cannot take part in combination")
        ranks.append(_KIND_ORDER[factor.kind])
    if ranks != sorted(ranks):
        raise ValueError("factors must be ordered surcharges, discounts, degression")


def combine_multipliers(results: Sequence[FactorResult]) -> float:
    raw = 1.0
    for result in results:
        raw *= result.multiplier
    return raw


def apply_fairness_clamp(raw: float, config: PricingConfig) -> float:
    return max(config.min_total_multiplier, min(config.max_total_multiplier, raw))


def apply_smoothing(clamped: float, previous: float, config: PricingConfig) -> float:
    """
    EMA of the clamped multiplier against the scope's previous value.

    The previous value is brought inside the current bounds first: a config
    update may have narrowed them since it was stored. Both operands are then
    in bounds, so their convex combination is too.
    """
    lo, hi = config.min_total_multiplier, config.max_total_multiplier
    alpha = config.smoothing_factor
    previous = max(lo, min(hi, previous))
    smoothed = alpha * clamped + (1.0 - alpha) * previous
    # float drift only
    smoothed = max(lo, min(hi, smoothed))
    if not lo <= smoothed <= hi:
        raise AssertionError(f"smoothed multiplier {smoothed} outside [{lo}, {hi}]")
    return smoothed


def assemble_quote(
    request: QuoteRequest,
    config: PricingConfig,
    factor_results: Sequence[FactorResult],
    raw: float,
    clamped: float,
    previous: float,
    smoothed: float,
    quote_id: str,
    created_at: datetime,
) -> PriceQuote:
    hours = request.estimated_hours
    smoothed_d = Decimal(str(smoothed))
    hours_d = Decimal(str(hours))

    # subtotal == effective_hourly_rate * hours unless the daily cap fires
    effective_hourly_rate = to_money(config.base_hourly_rate * smoothed_d)
    subtotal = effective_hourly_rate * hours_d

    daily_cap = to_money(config.base_daily_rate * smoothed_d)
    days = max(1, math.ceil(hours / 24))
    cap_amount = daily_cap * days
    daily_cap_applied = subtotal > cap_amount
    if daily_cap_applied:
        subtotal = cap_amount

    subtotal = to_money(subtotal)
    tax_amount = to_money(subtotal * Decimal(str(config.tax_rate)))
    total_price = to_money(subtotal + tax_amount)

    base_subtotal = config.base_hourly_rate * hours_d
    savings = {}
    for result in factor_results:
        if result.name in (LOYALTY, ADVANCE_BOOKING):
            discount = Decimal(str(1.0 - result.multiplier)) if result.applied else Decimal(0)
            savings[result.name] = to_money(base_subtotal * discount)

    factors = list(factor_results) + [
        fairness_cap_result(raw, clamped, config),
        smoothing_result(clamped, smoothed, previous),
    ]

    return PriceQuote(
        quote_id=quote_id,
        scope=request.scope,
        config_version=config.version,
        price_version=config.price_version,
        currency=config.currency,
        base_hourly_rate=config.base_hourly_rate,
        base_daily_rate=config.base_daily_rate,
        tax_rate=config.tax_rate,
        estimated_hours=hours,
        vehicle_class=request.vehicle_class,
        days_in_advance=request.days_in_advance,
        loyalty_tier=request.loyalty_tier,
        occupancy=request.occupancy,
        factors=factors,
        raw_multiplier=raw,
        clamped_multiplier=clamped,
        previous_multiplier=previous,
        smoothed_multiplier=smoothed,
        fairness_cap_applied=clamped != raw,
        effective_hourly_rate=effective_hourly_rate,
        subtotal=subtotal,
        tax_amount=tax_amount,
        total_price=total_price,
        daily_cap=daily_cap,
        daily_cap_applied=daily_cap_applied,
        savings_from_loyalty=savings.get(LOYALTY, Decimal("0.00")),
        savings_from_advance=savings.get(ADVANCE_BOOKING, Decimal("0.00")),
        requested_at=request.requested_at or created_at,
        created_at=created_at,
        valid_until=created_at + timedelta(minutes=config.quote_validity_minutes),
    )


class PricingEngine:
    """GetPriceQuote / UpdatePricingConfig over pluggable stores."""

    def __init__(
        self,
        config_store: PricingConfigStore,
        state_store: SmoothingStateStore,
        audit_log: QuoteAuditLog,
        default_config: Optional[PricingConfig] = None,
        factors: Sequence[PricingFactor] = FACTORS,
        max_retries: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        id_factory: Callable[[], str] = generate_quote_id,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        check_composition_order(factors)
        self.config_store = config_store
        self.state_store = state_store
        self.audit_log = audit_log
        self.default_config = default_config
        self.factors = tuple(factors)
        self.max_retries = settings.SMOOTHING_MAX_RETRIES if max_retries is None else max_retries
        self.retry_backoff = settings.SMOOTHING_RETRY_BACKOFF if retry_backoff is None else retry_backoff
        self.id_factory = id_factory
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def load_config(self, scope: str) -> PricingConfig:
        config = await self.config_store.get(scope)
        if config is not None:
            return config
        if self.default_config is None:
            raise PricingConfigError(f"No pricing config for scope {scope}")
        return self.default_config

    async def get_price_quote(self, request) -> PriceQuote:
        if not isinstance(request, QuoteRequest):
            try:
                request = QuoteRequest.model_validate(request)
            except ValidationError as e:
                quotes_total.labels(scope="unknown", outcome=str(QuoteOutcome.VALIDATION_ERROR)).inc()
                raise PricingValidationError.from_pydantic(e, "quote request") from e

        scope = request.scope
        start_time = time.time()
        try:
            quote = await self._quote(request)
        except PricingError as e:
            outcome = _OUTCOMES.get(type(e), QuoteOutcome.TRANSIENT_ERROR)
            quotes_total.labels(scope=scope, outcome=str(outcome)).inc()
            logger.warning(f"Quote failed for scope {scope} ({outcome}): {e}")
            raise
        quote_duration.labels(scope=scope).observe(time.time() - start_time)
        quotes_total.labels(scope=scope, outcome=str(QuoteOutcome.SUCCESS)).inc()
        return quote

    async def _quote(self, request: QuoteRequest) -> PriceQuote:
        scope = request.scope
        config = await self.load_config(scope)
        now = self.clock()
        if request.requested_at is None:
            request = request.model_copy(update={"requested_at": now})

        results = evaluate_factors(request, config, self.factors)
        raw = combine_multipliers(results)
        clamped = apply_fairness_clamp(raw, config)
        previous, smoothed = await self._smooth(scope, clamped, config, now)

        quote = assemble_quote(
            request, config, results, raw, clamped, previous, smoothed,
            quote_id=self.id_factory(),
            created_at=self.clock(),
        )
        await self.audit_log.append(quote)

        logger.info(
            f"Quote {quote.quote_id} for scope {scope}: total {quote.total_price} {quote.currency} "
            f"(raw {raw:.3f}, clamped {clamped:.3f}, smoothed {smoothed:.3f})"
        )
        return quote

    async def _smooth(self, scope: str, clamped: float, config: PricingConfig, now: datetime) -> Tuple[float, float]:
        backoff = self.retry_backoff
        for attempt in range(self.max_retries + 1):
            state = await self.state_store.load(scope)
            smoothed = apply_smoothing(clamped, state.multiplier, config)
            if await self.state_store.compare_and_set(scope, state.version, state.advance(smoothed, now)):
                smoothed_multiplier_gauge.labels(scope=scope).set(smoothed)
                return state.multiplier, smoothed

            smoothing_conflicts.labels(scope=scope).inc()
            logger.warning(
                f"Smoothing state conflict for scope {scope} "
                f"(attempt {attempt + 1}/{self.max_retries + 1}, read version {state.version})"
            )
            if attempt < self.max_retries:
                await asyncio.sleep(backoff)
                backoff *= 2.0

        raise ConcurrencyConflictError(
            f"Smoothing state for scope {scope} kept changing; gave up after {self.max_retries + 1} attempts"
        )

    async def quote_completion(self, request, now: Optional[datetime] = None) -> PriceQuote:
        """Price an active ticket by the hours actually parked since it started."""
        if not isinstance(request, CompletionQuoteRequest):
            try:
                request = CompletionQuoteRequest.model_validate(request)
            except ValidationError as e:
                raise PricingValidationError.from_pydantic(e, "completion request") from e

        now = now or self.clock()
        started_at = request.started_at
        if started_at.tzinfo is None:
            started_at = started_at.replace(tzinfo=timezone.utc)
        elapsed_hours = (now - started_at).total_seconds() / 3600
        actual_hours = round(max(MIN_COMPLETION_HOURS, elapsed_hours), 2)

        loyalty_tier = request.loyalty_tier
        if loyalty_tier is None and request.completed_bookings is not None:
            loyalty_tier = LoyaltyTier.from_booking_count(request.completed_bookings)

        logger.info(f"Completion pricing for scope {request.scope}: {actual_hours}h parked")
        return await self.get_price_quote({
            "scope": request.scope,
            "estimated_hours": actual_hours,
            "vehicle_class": request.vehicle_class or detect_vehicle_class(request.vehicle_make),
            "days_in_advance": 0,
            "loyalty_tier": loyalty_tier,
            "occupancy": request.occupancy,
            "requested_at": now,
        })

    async def get_quote(self, scope: str, quote_id: str) -> Optional[PriceQuote]:
        return await self.audit_log.get(scope, quote_id)

    async def update_pricing_config(self, scope: str, config) -> PricingConfig:
        """Replace the scope's config. Smoothing state is left as it is."""
        validated = _validate_config(scope, config)
        stored = await self.config_store.replace(scope, validated)
        config_updates.labels(scope=scope).inc()
        logger.info(f"Pricing config for scope {scope} replaced (version {stored.version})")
        return stored

    async def patch_pricing_config(self, scope: str, update) -> PricingConfig:
        """
        Merge ``update`` onto the scope's current config.

        The merged config is written only against the version it was built
        from; if another update lands first the merge is redone on top of it.
        """
        if not isinstance(update, PricingConfigUpdate):
            try:
                update = PricingConfigUpdate.model_validate(update)
            except ValidationError as e:
                raise PricingValidationError.from_pydantic(e, "pricing config update") from e

        for attempt in range(self.max_retries + 1):
            current = await self.config_store.get(scope)
            expected = current.version if current is not None else 0
            base = current if current is not None else await self.load_config(scope)
            validated = _validate_config(scope, update.merged_into(base))
            stored = validated.model_copy(update={"version": expected + 1})
            if await self.config_store.compare_and_replace(scope, expected, stored):
                config_updates.labels(scope=scope).inc()
                logger.info(f"Pricing config for scope {scope} patched (version {stored.version})")
                return stored

            logger.warning(
                f"Pricing config for scope {scope} changed during patch "
                f"(attempt {attempt + 1}/{self.max_retries + 1}, read version {expected})"
            )
            if attempt < self.max_retries:
                await asyncio.sleep(self.retry_backoff)

        raise ConcurrencyConflictError(
            f"Pricing config for scope {scope} kept changing; gave up after {self.max_retries + 1} attempts"
        )


def _validate_config(scope: str, config) -> PricingConfig:
    if not scope:
        raise PricingValidationError("Scope is required")
    if isinstance(config, PricingConfig):
        # re-run validators on a copy that may have been built with model_construct
        config = config.model_dump()
    try:
        return PricingConfig.model_validate(config)
    except ValidationError as e:
        raise PricingValidationError.from_pydantic(e, "pricing config") from e
