import pytest
import asyncio
from decimal import Decimal

from app.core.enums import LoyaltyTier, VehicleClass
from app.core.exceptions import ConcurrencyConflictError, PricingConfigError
from app.schemas.pricing_config import DEFAULT_PRICING_CONFIG, PricingConfig, PricingConfigUpdate
from app.services.config_store import InMemoryPricingConfigStore, RedisPricingConfigStore

from conftest import SCOPE, YieldingPricingConfigStore, make_config


@pytest.mark.unit
class TestPricingConfigModel:

    def test_defaults_are_complete(self):
        config = DEFAULT_PRICING_CONFIG
        assert len(config.hourly_multipliers) == 24
        assert len(config.day_of_week_multipliers) == 7
        assert set(config.vehicle_surcharges) == set(VehicleClass)
        assert set(config.loyalty_discounts) == set(LoyaltyTier)
        assert config.base_hourly_rate == Decimal("5.00")
        assert config.price_version == "v1"

    def test_frozen(self):
        with pytest.raises(Exception):
            DEFAULT_PRICING_CONFIG.smoothing_factor = 0.9

    def test_currency_upper_cased(self):
        assert make_config(currency="eur").currency == "EUR"

    def test_loyalty_discount_capped(self):
        discounts = {tier.value: 0.1 for tier in LoyaltyTier}
        discounts["platinum"] = 0.25
        with pytest.raises(ValueError):
            make_config(loyalty_discounts=discounts)

    def test_missing_loyalty_tier(self):
        with pytest.raises(ValueError):
            make_config(loyalty_discounts={"gold": 0.1})

    def test_surcharge_range(self):
        surcharges = {c.value: 0.0 for c in VehicleClass}
        surcharges["compact"] = -1.0
        with pytest.raises(ValueError):
            make_config(vehicle_surcharges=surcharges)

    def test_demand_curve_must_span_occupancy(self):
        with pytest.raises(ValueError):
            make_config(demand_curve=[
                {"occupancy": 0.1, "multiplier": 1.0},
                {"occupancy": 1.0, "multiplier": 1.5},
            ])

    def test_non_positive_table_entry(self):
        table = [1.0] * 24
        table[3] = 0.0
        with pytest.raises(ValueError):
            make_config(hourly_multipliers=table)

    def test_bounds_may_meet(self):
        config = make_config(min_total_multiplier=1.0, max_total_multiplier=1.0)
        assert config.min_total_multiplier == config.max_total_multiplier

    def test_seasonal_rule_wraps_year(self):
        rule = DEFAULT_PRICING_CONFIG.seasonal_rules[0]
        assert rule.covers("12-31")
        assert rule.covers("01-01")
        assert not rule.covers("06-15")

    def test_update_merges_only_supplied_fields(self):
        current = make_config(tax_rate=0.05)
        merged = PricingConfigUpdate(smoothing_factor=0.5).merged_into(current)
        assert merged["smoothing_factor"] == 0.5
        assert merged["tax_rate"] == 0.05
        assert PricingConfig.model_validate(merged).smoothing_factor == 0.5


@pytest.mark.unit
class TestInMemoryPricingConfigStore:

    async def test_replace_bumps_version(self):
        store = InMemoryPricingConfigStore()
        assert await store.get(SCOPE) is None

        first = await store.replace(SCOPE, make_config())
        second = await store.replace(SCOPE, make_config(tax_rate=0.1))

        assert first.version == 1
        assert second.version == 2
        assert (await store.get(SCOPE)).tax_rate == 0.1

    async def test_incoming_version_ignored(self):
        store = InMemoryPricingConfigStore({SCOPE: make_config()})
        stored = await store.replace(SCOPE, make_config(version=40))
        assert stored.version == 2

    async def test_stale_write_rejected(self):
        store = InMemoryPricingConfigStore({SCOPE: make_config()})
        assert await store.compare_and_replace(SCOPE, 0, make_config(tax_rate=0.3)) is False
        assert (await store.get(SCOPE)).tax_rate == 0.0

    async def test_concurrent_replaces_get_distinct_versions(self):
        store = YieldingPricingConfigStore({SCOPE: make_config()})
        first, second = await asyncio.gather(
            store.replace(SCOPE, make_config(tax_rate=0.1)),
            store.replace(SCOPE, make_config(tax_rate=0.2)),
        )

        assert {first.version, second.version} == {2, 3}
        latest = first if first.version == 3 else second
        assert await store.get(SCOPE) == latest

    async def test_replace_gives_up_when_always_overtaken(self):
        class MovingStore(InMemoryPricingConfigStore):
            async def compare_and_replace(self, scope, expected_version, config):
                return False

        with pytest.raises(ConcurrencyConflictError):
            await MovingStore().replace(SCOPE, make_config())


@pytest.mark.redis
class TestRedisPricingConfigStore:

    async def test_round_trip(self, fake_redis):
        store = RedisPricingConfigStore(fake_redis)
        assert await store.get(SCOPE) is None

        stored = await store.replace(SCOPE, make_config(timezone="Europe/Berlin"))
        loaded = await store.get(SCOPE)

        assert loaded == stored
        assert loaded.timezone == "Europe/Berlin"
        assert loaded.vehicle_surcharges[VehicleClass.LUXURY] == 0.25

    async def test_malformed_document(self, fake_redis):
        await fake_redis.set(f"pricing:config:{SCOPE}", '{"hourly_multipliers": [1.0]}')
        with pytest.raises(PricingConfigError):
            await RedisPricingConfigStore(fake_redis).get(SCOPE)

    async def test_not_json(self, fake_redis):
        await fake_redis.set(f"pricing:config:{SCOPE}", "not json")
        with pytest.raises(PricingConfigError):
            await RedisPricingConfigStore(fake_redis).get(SCOPE)

    async def test_stale_write_rejected(self, fake_redis):
        store = RedisPricingConfigStore(fake_redis)
        await store.replace(SCOPE, make_config())

        assert await store.compare_and_replace(SCOPE, 0, make_config(tax_rate=0.3)) is False
        assert (await store.get(SCOPE)).tax_rate == 0.0

    async def test_concurrent_replaces_get_distinct_versions(self, fake_redis):
        class YieldingRedisStore(RedisPricingConfigStore):
            async def get(self, scope):
                config = await super().get(scope)
                await asyncio.sleep(0)
                return config

        store = YieldingRedisStore(fake_redis)
        await store.replace(SCOPE, make_config())

        results = await asyncio.gather(*[
            store.replace(SCOPE, make_config(tax_rate=rate)) for rate in (0.1, 0.2, 0.3)
        ])

        assert sorted(r.version for r in results) == [2, 3, 4]
        latest = max(results, key=lambda r: r.version)
        assert await store.get(SCOPE) == latest
