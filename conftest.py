import pytest
import asyncio
from datetime import datetime, timezone
from fakeredis import FakeAsyncRedis
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine, AsyncSession
from sqlalchemy.pool import StaticPool

from app.main import app
from app.core.engine import get_pricing_engine
from app.core.enums import UserRole, VehicleClass
from app.core.security import create_access_token
from app.models.base import Base
from app.models import price_quote  # noqa: F401
from app.schemas.pricing_config import PricingConfig
from app.services.config_store import InMemoryPricingConfigStore
from app.services.pricing import PricingEngine
from app.services.quote_audit import InMemoryQuoteAuditLog
from app.services.smoothing_store import InMemorySmoothingStateStore

SCOPE = "lot-1"

# A Wednesday at noon, outside every default seasonal period.
FIXED_NOW = datetime(2025, 10, 15, 12, 0, tzinfo=timezone.utc)


def make_config(**overrides) -> PricingConfig:
    """Config with every time/day/season factor neutral."""
    data = {
        "base_hourly_rate": "5.00",
        "base_daily_rate": "30.00",
        "tax_rate": 0.0,
        "hourly_multipliers": [1.0] * 24,
        "day_of_week_multipliers": [1.0] * 7,
        "seasonal_rules": [],
        "smoothing_factor": 0.3,
        "min_total_multiplier": 0.5,
        "max_total_multiplier": 2.5,
    }
    data.update(overrides)
    return PricingConfig.model_validate(data)


class YieldingPricingConfigStore(InMemoryPricingConfigStore):
    """Yields to the loop after every read so concurrent writers interleave."""

    async def get(self, scope):
        config = await super().get(scope)
        await asyncio.sleep(0)
        return config


@pytest.fixture
def neutral_config():
    return make_config()


@pytest.fixture
def config_store(neutral_config):
    return InMemoryPricingConfigStore({SCOPE: neutral_config})


@pytest.fixture
def state_store():
    return InMemorySmoothingStateStore()


@pytest.fixture
def audit_log():
    return InMemoryQuoteAuditLog()


@pytest.fixture
def engine(config_store, state_store, audit_log):
    return PricingEngine(
        config_store,
        state_store,
        audit_log,
        retry_backoff=0.0,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def quote_request_data():
    return {
        "scope": SCOPE,
        "estimated_hours": 4,
        "vehicle_class": VehicleClass.STANDARD.value,
        "days_in_advance": 0,
        "occupancy": 0.5,
        "requested_at": FIXED_NOW,
    }


@pytest.fixture
async def fake_redis():
    client = FakeAsyncRedis()
    yield client
    await client.aclose()


@pytest.fixture
async def sql_session_factory():
    sql_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with sql_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(sql_engine, class_=AsyncSession, expire_on_commit=False)
    await sql_engine.dispose()


@pytest.fixture
async def test_client(engine):
    app.dependency_overrides[get_pricing_engine] = lambda: engine
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def admin_token():
    return create_access_token("admin_1", UserRole.ADMIN)


@pytest.fixture
def operator_token():
    return create_access_token("operator_1", UserRole.OPERATOR)


@pytest.fixture
def viewer_token():
    return create_access_token("viewer_1", UserRole.VIEWER)


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
    config.addinivalue_line(
        "markers", "pricing: marks tests related to pricing"
    )
    config.addinivalue_line(
        "markers", "concurrency: marks tests exercising concurrent smoothing updates"
    )
    config.addinivalue_line(
        "markers", "redis: marks tests running against fakeredis"
    )
    config.addinivalue_line(
        "markers", "audit: marks tests related to audit logging"
    )
    config.addinivalue_line(
        "markers", "api: marks tests exercising the HTTP surface"
    )
