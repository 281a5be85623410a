import pytest
from datetime import timedelta
from httpx import AsyncClient, ASGITransport

from app.main import app
from app.core.engine import close_pricing_engine, get_pricing_engine, init_pricing_engine
from app.core.security import create_access_token
from app.services.config_store import InMemoryPricingConfigStore
from app.services.pricing import PricingEngine
from app.services.quote_audit import InMemoryQuoteAuditLog
from app.services.smoothing_store import InMemorySmoothingStateStore

from conftest import FIXED_NOW, SCOPE, auth, make_config

QUOTE_BODY = {
    "scope": SCOPE,
    "estimated_hours": 4,
    "vehicle_class": "standard",
    "days_in_advance": 10,
    "occupancy": 0.5,
    "requested_at": FIXED_NOW.isoformat(),
}


class ConflictingStore(InMemorySmoothingStateStore):
    async def compare_and_set(self, scope, expected_version, new_state):
        return False


@pytest.mark.api
@pytest.mark.asyncio
async def test_create_quote(test_client, viewer_token):
    response = await test_client.post("/quotes/", json=QUOTE_BODY, headers=auth(viewer_token))
    assert response.status_code == 200
    data = response.json()
    assert data["quote_id"].startswith("PQ-")
    assert data["total_price"] == "18.80"
    assert data["savings_from_advance"] == "4.00"
    assert data["smoothed_multiplier"] == pytest.approx(0.94)
    assert len(data["factors"]) == 10
    assert data["factors"][5]["name"] == "Advance Booking"


@pytest.mark.api
@pytest.mark.asyncio
async def test_create_quote_requires_token(test_client):
    response = await test_client.post("/quotes/", json=QUOTE_BODY)
    assert response.status_code == 401

    response = await test_client.post("/quotes/", json=QUOTE_BODY, headers=auth("not-a-jwt"))
    assert response.status_code == 401


@pytest.mark.api
@pytest.mark.asyncio
async def test_unknown_role_rejected(test_client):
    token = create_access_token("someone", "superuser")
    response = await test_client.post("/quotes/", json=QUOTE_BODY, headers=auth(token))
    assert response.status_code == 401


@pytest.mark.api
@pytest.mark.asyncio
async def test_invalid_quote_request(test_client, viewer_token, state_store):
    body = dict(QUOTE_BODY, estimated_hours=-1)
    response = await test_client.post("/quotes/", json=body, headers=auth(viewer_token))
    assert response.status_code == 422
    assert await state_store.get(SCOPE) is None


@pytest.mark.api
@pytest.mark.asyncio
async def test_unknown_scope_is_config_error(test_client, viewer_token):
    body = dict(QUOTE_BODY, scope="no-such-lot")
    response = await test_client.post("/quotes/", json=body, headers=auth(viewer_token))
    assert response.status_code == 500
    assert response.json()["error"] == "config_error"


@pytest.mark.api
@pytest.mark.asyncio
async def test_conflict_maps_to_409(config_store, audit_log, viewer_token):
    engine = PricingEngine(config_store, ConflictingStore(), audit_log, max_retries=1, retry_backoff=0.0)
    app.dependency_overrides[get_pricing_engine] = lambda: engine
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post("/quotes/", json=QUOTE_BODY, headers=auth(viewer_token))
    finally:
        app.dependency_overrides.clear()
    assert response.status_code == 409
    assert response.json()["error"] == "concurrency_conflict"


@pytest.mark.api
@pytest.mark.asyncio
async def test_get_and_list_quotes(test_client, viewer_token, operator_token):
    created = (await test_client.post("/quotes/", json=QUOTE_BODY, headers=auth(viewer_token))).json()

    response = await test_client.get(f"/quotes/{SCOPE}/{created['quote_id']}", headers=auth(viewer_token))
    assert response.status_code == 200
    assert response.json() == created

    response = await test_client.get(f"/quotes/{SCOPE}/PQ-missing", headers=auth(viewer_token))
    assert response.status_code == 404

    response = await test_client.get(f"/quotes/{SCOPE}", headers=auth(viewer_token))
    assert response.status_code == 403

    response = await test_client.get(f"/quotes/{SCOPE}", headers=auth(operator_token))
    assert response.status_code == 200
    assert [q["quote_id"] for q in response.json()] == [created["quote_id"]]


@pytest.mark.api
@pytest.mark.asyncio
async def test_completion_quote(test_client, operator_token, viewer_token):
    body = {
        "scope": SCOPE,
        "started_at": (FIXED_NOW - timedelta(hours=2)).isoformat(),
        "vehicle_make": "Porsche",
        "loyalty_tier": "gold",
    }
    response = await test_client.post("/quotes/completion", json=body, headers=auth(viewer_token))
    assert response.status_code == 403

    response = await test_client.post("/quotes/completion", json=body, headers=auth(operator_token))
    assert response.status_code == 200
    data = response.json()
    assert data["estimated_hours"] == 2.0
    assert data["vehicle_class"] == "luxury"
    assert data["loyalty_tier"] == "gold"


@pytest.mark.api
@pytest.mark.asyncio
async def test_pricing_config_roles(test_client, operator_token, viewer_token):
    response = await test_client.get(f"/pricing-config/{SCOPE}", headers=auth(operator_token))
    assert response.status_code == 200
    assert response.json()["version"] == 1

    response = await test_client.get(f"/pricing-config/{SCOPE}", headers=auth(viewer_token))
    assert response.status_code == 403

    response = await test_client.patch(
        f"/pricing-config/{SCOPE}", json={"tax_rate": 0.1}, headers=auth(operator_token)
    )
    assert response.status_code == 403


@pytest.mark.api
@pytest.mark.asyncio
async def test_replace_and_patch_pricing_config(test_client, admin_token, config_store):
    body = make_config(base_hourly_rate="7.50").model_dump(mode="json")
    response = await test_client.put(f"/pricing-config/{SCOPE}", json=body, headers=auth(admin_token))
    assert response.status_code == 200
    assert response.json()["version"] == 2
    assert response.json()["base_hourly_rate"] == "7.50"

    response = await test_client.patch(
        f"/pricing-config/{SCOPE}", json={"smoothing_factor": 0.5}, headers=auth(admin_token)
    )
    assert response.status_code == 200
    assert response.json()["version"] == 3

    stored = await config_store.get(SCOPE)
    assert stored.smoothing_factor == 0.5
    assert str(stored.base_hourly_rate) == "7.50"


@pytest.mark.api
@pytest.mark.asyncio
async def test_invalid_pricing_config(test_client, admin_token, config_store):
    body = make_config().model_dump(mode="json")
    body["hourly_multipliers"] = [1.0] * 12
    response = await test_client.put(f"/pricing-config/{SCOPE}", json=body, headers=auth(admin_token))
    assert response.status_code == 422
    data = response.json()
    assert data["error"] == "validation_error"
    assert data["errors"][0]["loc"] == ["hourly_multipliers"]
    assert (await config_store.get(SCOPE)).version == 1


@pytest.mark.api
@pytest.mark.asyncio
async def test_health_and_metrics(test_client, viewer_token):
    await test_client.post("/quotes/", json=QUOTE_BODY, headers=auth(viewer_token))

    response = await test_client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"

    response = await test_client.get("/metrics")
    assert response.status_code == 200
    assert "price_quotes_total" in response.text
    assert "smoothed_multiplier" in response.text


@pytest.mark.api
@pytest.mark.asyncio
async def test_readiness_follows_engine():
    close_pricing_engine()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/readiness")
        assert response.status_code == 503
        assert response.json()["ready"] is False

        await init_pricing_engine()
        try:
            response = await client.get("/readiness")
        finally:
            close_pricing_engine()
    assert response.status_code == 200
    assert response.json()["ready"] is True


@pytest.mark.api
@pytest.mark.asyncio
async def test_duplicate_quote_id_is_structured_error(config_store, state_store, audit_log, viewer_token):
    engine = PricingEngine(
        config_store, state_store, audit_log,
        retry_backoff=0.0, id_factory=lambda: "PQ-00000000000000000-cafef00d",
    )
    app.dependency_overrides[get_pricing_engine] = lambda: engine
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            first = await client.post("/quotes/", json=QUOTE_BODY, headers=auth(viewer_token))
            second = await client.post("/quotes/", json=QUOTE_BODY, headers=auth(viewer_token))
    finally:
        app.dependency_overrides.clear()
    assert first.status_code == 200
    assert second.status_code == 500
    assert second.json()["error"] == "duplicate_quote"
