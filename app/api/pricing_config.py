from fastapi import APIRouter, Body, Depends

from app.core.engine import get_pricing_engine
from app.core.enums import UserRole
from app.core.security import Principal, require_admin, require_roles
from app.schemas.pricing_config import PricingConfig
from app.services.pricing import PricingEngine

router = APIRouter(prefix="/pricing-config", tags=["pricing-config"])


@router.get("/{scope}", response_model=PricingConfig)
async def read_pricing_config(
    scope: str,
    engine: PricingEngine = Depends(get_pricing_engine),
    principal: Principal = Depends(require_roles(UserRole.ADMIN, UserRole.OPERATOR)),
):
    return await engine.load_config(scope)


# Bodies are taken raw so the engine reports validation failures in its own shape.
@router.put("/{scope}", response_model=PricingConfig)
async def replace_pricing_config(
    scope: str,
    payload: dict = Body(...),
    engine: PricingEngine = Depends(get_pricing_engine),
    principal: Principal = Depends(require_admin),
):
    return await engine.update_pricing_config(scope, payload)


@router.patch("/{scope}", response_model=PricingConfig)
async def patch_pricing_config(
    scope: str,
    payload: dict = Body(...),
    engine: PricingEngine = Depends(get_pricing_engine),
    principal: Principal = Depends(require_admin),
):
    return await engine.patch_pricing_config(scope, payload)
