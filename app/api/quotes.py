"""Price quote endpoints"""
import logging
from typing import List
from fastapi import APIRouter, Depends, HTTPException, Query

from app.core.engine import get_pricing_engine
from app.core.enums import UserRole
from app.core.security import Principal, require_roles
from app.schemas.quote import CompletionQuoteRequest, PriceQuote, QuoteRequest
from app.services.pricing import PricingEngine

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/quotes", tags=["quotes"])

any_role = require_roles(UserRole.ADMIN, UserRole.OPERATOR, UserRole.VIEWER)
staff_role = require_roles(UserRole.ADMIN, UserRole.OPERATOR)


@router.post("/", response_model=PriceQuote)
async def create_quote(
    req: QuoteRequest,
    engine: PricingEngine = Depends(get_pricing_engine),
    principal: Principal = Depends(any_role),
):
    logger.info(f"Quote requested by {principal.id} for scope {req.scope} ({req.estimated_hours}h)")
    return await engine.get_price_quote(req)


@router.post("/completion", response_model=PriceQuote)
async def create_completion_quote(
    req: CompletionQuoteRequest,
    engine: PricingEngine = Depends(get_pricing_engine),
    principal: Principal = Depends(staff_role),
):
    logger.info(f"Completion quote requested by {principal.id} for scope {req.scope}")
    return await engine.quote_completion(req)


@router.get("/{scope}", response_model=List[PriceQuote])
async def list_quotes(
    scope: str,
    limit: int = Query(20, ge=1, le=100),
    engine: PricingEngine = Depends(get_pricing_engine),
    principal: Principal = Depends(staff_role),
):
    return await engine.audit_log.list_for_scope(scope, limit=limit)


@router.get("/{scope}/{quote_id}", response_model=PriceQuote)
async def get_quote(
    scope: str,
    quote_id: str,
    engine: PricingEngine = Depends(get_pricing_engine),
    principal: Principal = Depends(any_role),
):
    quote = await engine.get_quote(scope, quote_id)
    if quote is None:
        raise HTTPException(status_code=404, detail=f"Quote {quote_id} not found in scope {scope}")
    return quote
