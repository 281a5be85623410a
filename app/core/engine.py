import logging
from typing import Optional

from app.core.config import settings
from app.core.redis import get_redis
from app.schemas.pricing_config import DEFAULT_PRICING_CONFIG
from app.services.config_store import InMemoryPricingConfigStore, RedisPricingConfigStore
from app.services.pricing import PricingEngine
from app.services.quote_audit import InMemoryQuoteAuditLog, SqlQuoteAuditLog
from app.services.smoothing_store import InMemorySmoothingStateStore, RedisSmoothingStateStore

logger = logging.getLogger(__name__)

engine: Optional[PricingEngine] = None


async def init_pricing_engine() -> PricingEngine:
    global engine

    if settings.STATE_BACKEND == "redis":
        redis = get_redis()
        config_store = RedisPricingConfigStore(redis)
        state_store = RedisSmoothingStateStore(redis)
    elif settings.STATE_BACKEND == "memory":
        config_store = InMemoryPricingConfigStore()
        state_store = InMemorySmoothingStateStore()
    else:
        raise RuntimeError(f"Unknown STATE_BACKEND {settings.STATE_BACKEND!r}")

    if settings.AUDIT_BACKEND == "database":
        from app.db.session import AsyncSessionLocal, init_models
        await init_models()
        audit_log = SqlQuoteAuditLog(AsyncSessionLocal)
    elif settings.AUDIT_BACKEND == "memory":
        audit_log = InMemoryQuoteAuditLog()
    else:
        raise RuntimeError(f"Unknown AUDIT_BACKEND {settings.AUDIT_BACKEND!r}")

    engine = PricingEngine(
        config_store,
        state_store,
        audit_log,
        default_config=DEFAULT_PRICING_CONFIG if settings.FALLBACK_TO_DEFAULT_CONFIG else None,
    )
    logger.info(
        f"Pricing engine ready (state: {settings.STATE_BACKEND}, audit: {settings.AUDIT_BACKEND})"
    )
    return engine


def close_pricing_engine():
    global engine
    engine = None


def get_pricing_engine() -> PricingEngine:
    if engine is None:
        raise RuntimeError("Pricing engine not initialized. Call init_pricing_engine() first.")
    return engine
