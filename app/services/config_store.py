import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from app.core.exceptions import ConcurrencyConflictError, PricingConfigError, TransientStoreError
from app.schemas.pricing_config import PricingConfig

logger = logging.getLogger(__name__)

REPLACE_ATTEMPTS = 5


class PricingConfigStore(ABC):
    """
    Source of per-scope pricing configuration.

    Versions are assigned by the store. ``compare_and_replace`` only writes
    when the stored version (0 for a scope with no config) still equals the
    version the caller based its change on, so every version number names
    exactly one config.
    """

    @abstractmethod
    async def get(self, scope: str) -> Optional[PricingConfig]:
        ...

    @abstractmethod
    async def compare_and_replace(self, scope: str, expected_version: int, config: PricingConfig) -> bool:
        ...

    async def replace(self, scope: str, config: PricingConfig) -> PricingConfig:
        """Store ``config`` for ``scope`` as the next version."""
        for attempt in range(REPLACE_ATTEMPTS):
            current = await self.get(scope)
            expected = current.version if current is not None else 0
            stored = config.model_copy(update={"version": expected + 1})
            if await self.compare_and_replace(scope, expected, stored):
                return stored
            logger.warning(
                f"Pricing config for scope {scope} changed during replace "
                f"(attempt {attempt + 1}/{REPLACE_ATTEMPTS}, read version {expected})"
            )
        raise ConcurrencyConflictError(f"Pricing config for scope {scope} kept changing; replace abandoned")


class InMemoryPricingConfigStore(PricingConfigStore):

    def __init__(self, initial: Optional[Dict[str, PricingConfig]] = None):
        self._configs: Dict[str, PricingConfig] = dict(initial or {})

    async def get(self, scope: str) -> Optional[PricingConfig]:
        return self._configs.get(scope)

    async def compare_and_replace(self, scope: str, expected_version: int, config: PricingConfig) -> bool:
        current = self._configs.get(scope)
        if (current.version if current is not None else 0) != expected_version:
            return False
        self._configs[scope] = config
        return True


class RedisPricingConfigStore(PricingConfigStore):

    def __init__(self, redis: Redis, prefix: str = "pricing:config"):
        self.redis = redis
        self.prefix = prefix

    def _key(self, scope: str) -> str:
        return f"{self.prefix}:{scope}"

    def _parse(self, scope: str, raw) -> PricingConfig:
        try:
            return PricingConfig.model_validate_json(raw)
        except ValidationError as e:
            logger.error(f"Stored pricing config for scope {scope} is malformed: {e}")
            raise PricingConfigError(f"Stored pricing config for scope {scope} is malformed") from e

    async def get(self, scope: str) -> Optional[PricingConfig]:
        try:
            raw = await self.redis.get(self._key(scope))
        except RedisError as e:
            logger.error(f"Pricing config read failed for scope {scope}: {e}")
            raise TransientStoreError(f"Pricing config unavailable for scope {scope}") from e
        return self._parse(scope, raw) if raw else None

    async def compare_and_replace(self, scope: str, expected_version: int, config: PricingConfig) -> bool:
        key = self._key(scope)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                raw = await pipe.get(key)
                current_version = self._parse(scope, raw).version if raw else 0
                if current_version != expected_version:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, config.model_dump_json())
                await pipe.execute()
                return True
        except WatchError:
            return False
        except RedisError as e:
            logger.error(f"Pricing config write failed for scope {scope}: {e}")
            raise TransientStoreError(f"Pricing config unavailable for scope {scope}") from e
