"""
Per-scope smoothing state with optimistic concurrency.

Stores expose two operations: ``get`` returns the scope's current state (or
None before the first quote) and ``compare_and_set`` writes a new state only if
the stored version still equals the version the caller read. Callers retry on
a False result; see PricingEngine._smooth.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from app.core.exceptions import TransientStoreError

logger = logging.getLogger(__name__)

NEUTRAL_MULTIPLIER = 1.0


class SmoothingState(BaseModel):
    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    scope: str
    multiplier: float = NEUTRAL_MULTIPLIER
    updated_at: Optional[datetime] = None
    version: int = Field(default=0, ge=0)

    @classmethod
    def initial(cls, scope: str) -> "SmoothingState":
        return cls(scope=scope)

    def advance(self, multiplier: float, now: Optional[datetime] = None) -> "SmoothingState":
        return SmoothingState(
            scope=self.scope,
            multiplier=multiplier,
            updated_at=now or datetime.now(timezone.utc),
            version=self.version + 1,
        )


class SmoothingStateStore(ABC):

    @abstractmethod
    async def get(self, scope: str) -> Optional[SmoothingState]:
        ...

    @abstractmethod
    async def compare_and_set(self, scope: str, expected_version: int, new_state: SmoothingState) -> bool:
        ...

    async def load(self, scope: str) -> SmoothingState:
        state = await self.get(scope)
        return state if state is not None else SmoothingState.initial(scope)


class InMemorySmoothingStateStore(SmoothingStateStore):
    """Process-local store. Neither method awaits, so each runs in one event-loop step."""

    def __init__(self):
        self._states: Dict[str, SmoothingState] = {}

    async def get(self, scope: str) -> Optional[SmoothingState]:
        return self._states.get(scope)

    async def compare_and_set(self, scope: str, expected_version: int, new_state: SmoothingState) -> bool:
        current = self._states.get(scope)
        current_version = current.version if current is not None else 0
        if current_version != expected_version:
            return False
        self._states[scope] = new_state
        return True


class RedisSmoothingStateStore(SmoothingStateStore):
    """One JSON document per scope, updated inside WATCH/MULTI/EXEC."""

    def __init__(self, redis: Redis, prefix: str = "pricing:smoothing"):
        self.redis = redis
        self.prefix = prefix

    def _key(self, scope: str) -> str:
        return f"{self.prefix}:{scope}"

    def _parse(self, scope: str, raw) -> SmoothingState:
        try:
            return SmoothingState.model_validate_json(raw)
        except ValidationError as e:
            logger.error(f"Stored smoothing state for scope {scope} is malformed: {e}")
            raise TransientStoreError(f"Smoothing state for scope {scope} is unreadable") from e

    async def get(self, scope: str) -> Optional[SmoothingState]:
        try:
            raw = await self.redis.get(self._key(scope))
        except RedisError as e:
            logger.error(f"Smoothing state read failed for scope {scope}: {e}")
            raise TransientStoreError(f"Smoothing state unavailable for scope {scope}") from e
        return self._parse(scope, raw) if raw else None

    async def compare_and_set(self, scope: str, expected_version: int, new_state: SmoothingState) -> bool:
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
                pipe.set(key, new_state.model_dump_json())
                await pipe.execute()
                return True
        except WatchError:
            return False
        except RedisError as e:
            logger.error(f"Smoothing state write failed for scope {scope}: {e}")
            raise TransientStoreError(f"Smoothing state unavailable for scope {scope}") from e
