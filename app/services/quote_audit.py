"""Append-only audit log of emitted price quotes"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.future import select

from app.core.exceptions import DuplicateQuoteError, TransientStoreError
from app.core.metrics import track_db_operation
from app.models.price_quote import PriceQuoteRecord
from app.schemas.quote import PriceQuote
from app.utils.hashing import payload_hash

logger = logging.getLogger(__name__)


class QuoteAuditLog(ABC):
    """Insert-only: there is deliberately no update or delete."""

    @abstractmethod
    async def append(self, quote: PriceQuote) -> None:
        ...

    @abstractmethod
    async def get(self, scope: str, quote_id: str) -> Optional[PriceQuote]:
        ...

    @abstractmethod
    async def list_for_scope(self, scope: str, limit: int = 50) -> List[PriceQuote]:
        """Most recent first."""


class InMemoryQuoteAuditLog(QuoteAuditLog):

    def __init__(self):
        self._quotes: Dict[str, PriceQuote] = {}

    async def append(self, quote: PriceQuote) -> None:
        if quote.quote_id in self._quotes:
            raise DuplicateQuoteError(f"Quote {quote.quote_id} already recorded")
        self._quotes[quote.quote_id] = quote

    async def get(self, scope: str, quote_id: str) -> Optional[PriceQuote]:
        quote = self._quotes.get(quote_id)
        if quote is None or quote.scope != scope:
            return None
        return quote

    async def list_for_scope(self, scope: str, limit: int = 50) -> List[PriceQuote]:
        quotes = [q for q in self._quotes.values() if q.scope == scope]
        quotes.sort(key=lambda q: q.quote_id, reverse=True)
        return quotes[:limit]


class SqlQuoteAuditLog(QuoteAuditLog):

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    @track_db_operation("insert", "price_quotes")
    async def append(self, quote: PriceQuote) -> None:
        payload = quote.model_dump(mode="json")
        record = PriceQuoteRecord(
            quote_id=quote.quote_id,
            scope=quote.scope,
            quoted_at=quote.created_at,
            config_version=quote.config_version,
            currency=quote.currency,
            total_price=quote.total_price,
            smoothed_multiplier=quote.smoothed_multiplier,
            fairness_cap_applied=quote.fairness_cap_applied,
            daily_cap_applied=quote.daily_cap_applied,
            payload_hash=payload_hash(payload),
            payload=payload,
        )
        try:
            async with self.session_factory() as db:
                db.add(record)
                await db.commit()
        except IntegrityError as e:
            raise DuplicateQuoteError(f"Quote {quote.quote_id} already recorded") from e
        except SQLAlchemyError as e:
            logger.error(f"Audit write failed for quote {quote.quote_id}: {e}", exc_info=True)
            raise TransientStoreError("Quote audit log unavailable") from e

    async def get(self, scope: str, quote_id: str) -> Optional[PriceQuote]:
        q = select(PriceQuoteRecord).where(
            PriceQuoteRecord.quote_id == quote_id,
            PriceQuoteRecord.scope == scope,
        )
        records = await self._fetch(q)
        return _to_quote(records[0]) if records else None

    async def list_for_scope(self, scope: str, limit: int = 50) -> List[PriceQuote]:
        q = (
            select(PriceQuoteRecord)
            .where(PriceQuoteRecord.scope == scope)
            .order_by(PriceQuoteRecord.quote_id.desc())
            .limit(limit)
        )
        return [_to_quote(r) for r in await self._fetch(q)]

    @track_db_operation("select", "price_quotes")
    async def _fetch(self, q) -> list:
        try:
            async with self.session_factory() as db:
                res = await db.execute(q)
                return list(res.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Audit read failed: {e}", exc_info=True)
            raise TransientStoreError("Quote audit log unavailable") from e


def _to_quote(record: PriceQuoteRecord) -> PriceQuote:
    return PriceQuote.model_validate(record.payload)
