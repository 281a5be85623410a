from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, Numeric, String
from app.models.base import BaseModel


class PriceQuoteRecord(BaseModel):
    """Append-only audit row; one per emitted quote."""

    __tablename__ = "price_quotes"

    quote_id = Column(String(64), unique=True, nullable=False, index=True)
    scope = Column(String(100), nullable=False, index=True)
    quoted_at = Column(DateTime(timezone=True), nullable=False, index=True)

    config_version = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    total_price = Column(Numeric(12, 2), nullable=False)
    smoothed_multiplier = Column(Float, nullable=False)
    fairness_cap_applied = Column(Boolean, nullable=False)
    daily_cap_applied = Column(Boolean, nullable=False)

    payload_hash = Column(String(128), nullable=False)
    payload = Column(JSON, nullable=False)
