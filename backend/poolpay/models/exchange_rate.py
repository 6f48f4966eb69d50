"""
Exchange rate model for currency conversion.
"""
from sqlalchemy import Column, String, Numeric, DateTime, Index
from poolpay.db.base import BaseModel


class ExchangeRate(BaseModel):
    """Market rate observation; the newest row per symbol is the last-known-good rate."""
    __tablename__ = "exchange_rates"

    symbol = Column(String(32), nullable=False)  # BASE/QUOTE, 1 BASE = rate QUOTE
    rate = Column(Numeric(30, 12), nullable=False)
    source = Column(String(64), nullable=True)
    fetched_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('ix_exchange_rate_symbol_time', 'symbol', 'fetched_at'),
    )
