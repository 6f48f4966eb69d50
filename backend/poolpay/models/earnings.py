"""
Earnings history model, the append-only settlement ledger.
"""
from sqlalchemy import Column, String, Numeric, DateTime, ForeignKey, Integer, Index
from poolpay.db.base import BaseModel


class EarningsHistory(BaseModel):
    """One credited amount per (user, category, settlement event). Never updated or deleted."""
    __tablename__ = "earnings_history"

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    category = Column(String(32), nullable=False)  # CPU, GPU, GPU_KAWPOW, COMMISSION...
    amount_credit = Column(Numeric(30, 8), nullable=False, default=0)
    amount_fiat = Column(Numeric(30, 4), nullable=False, default=0)
    amount_reference = Column(Numeric(36, 12), nullable=False, default=0)
    paid_in = Column(String(10), nullable=False)  # Balance the delta moved: CREDIT or FIAT
    window_token = Column(String(64), nullable=False)
    source = Column(String(32), nullable=False)  # HOURLY or REVIEWED
    occurred_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('ix_earnings_token_user', 'window_token', 'user_id'),
    )
