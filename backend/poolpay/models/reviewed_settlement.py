"""
Reviewed (daily, human-approved) settlement and its line items.
"""
from sqlalchemy import Column, String, Numeric, Date, DateTime, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from poolpay.db.base import BaseModel
import enum


class ReviewStatus(str, enum.Enum):
    AUDIT = "AUDIT"
    PENDING = "PENDING"
    PAID = "PAID"
    REJECTED = "REJECTED"


class ItemStatus(str, enum.Enum):
    PENDING = "PENDING"
    POSTED = "POSTED"
    REJECTED = "REJECTED"


class ReviewedSettlement(BaseModel):
    """Staged daily settlement waiting for an APPROVE or REJECT action."""
    __tablename__ = "reviewed_settlements"

    account = Column(String(64), nullable=False)
    coin = Column(String(16), nullable=False)
    payout_date = Column(Date, nullable=False)
    window_token = Column(String(64), nullable=False)
    gross_amount_coin = Column(Numeric(36, 12), nullable=False)
    gross_amount_credit = Column(Numeric(30, 8), nullable=False)
    credit_rate = Column(Numeric(30, 12), nullable=False)
    rate_provenance = Column(String(128), nullable=True)
    pool_score = Column(Numeric(36, 12), nullable=False)
    fee_rate = Column(Numeric(10, 6), nullable=False)
    fee_credit = Column(Numeric(30, 8), nullable=False, default=0)
    net_credit = Column(Numeric(30, 8), nullable=False, default=0)
    status = Column(String(16), nullable=False, index=True)
    remark = Column(Text, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)

    items = relationship("ReviewedSettlementItem", back_populates="settlement",
                         cascade="all, delete-orphan", order_by="ReviewedSettlementItem.id")

    __table_args__ = (
        UniqueConstraint('account', 'coin', 'payout_date', name='uq_reviewed_settlement_day'),
    )


class ReviewedSettlementItem(BaseModel):
    """One user's staged share of a reviewed settlement."""
    __tablename__ = "reviewed_settlement_items"

    settlement_id = Column(Integer, ForeignKey("reviewed_settlements.id"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    user_score = Column(Numeric(36, 12), nullable=False)
    revenue_ratio = Column(Numeric(30, 18), nullable=False)
    gross_amount_credit = Column(Numeric(30, 8), nullable=False)
    fee_credit = Column(Numeric(30, 8), nullable=False)
    net_credit = Column(Numeric(30, 8), nullable=False)
    net_fiat = Column(Numeric(30, 4), nullable=True)
    status = Column(String(16), nullable=False, default=ItemStatus.PENDING.value)

    settlement = relationship("ReviewedSettlement", back_populates="items")
