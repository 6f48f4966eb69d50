"""
Settlement window model for the automatic hourly settlement.
"""
from sqlalchemy import Column, String, Numeric, DateTime, Integer, JSON, Text, UniqueConstraint
from poolpay.db.base import BaseModel
import enum


class SettlementStatus(str, enum.Enum):
    """Window state machine: PROCESSING -> SUCCESS | FAILED, or SKIPPED."""
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class AllocationSource(str, enum.Enum):
    """Whether shares came from pool scores or the admin fallback bucket."""
    POOL = "POOL"
    ADMIN_FALLBACK = "ADMIN_FALLBACK"


class SettlementWindow(BaseModel):
    """One settled (account, coin, window_start); the tuple is the idempotency key."""
    __tablename__ = "settlement_windows"

    account = Column(String(64), nullable=False)
    coin = Column(String(16), nullable=False)
    window_start = Column(DateTime, nullable=False)
    window_end = Column(DateTime, nullable=False)
    window_token = Column(String(64), nullable=False, index=True)

    total_coin_amount = Column(Numeric(36, 12), nullable=False, default=0)
    total_credit_amount = Column(Numeric(30, 8), nullable=False, default=0)
    total_reference_amount = Column(Numeric(36, 12), nullable=False, default=0)
    rate_provenance = Column(String(128), nullable=True)
    allocation_source = Column(String(16), nullable=False)
    fallback_reason = Column(String(64), nullable=True)
    category_totals = Column(JSON, nullable=False, default=dict)  # category -> reference amount string
    sample_count = Column(Integer, nullable=False, default=0)

    start_snapshot_id = Column(Integer, nullable=True)
    start_snapshot_at = Column(DateTime, nullable=True)
    end_snapshot_id = Column(Integer, nullable=True)
    end_snapshot_at = Column(DateTime, nullable=True)

    status = Column(String(16), nullable=False, index=True)
    remark = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint('account', 'coin', 'window_start', name='uq_settlement_window'),
    )
