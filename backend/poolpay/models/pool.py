"""
Pool-side source data: balance snapshots, worker score samples, daily payouts.
"""
from sqlalchemy import Column, String, Numeric, Date, DateTime, Index, UniqueConstraint
from poolpay.db.base import BaseModel


class AccountBalanceSnapshot(BaseModel):
    """Point-in-time copy of a pool account's cumulative earned counter."""
    __tablename__ = "account_balance_snapshots"

    account = Column(String(64), nullable=False)
    coin = Column(String(16), nullable=False)
    cumulative_earned = Column(Numeric(36, 12), nullable=False)
    fetched_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('ix_balance_snapshot_lookup', 'account', 'coin', 'fetched_at'),
    )


class ScoreSample(BaseModel):
    """One worker's contribution score in one fixed-cadence bucket."""
    __tablename__ = "score_samples"

    account = Column(String(64), nullable=False)
    coin = Column(String(16), nullable=False)
    worker_id = Column(String(128), nullable=False)
    bucket_time = Column(DateTime, nullable=False)
    score = Column(Numeric(36, 12), nullable=False)

    __table_args__ = (
        Index('ix_score_sample_window', 'account', 'coin', 'bucket_time'),
    )


class DailyPayout(BaseModel):
    """Gross amount a pool reported as paid for one account-day."""
    __tablename__ = "daily_payouts"

    account = Column(String(64), nullable=False)
    coin = Column(String(16), nullable=False)
    payout_date = Column(Date, nullable=False)
    gross_amount = Column(Numeric(36, 12), nullable=False)
    status = Column(String(16), nullable=False, default="PENDING")  # PENDING, SETTLED, PAID, REJECTED

    __table_args__ = (
        UniqueConstraint('account', 'coin', 'payout_date', name='uq_daily_payout_day'),
    )
