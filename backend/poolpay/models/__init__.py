"""Models package - Import all models for SQLAlchemy registration."""
from poolpay.models.user import User, Device, WorkerBinding, SettlementCurrency
from poolpay.models.pool import AccountBalanceSnapshot, ScoreSample, DailyPayout
from poolpay.models.exchange_rate import ExchangeRate
from poolpay.models.settlement import SettlementWindow, SettlementStatus, AllocationSource
from poolpay.models.earnings import EarningsHistory
from poolpay.models.reviewed_settlement import (
    ReviewedSettlement, ReviewedSettlementItem, ReviewStatus, ItemStatus
)
from poolpay.models.alert import PoolAlert

__all__ = [
    "User",
    "Device",
    "WorkerBinding",
    "SettlementCurrency",
    "AccountBalanceSnapshot",
    "ScoreSample",
    "DailyPayout",
    "ExchangeRate",
    "SettlementWindow",
    "SettlementStatus",
    "AllocationSource",
    "EarningsHistory",
    "ReviewedSettlement",
    "ReviewedSettlementItem",
    "ReviewStatus",
    "ItemStatus",
    "PoolAlert",
]
