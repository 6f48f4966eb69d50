"""
Database initialization script.
"""
from poolpay.db.session import init_db

# Import all models so SQLAlchemy can register them
from poolpay.models import (  # noqa: F401
    User, Device, WorkerBinding, AccountBalanceSnapshot, ScoreSample, DailyPayout,
    ExchangeRate, SettlementWindow, EarningsHistory, ReviewedSettlement,
    ReviewedSettlementItem, PoolAlert
)

if __name__ == "__main__":
    print("Initializing database...")
    init_db()
    print("Database initialized successfully!")
