"""
Test data builders shared by the test modules.
"""
from datetime import datetime, timedelta
from decimal import Decimal

from poolpay.models import AccountBalanceSnapshot, ScoreSample, WorkerBinding

ACCOUNT = "acct"
COIN = "X"
WINDOW_START = datetime(2024, 5, 1, 10, 0)
WINDOW_END = datetime(2024, 5, 1, 11, 0)


class FixedRateResolver:
    """Resolver returning the same snapshot for every coin, or None."""
    def __init__(self, snapshot):
        self.snapshot = snapshot

    def resolve(self, coin):
        return self.snapshot


class Seed:
    """Helpers for seeding pool data."""
    def __init__(self, db):
        self.db = db

    def snapshots(self, *points, account=ACCOUNT, coin=COIN):
        for fetched_at, cumulative in points:
            self.db.add(AccountBalanceSnapshot(
                account=account, coin=coin, cumulative_earned=Decimal(cumulative), fetched_at=fetched_at
            ))
        self.db.commit()

    def samples(self, worker_id, per_bucket, start=WINDOW_START, buckets=12, account=ACCOUNT, coin=COIN):
        for i in range(buckets):
            self.db.add(ScoreSample(
                account=account, coin=coin, worker_id=worker_id,
                bucket_time=start + timedelta(minutes=5 * i), score=Decimal(per_bucket)
            ))
        self.db.commit()

    def binding(self, worker_id, user_id):
        self.db.add(WorkerBinding(worker_id=worker_id, user_id=user_id))
        self.db.commit()
