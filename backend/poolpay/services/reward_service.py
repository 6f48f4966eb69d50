"""
Reward resolution: how much an account earned in a window.

The magnitude comes from the pool's cumulative lifetime-earned counter, never
from worker scores.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional
import logging

from sqlalchemy.orm import Session

from poolpay.core.config import settings
from poolpay.core.utils import ZERO, to_decimal
from poolpay.models.pool import AccountBalanceSnapshot
from poolpay.models.settlement import SettlementWindow

logger = logging.getLogger(__name__)


@dataclass
class RewardDelta:
    amount: Decimal
    start_snapshot: Optional[AccountBalanceSnapshot] = None
    end_snapshot: Optional[AccountBalanceSnapshot] = None
    reused_start: bool = False
    reason: Optional[str] = None

    @property
    def has_reward(self) -> bool:
        return self.amount > 0


def snapshot_at_or_before(db: Session, account: str, coin: str, at: datetime) -> Optional[AccountBalanceSnapshot]:
    return db.query(AccountBalanceSnapshot).filter(
        AccountBalanceSnapshot.account == account,
        AccountBalanceSnapshot.coin == coin,
        AccountBalanceSnapshot.fetched_at <= at
    ).order_by(AccountBalanceSnapshot.fetched_at.desc(), AccountBalanceSnapshot.id.desc()).first()


def _previous_end_snapshot(db: Session, account: str, coin: str, window_start: datetime):
    """End snapshot recorded by the window that closed at window_start, if any."""
    previous = db.query(SettlementWindow).filter(
        SettlementWindow.account == account,
        SettlementWindow.coin == coin,
        SettlementWindow.window_end == window_start,
        SettlementWindow.end_snapshot_id.isnot(None)
    ).first()
    if not previous:
        return None
    return db.query(AccountBalanceSnapshot).filter(
        AccountBalanceSnapshot.id == previous.end_snapshot_id
    ).first()


def _lagging(snapshot: AccountBalanceSnapshot, boundary: datetime) -> bool:
    max_lag = settings.SNAPSHOT_MAX_LAG_MINUTES
    if max_lag <= 0:
        return False
    return boundary - snapshot.fetched_at > timedelta(minutes=max_lag)


def resolve_reward(
    db: Session,
    account: str,
    coin: str,
    window_start: datetime,
    window_end: datetime,
) -> RewardDelta:
    """
    Diff the cumulative earned counter between the start and end snapshots.

    Missing snapshots, lagging snapshots and non-positive deltas all yield a
    zero amount with a reason; zero means nothing to settle.
    """
    end = snapshot_at_or_before(db, account, coin, window_end)
    if end is None:
        return RewardDelta(amount=ZERO, reason="MISSING_END_SNAPSHOT")
    if _lagging(end, window_end):
        logger.warning(
            f"End snapshot lags window (account={account}, coin={coin}, "
            f"window_start={window_start}, fetched_at={end.fetched_at})"
        )
        return RewardDelta(amount=ZERO, end_snapshot=end, reason="END_SNAPSHOT_LAG")

    start = _previous_end_snapshot(db, account, coin, window_start)
    reused = start is not None
    if start is None:
        start = snapshot_at_or_before(db, account, coin, window_start)
        if start is None:
            return RewardDelta(amount=ZERO, end_snapshot=end, reason="MISSING_START_SNAPSHOT")
        if _lagging(start, window_start):
            logger.warning(
                f"Start snapshot lags window (account={account}, coin={coin}, "
                f"window_start={window_start}, fetched_at={start.fetched_at})"
            )
            return RewardDelta(amount=ZERO, start_snapshot=start, end_snapshot=end,
                               reason="START_SNAPSHOT_LAG")

    delta = to_decimal(end.cumulative_earned) - to_decimal(start.cumulative_earned)
    if delta <= 0:
        return RewardDelta(amount=ZERO, start_snapshot=start, end_snapshot=end,
                           reused_start=reused, reason="NON_POSITIVE_DELTA")
    return RewardDelta(amount=delta, start_snapshot=start, end_snapshot=end, reused_start=reused)
