"""
Score aggregation over the fixed-cadence worker score time series.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Tuple
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from poolpay.core.config import settings
from poolpay.core.utils import to_decimal
from poolpay.models.pool import ScoreSample

logger = logging.getLogger(__name__)


def aggregate_scores(
    db: Session,
    account: str,
    coin: str,
    window_start: datetime,
    window_end: datetime,
) -> Tuple[List[Tuple[str, Decimal]], int]:
    """
    Sum each worker's samples in [window_start, window_end).

    Returns ([(worker_id, total_score)], distinct sample count). Workers whose
    total is not positive are left out; no samples is an empty list, not an error.
    """
    in_window = (
        ScoreSample.account == account,
        ScoreSample.coin == coin,
        ScoreSample.bucket_time >= window_start,
        ScoreSample.bucket_time < window_end,
    )
    total = func.sum(ScoreSample.score)
    rows = db.query(ScoreSample.worker_id, total).filter(*in_window).group_by(
        ScoreSample.worker_id
    ).having(total > 0).order_by(ScoreSample.worker_id).all()

    sample_count = db.query(func.count(func.distinct(ScoreSample.bucket_time))).filter(
        *in_window
    ).scalar() or 0

    return [(worker_id, to_decimal(score)) for worker_id, score in rows], int(sample_count)


def expected_sample_count(window_start: datetime, window_end: datetime) -> int:
    cadence = settings.SCORE_SAMPLE_MINUTES
    if cadence <= 0:
        return 0
    return int((window_end - window_start).total_seconds() // (cadence * 60))


def is_degraded(sample_count: int, window_start: datetime, window_end: datetime) -> bool:
    """True when fewer distinct samples were observed than the cadence implies."""
    return sample_count < expected_sample_count(window_start, window_end)
