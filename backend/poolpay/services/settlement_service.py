"""
Hourly settlement pipeline.

For one (account, coin, window) the pipeline resolves the reward from balance
snapshots, converts it with the current rate snapshot, allocates it by worker
score, splits each share into categories and commits the result per user.

Window state machine (one row per account, coin and window_start):
    (absent) -> PROCESSING -> SUCCESS | FAILED
    (absent) -> SKIPPED

Inserting the row is the idempotency gate. Only the run that inserted it
applies balance effects; every other run returns without side effects.
"""
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional
import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from poolpay.core.config import settings
from poolpay.core.utils import (
    ZERO, hourly_window, now_local, quantize_down, to_decimal, window_token,
)
from poolpay.models.settlement import SettlementWindow, SettlementStatus, AllocationSource
from poolpay.services import alert_service
from poolpay.services.allocation_service import UserShare, allocate_by_score, fallback_share
from poolpay.services.category_service import split_share
from poolpay.services.fx_service import RateResolver, RateSnapshot
from poolpay.services.ledger_service import (
    commit_user_share, posted_category_totals, posted_reference, reference_scale,
)
from poolpay.services.ownership_service import collapse_to_users
from poolpay.services.reward_service import resolve_reward
from poolpay.services.score_service import aggregate_scores, expected_sample_count, is_degraded

logger = logging.getLogger(__name__)

HOURLY = "HOURLY"

# Outcomes that never produce a window row
DEFERRED = "DEFERRED"
DUPLICATE = "DUPLICATE"

EMPTY_SCORE_WINDOW = "EMPTY_SCORE_WINDOW"
TOTAL_SCORE_ZERO = "TOTAL_SCORE_ZERO"
NO_USER_MAPPING = "NO_USER_MAPPING"

NO_POOL_INCREMENT = "NO_POOL_INCREMENT"


class SettlementStateError(ValueError):
    """A settlement is not in a state that allows the requested transition."""


@dataclass
class SharePlan:
    """Computed distribution for one window, discarded after it is applied."""
    shares: List[UserShare]
    categories: Dict[int, Dict[str, Decimal]]
    allocation_source: AllocationSource
    fallback_reason: Optional[str] = None
    sample_count: int = 0

    def category_totals(self) -> Dict[str, str]:
        totals = {}
        for split in self.categories.values():
            for category, amount in split.items():
                totals[category] = totals.get(category, ZERO) + amount
        return {
            category: str(quantize_down(amount, settings.REFERENCE_SCALE))
            for category, amount in totals.items() if amount > 0
        }


@dataclass
class SettlementOutcome:
    status: str
    account: str
    coin: str
    window_start: datetime
    window: Optional[SettlementWindow] = None
    shares: List[UserShare] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def window_id(self) -> Optional[int]:
        return self.window.id if self.window is not None else None


def find_window(db: Session, account: str, coin: str, window_start: datetime) -> Optional[SettlementWindow]:
    return db.query(SettlementWindow).filter(
        SettlementWindow.account == account,
        SettlementWindow.coin == coin.upper(),
        SettlementWindow.window_start == window_start
    ).first()


def get_window(db: Session, window_id: int) -> Optional[SettlementWindow]:
    return db.query(SettlementWindow).filter(SettlementWindow.id == window_id).first()


def list_windows(
    db: Session,
    account: Optional[str] = None,
    coin: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
) -> List[SettlementWindow]:
    query = db.query(SettlementWindow)
    if account:
        query = query.filter(SettlementWindow.account == account)
    if coin:
        query = query.filter(SettlementWindow.coin == coin.upper())
    if status:
        query = query.filter(SettlementWindow.status == status.upper())
    return query.order_by(SettlementWindow.window_start.desc(), SettlementWindow.id.desc()).limit(limit).all()


def _insert_window(db: Session, **values) -> Optional[SettlementWindow]:
    """Conditional insert keyed on (account, coin, window_start). None when the key exists."""
    window = SettlementWindow(**values)
    db.add(window)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return None
    db.refresh(window)
    return window


def _transition(db: Session, window_id: int, from_statuses, to_status: SettlementStatus,
                remark: Optional[str] = None, updated_before: Optional[datetime] = None,
                fields: Optional[dict] = None) -> bool:
    """Conditional status update by id; False when the row was not in an allowed state."""
    query = db.query(SettlementWindow).filter(
        SettlementWindow.id == window_id,
        SettlementWindow.status.in_([s.value for s in from_statuses])
    )
    if updated_before is not None:
        query = query.filter(
            func.coalesce(SettlementWindow.updated_at, SettlementWindow.created_at) < updated_before
        )
    values = {SettlementWindow.status: to_status.value, SettlementWindow.updated_at: datetime.now()}
    if remark is not None:
        values[SettlementWindow.remark] = remark[:1000]
    for name, value in (fields or {}).items():
        values[getattr(SettlementWindow, name)] = value
    changed = query.update(values, synchronize_session=False)
    db.commit()
    return changed == 1


def plan_shares(
    db: Session,
    account: str,
    coin: str,
    window_start: datetime,
    window_end: datetime,
    total_reference: Decimal,
    exclude_users=(),
) -> SharePlan:
    """
    Distribute `total_reference` over the window's score owners.

    Falls back to the unclaimed bucket, with a reason, when the window has no
    scores, the scores sum to zero, or no worker resolves to a user. Users in
    `exclude_users` take no part, and their score leaves the total with them.
    """
    scale = reference_scale()
    worker_scores, sample_count = aggregate_scores(db, account, coin, window_start, window_end)
    if is_degraded(sample_count, window_start, window_end):
        expected = expected_sample_count(window_start, window_end)
        logger.warning(
            f"Degraded score data (account={account}, coin={coin}, window_start={window_start}, "
            f"samples={sample_count}/{expected})"
        )
        if sample_count > 0:
            alert_service.raise_alert(
                db, account, coin, "SCORE_DEGRADED",
                message=f"Observed {sample_count} of {expected} score samples",
                ref_key=window_start.isoformat(),
            )

    reason = None
    user_scores = {}
    total_score = sum((score for _, score in worker_scores), ZERO)
    if not worker_scores:
        reason = EMPTY_SCORE_WINDOW
    elif total_score <= 0:
        reason = TOTAL_SCORE_ZERO
    else:
        user_scores, mapped = collapse_to_users(db, worker_scores)
        if exclude_users:
            user_scores = OrderedDict(
                (user_id, score) for user_id, score in user_scores.items() if user_id not in exclude_users
            )
            total_score = sum(user_scores.values(), ZERO)
            if all(user_id == settings.UNCLAIMED_USER_ID for user_id in user_scores):
                mapped = 0
        if mapped == 0:
            reason = NO_USER_MAPPING

    if reason:
        logger.info(
            f"Routing window to unclaimed bucket (account={account}, coin={coin}, "
            f"window_start={window_start}, reason={reason})"
        )
        shares = fallback_share(total_reference)
        source = AllocationSource.ADMIN_FALLBACK
    else:
        shares = allocate_by_score(total_reference, user_scores, total_score, scale=scale)
        source = AllocationSource.POOL

    categories = {
        share.user_id: split_share(db, share.user_id, share.amount, coin, scale=scale)
        for share in shares
    }
    return SharePlan(
        shares=shares,
        categories=categories,
        allocation_source=source,
        fallback_reason=reason,
        sample_count=sample_count,
    )


def _check_spike(db: Session, account: str, coin: str, amount: Decimal, window_start: datetime) -> None:
    """Alert when a window's coin reward is far above the recent hourly average."""
    since = window_start - timedelta(days=settings.SPIKE_LOOKBACK_DAYS)
    count, total = db.query(
        func.count(SettlementWindow.id), func.sum(SettlementWindow.total_coin_amount)
    ).filter(
        SettlementWindow.account == account,
        SettlementWindow.coin == coin,
        SettlementWindow.status == SettlementStatus.SUCCESS.value,
        SettlementWindow.window_start >= since,
        SettlementWindow.window_start < window_start
    ).one()
    if not count or count < settings.SPIKE_MIN_SAMPLES:
        return
    average = to_decimal(total) / count
    if average <= 0 or amount <= average * to_decimal(settings.SPIKE_MULTIPLIER):
        return
    alert_service.raise_alert(
        db, account, coin, "HOURLY_EARNING_SPIKE",
        message=f"Window reward {amount} exceeds {settings.SPIKE_MULTIPLIER}x average {average:.12f}",
        ref_key=window_start.isoformat(),
    )


def _apply_plan(
    db: Session,
    window: SettlementWindow,
    plan: SharePlan,
    rates: RateSnapshot,
) -> SettlementOutcome:
    """Commit every share, then move the window to SUCCESS, or FAILED on the first error."""
    window_id = window.id
    account, coin, window_start = window.account, window.coin, window.window_start
    token, occurred_at = window.window_token, window.window_end
    try:
        for share in plan.shares:
            commit_user_share(
                db,
                share.user_id,
                plan.categories[share.user_id],
                rates.credit_to_reference,
                rates.credit_to_fiat,
                token,
                HOURLY,
                occurred_at,
            )
    except Exception as e:
        logger.exception(
            f"Applying settlement failed (account={account}, coin={coin}, window_start={window_start})"
        )
        _transition(db, window_id, [SettlementStatus.PROCESSING], SettlementStatus.FAILED,
                    remark=f"APPLY_FAILED: {e}")
        alert_service.raise_alert(
            db, account, coin, "SETTLEMENT_APPLY_FAILED",
            message=str(e)[:500],
            ref_key=window_start.isoformat(),
            severity="ERROR",
        )
        return SettlementOutcome(
            status=SettlementStatus.FAILED.value, account=account, coin=coin,
            window_start=window_start, window=get_window(db, window_id),
            shares=plan.shares, message=str(e),
        )

    # The row describes what the ledger holds, including shares posted by an earlier attempt
    _transition(db, window_id, [SettlementStatus.PROCESSING], SettlementStatus.SUCCESS, fields={
        "allocation_source": plan.allocation_source.value,
        "fallback_reason": plan.fallback_reason,
        "category_totals": posted_category_totals(db, token),
    })
    logger.info(
        f"Settled window (account={account}, coin={coin}, window_start={window_start}, "
        f"users={len(plan.shares)}, source={plan.allocation_source.value})"
    )
    return SettlementOutcome(
        status=SettlementStatus.SUCCESS.value, account=account, coin=coin,
        window_start=window_start, window=get_window(db, window_id), shares=plan.shares,
    )


def settle_window(
    db: Session,
    account: str,
    coin: str,
    window_start: datetime,
    window_end: Optional[datetime] = None,
    rate_resolver: Optional[RateResolver] = None,
) -> SettlementOutcome:
    """
    Run the settlement pipeline for one window.

    Safe to call any number of times for the same window: only the first
    successful insert of the window row applies balance effects.
    """
    coin = coin.upper()
    if window_end is None:
        window_end = window_start + timedelta(hours=1)
    if window_end <= window_start:
        raise ValueError("window_end must be after window_start")
    token = window_token(HOURLY, account, coin, window_start)

    existing = find_window(db, account, coin, window_start)
    if existing:
        logger.debug(f"Window already recorded (account={account}, coin={coin}, window_start={window_start})")
        return SettlementOutcome(status=DUPLICATE, account=account, coin=coin,
                                 window_start=window_start, window=existing)

    reward = resolve_reward(db, account, coin, window_start, window_end)
    snapshot_fields = {
        "start_snapshot_id": reward.start_snapshot.id if reward.start_snapshot else None,
        "start_snapshot_at": reward.start_snapshot.fetched_at if reward.start_snapshot else None,
        "end_snapshot_id": reward.end_snapshot.id if reward.end_snapshot else None,
        "end_snapshot_at": reward.end_snapshot.fetched_at if reward.end_snapshot else None,
    }
    if not reward.has_reward:
        return _skip(db, account, coin, window_start, window_end, token, reward.reason, snapshot_fields)

    resolver = rate_resolver or RateResolver(db)
    rates = resolver.resolve(coin)
    if rates is None or not rates.is_usable:
        logger.warning(
            f"Deferring window, no usable rate (account={account}, coin={coin}, window_start={window_start})"
        )
        alert_service.raise_alert(
            db, account, coin, "RATE_MISSING",
            message=f"No {coin}->{settings.CREDIT_UNIT} rate, window deferred",
            ref_key=window_start.isoformat(),
        )
        return SettlementOutcome(status=DEFERRED, account=account, coin=coin,
                                 window_start=window_start, message="RATE_MISSING")

    total_credit = quantize_down(reward.amount * rates.coin_to_credit, settings.CREDIT_SCALE)
    total_reference = quantize_down(
        reward.amount * rates.coin_to_credit * rates.credit_to_reference, reference_scale()
    )
    if total_reference <= 0:
        return _skip(db, account, coin, window_start, window_end, token, "BELOW_REFERENCE_SCALE",
                     snapshot_fields)

    plan = plan_shares(db, account, coin, window_start, window_end, total_reference)

    window = _insert_window(
        db,
        account=account,
        coin=coin,
        window_start=window_start,
        window_end=window_end,
        window_token=token,
        total_coin_amount=reward.amount,
        total_credit_amount=total_credit,
        total_reference_amount=total_reference,
        rate_provenance=rates.provenance,
        allocation_source=plan.allocation_source.value,
        fallback_reason=plan.fallback_reason,
        category_totals=plan.category_totals(),
        sample_count=plan.sample_count,
        status=SettlementStatus.PROCESSING.value,
        remark="STALE_RATE" if rates.stale else None,
        **snapshot_fields,
    )
    if window is None:
        logger.info(f"Lost settlement race (account={account}, coin={coin}, window_start={window_start})")
        return SettlementOutcome(status=DUPLICATE, account=account, coin=coin, window_start=window_start,
                                 window=find_window(db, account, coin, window_start))

    _check_spike(db, account, coin, reward.amount, window_start)
    return _apply_plan(db, window, plan, rates)


def _skip(db, account, coin, window_start, window_end, token, reason, snapshot_fields) -> SettlementOutcome:
    """Write the SKIPPED placeholder so the window is never reconsidered."""
    remark = f"{NO_POOL_INCREMENT}:{reason}" if reason else NO_POOL_INCREMENT
    window = _insert_window(
        db,
        account=account,
        coin=coin,
        window_start=window_start,
        window_end=window_end,
        window_token=token,
        total_coin_amount=ZERO,
        total_credit_amount=ZERO,
        total_reference_amount=ZERO,
        allocation_source=AllocationSource.POOL.value,
        category_totals={},
        sample_count=0,
        status=SettlementStatus.SKIPPED.value,
        remark=remark,
        **snapshot_fields,
    )
    if window is None:
        return SettlementOutcome(status=DUPLICATE, account=account, coin=coin, window_start=window_start,
                                 window=find_window(db, account, coin, window_start))
    logger.info(f"Skipped window (account={account}, coin={coin}, window_start={window_start}, remark={remark})")
    return SettlementOutcome(status=SettlementStatus.SKIPPED.value, account=account, coin=coin,
                             window_start=window_start, window=window, message=remark)


def settle_hourly(
    db: Session,
    account: str,
    coin: str,
    now: Optional[datetime] = None,
    hours_back: int = 0,
    rate_resolver: Optional[RateResolver] = None,
) -> SettlementOutcome:
    """Settle the closed hour that ended `hours_back` hours before the current hour."""
    window_start, window_end = hourly_window(now or now_local(), hours_back)
    return settle_window(db, account, coin, window_start, window_end, rate_resolver=rate_resolver)


def redrive_window(
    db: Session,
    window_id: int,
    rate_resolver: Optional[RateResolver] = None,
    now: Optional[datetime] = None,
) -> SettlementOutcome:
    """
    Re-apply a FAILED window, or a PROCESSING window that has been stuck.

    Only the part of the stored reference total that the ledger does not hold
    yet is allocated again, over the users not yet posted under the window
    token. The window never pays out more than its total.
    """
    window = get_window(db, window_id)
    if not window:
        raise LookupError(f"Settlement window {window_id} not found")

    now = now or datetime.now()
    stuck_before = now - timedelta(minutes=settings.STUCK_PROCESSING_MINUTES)
    if window.status == SettlementStatus.FAILED.value:
        claimed = _transition(db, window_id, [SettlementStatus.FAILED], SettlementStatus.PROCESSING,
                              remark="REDRIVE")
    elif window.status == SettlementStatus.PROCESSING.value:
        claimed = _transition(db, window_id, [SettlementStatus.PROCESSING], SettlementStatus.PROCESSING,
                              remark="REDRIVE", updated_before=stuck_before)
        if not claimed:
            raise SettlementStateError(
                f"Window {window_id} is still processing; re-drive allowed after "
                f"{settings.STUCK_PROCESSING_MINUTES} minutes"
            )
    else:
        raise SettlementStateError(f"Window {window_id} is {window.status}; only FAILED or stuck windows can be re-driven")
    if not claimed:
        raise SettlementStateError(f"Window {window_id} changed state concurrently")

    window = get_window(db, window_id)
    resolver = rate_resolver or RateResolver(db)
    rates = resolver.resolve(window.coin)
    if rates is None or not rates.is_usable:
        _transition(db, window_id, [SettlementStatus.PROCESSING], SettlementStatus.FAILED,
                    remark="REDRIVE_RATE_MISSING")
        return SettlementOutcome(status=SettlementStatus.FAILED.value, account=window.account,
                                 coin=window.coin, window_start=window.window_start,
                                 window=get_window(db, window_id), message="RATE_MISSING")

    # Only what the ledger does not hold yet is owed, and only to users not yet posted
    posted = posted_reference(db, window.window_token)
    owed = to_decimal(window.total_reference_amount) - sum(posted.values(), ZERO)
    if window.allocation_source == AllocationSource.ADMIN_FALLBACK.value:
        shares = fallback_share(owed)
        plan = SharePlan(
            shares=shares,
            categories={
                s.user_id: split_share(db, s.user_id, s.amount, window.coin, scale=reference_scale())
                for s in shares
            },
            allocation_source=AllocationSource.ADMIN_FALLBACK,
            fallback_reason=window.fallback_reason,
            sample_count=window.sample_count,
        )
    elif owed > 0:
        plan = plan_shares(db, window.account, window.coin, window.window_start,
                           window.window_end, owed, exclude_users=set(posted))
    else:
        plan = SharePlan(shares=[], categories={},
                         allocation_source=AllocationSource(window.allocation_source),
                         fallback_reason=window.fallback_reason, sample_count=window.sample_count)
    stranded = [share for share in plan.shares if share.user_id in posted]
    if stranded:
        receivers = [share for share in plan.shares if share.user_id not in posted]
        if not receivers:
            message = f"Owed {owed} has no unposted recipient"
            _transition(db, window_id, [SettlementStatus.PROCESSING], SettlementStatus.FAILED,
                        remark=f"REDRIVE_NO_RECIPIENT: {message}")
            alert_service.raise_alert(
                db, window.account, window.coin, "SETTLEMENT_APPLY_FAILED",
                message=message, ref_key=f"redrive:{window.window_start.isoformat()}", severity="ERROR",
            )
            return SettlementOutcome(status=SettlementStatus.FAILED.value, account=window.account,
                                     coin=window.coin, window_start=window.window_start,
                                     window=get_window(db, window_id), message=message)
        # Posted users cannot take a second row under the token; their part moves to the largest share
        receiver = receivers[0]
        receiver.amount += sum((share.amount for share in stranded), ZERO)
        plan.shares = receivers
        plan.categories = {
            share.user_id: plan.categories[share.user_id] for share in receivers
        }
        plan.categories[receiver.user_id] = split_share(
            db, receiver.user_id, receiver.amount, window.coin, scale=reference_scale()
        )
    logger.info(
        f"Re-driving window (account={window.account}, coin={window.coin}, "
        f"window_start={window.window_start}, owed={owed}, users={len(plan.shares)})"
    )
    return _apply_plan(db, window, plan, rates)


def stuck_windows(db: Session, now: Optional[datetime] = None) -> List[SettlementWindow]:
    """PROCESSING windows untouched for longer than the stuck threshold."""
    cutoff = (now or datetime.now()) - timedelta(minutes=settings.STUCK_PROCESSING_MINUTES)
    return db.query(SettlementWindow).filter(
        SettlementWindow.status == SettlementStatus.PROCESSING.value,
        func.coalesce(SettlementWindow.updated_at, SettlementWindow.created_at) < cutoff
    ).order_by(SettlementWindow.window_start).all()
