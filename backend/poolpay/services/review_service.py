"""
Reviewed (daily) settlement: staged shares that wait for an operator decision.

`build_daily_settlement` computes and stores a settlement with its line
items without touching balances. `approve_settlement` applies every item in
one transaction and `reject_settlement` discards them. Both only act on a
settlement in AUDIT or PENDING.
"""
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Dict, List, Optional
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from poolpay.core.config import settings
from poolpay.core.utils import ZERO, quantize_down, quantize_half_up, to_decimal, window_token
from poolpay.models.pool import DailyPayout
from poolpay.models.reviewed_settlement import (
    ReviewedSettlement, ReviewedSettlementItem, ReviewStatus, ItemStatus,
)
from poolpay.models.user import User, SettlementCurrency
from poolpay.services import alert_service
from poolpay.services.allocation_service import allocate_by_score
from poolpay.services.category_service import split_share
from poolpay.services.fx_service import RateResolver
from poolpay.services.ledger_service import book_earnings
from poolpay.services.ownership_service import collapse_to_users
from poolpay.services.score_service import aggregate_scores
from poolpay.services.settlement_service import SettlementStateError

logger = logging.getLogger(__name__)

REVIEWED = "REVIEWED"
COMMISSION = "COMMISSION"

APPROVE = "APPROVE"
REJECT = "REJECT"

OPEN_STATUSES = (ReviewStatus.AUDIT.value, ReviewStatus.PENDING.value)


def get_reviewed_settlement(db: Session, settlement_id: int) -> Optional[ReviewedSettlement]:
    return db.query(ReviewedSettlement).filter(ReviewedSettlement.id == settlement_id).first()


def list_reviewed_settlements(
    db: Session,
    account: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
) -> List[ReviewedSettlement]:
    query = db.query(ReviewedSettlement)
    if account:
        query = query.filter(ReviewedSettlement.account == account)
    if status:
        query = query.filter(ReviewedSettlement.status == status.upper())
    return query.order_by(ReviewedSettlement.payout_date.desc(), ReviewedSettlement.id.desc()).limit(limit).all()


def _next_payout(db: Session, account: str, coin: str, payout_date: Optional[date]) -> Optional[DailyPayout]:
    query = db.query(DailyPayout).filter(
        DailyPayout.account == account,
        DailyPayout.coin == coin
    )
    if payout_date is not None:
        return query.filter(DailyPayout.payout_date == payout_date).first()
    return query.filter(DailyPayout.status == "PENDING").order_by(DailyPayout.payout_date).first()


def _initial_status() -> str:
    configured = (settings.REVIEW_DEFAULT_STATUS or "").upper()
    return configured if configured in OPEN_STATUSES else ReviewStatus.AUDIT.value


def build_daily_settlement(
    db: Session,
    account: str,
    coin: str,
    payout_date: Optional[date] = None,
    rate_resolver: Optional[RateResolver] = None,
) -> Optional[ReviewedSettlement]:
    """
    Stage the settlement of one pool payout day.

    Without `payout_date` the earliest PENDING payout is used. Returns the
    staged settlement (or the one already staged for that day), or None when
    there is nothing to stage yet.
    """
    coin = coin.upper()
    payout = _next_payout(db, account, coin, payout_date)
    if not payout:
        logger.debug(f"No pending payout to settle (account={account}, coin={coin})")
        return None

    existing = db.query(ReviewedSettlement).filter(
        ReviewedSettlement.account == account,
        ReviewedSettlement.coin == coin,
        ReviewedSettlement.payout_date == payout.payout_date
    ).first()
    if existing:
        return existing

    gross_coin = to_decimal(payout.gross_amount)
    if gross_coin <= 0:
        logger.info(f"Payout has no gross amount (account={account}, coin={coin}, date={payout.payout_date})")
        return None

    day_start = datetime.combine(payout.payout_date, time.min)
    day_end = day_start + timedelta(days=1)
    ref_key = payout.payout_date.isoformat()

    worker_scores, _ = aggregate_scores(db, account, coin, day_start, day_end)
    total_score = sum((score for _, score in worker_scores), ZERO)
    if total_score <= 0:
        alert_service.raise_alert(
            db, account, coin, "MISSING_SCORE",
            message=f"No score samples for payout day {ref_key}",
            ref_key=ref_key,
        )
        return None

    rates = (rate_resolver or RateResolver(db)).resolve(coin)
    if rates is None or not rates.is_usable:
        alert_service.raise_alert(
            db, account, coin, "RATE_MISSING",
            message=f"No {coin}->{settings.CREDIT_UNIT} rate for payout day {ref_key}",
            ref_key=ref_key,
        )
        return None

    user_scores, mapped = collapse_to_users(db, worker_scores)
    if mapped == 0:
        logger.warning(f"No worker owners for payout day (account={account}, coin={coin}, date={ref_key})")
        user_scores = {settings.UNCLAIMED_USER_ID: total_score}

    gross_credit = quantize_down(gross_coin * rates.coin_to_credit, settings.CREDIT_SCALE)
    shares = allocate_by_score(gross_credit, user_scores, total_score, scale=settings.CREDIT_SCALE)
    fee_rate = to_decimal(settings.PLATFORM_FEE_RATE)
    credit_to_fiat = rates.credit_to_fiat

    settlement = ReviewedSettlement(
        account=account,
        coin=coin,
        payout_date=payout.payout_date,
        window_token=window_token(REVIEWED, account, coin, day_start),
        gross_amount_coin=gross_coin,
        gross_amount_credit=gross_credit,
        credit_rate=rates.coin_to_credit,
        rate_provenance=rates.provenance,
        pool_score=total_score,
        fee_rate=fee_rate,
        status=_initial_status(),
    )
    net_total = ZERO
    for share in shares:
        fee = quantize_half_up(share.amount * fee_rate, settings.CREDIT_SCALE)
        net = share.amount - fee
        net_fiat = None
        if credit_to_fiat is not None:
            net_fiat = quantize_down(net * credit_to_fiat, settings.FIAT_SCALE)
        settlement.items.append(ReviewedSettlementItem(
            user_id=share.user_id,
            user_score=share.score,
            revenue_ratio=share.ratio,
            gross_amount_credit=share.amount,
            fee_credit=fee,
            net_credit=net,
            net_fiat=net_fiat,
            status=ItemStatus.PENDING.value,
        ))
        net_total += net
    settlement.net_credit = net_total
    settlement.fee_credit = gross_credit - net_total

    db.add(settlement)
    payout.status = "SETTLED"
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Payout day already staged (account={account}, coin={coin}, date={ref_key})")
        return db.query(ReviewedSettlement).filter(
            ReviewedSettlement.account == account,
            ReviewedSettlement.coin == coin,
            ReviewedSettlement.payout_date == payout.payout_date
        ).first()
    db.refresh(settlement)
    logger.info(
        f"Staged reviewed settlement {settlement.id} (account={account}, coin={coin}, date={ref_key}, "
        f"items={len(shares)}, gross={gross_credit} {settings.CREDIT_UNIT})"
    )
    return settlement


def _load_open(db: Session, settlement_id: int) -> ReviewedSettlement:
    settlement = db.query(ReviewedSettlement).filter(
        ReviewedSettlement.id == settlement_id
    ).with_for_update().first()
    if not settlement:
        raise LookupError(f"Reviewed settlement {settlement_id} not found")
    if settlement.status not in OPEN_STATUSES:
        raise SettlementStateError(
            f"Reviewed settlement {settlement_id} is {settlement.status}; "
            f"only AUDIT or PENDING settlements can be approved or rejected"
        )
    return settlement


def _mark_payout(db: Session, settlement: ReviewedSettlement, status: str) -> None:
    payout = db.query(DailyPayout).filter(
        DailyPayout.account == settlement.account,
        DailyPayout.coin == settlement.coin,
        DailyPayout.payout_date == settlement.payout_date
    ).first()
    if payout:
        payout.status = status


def _fiat_by_category(credit_by_category: Dict[str, Decimal], net_credit: Decimal,
                      net_fiat: Decimal) -> Dict[str, Decimal]:
    """Spread a staged fiat amount over the credit categories; the last one takes the complement."""
    positive = [c for c, amount in credit_by_category.items() if amount > 0]
    result = {category: ZERO for category in credit_by_category}
    if not positive or net_credit <= 0:
        return result
    allocated = ZERO
    for category in positive[:-1]:
        part = quantize_down(credit_by_category[category] * net_fiat / net_credit, settings.FIAT_SCALE)
        result[category] = part
        allocated += part
    result[positive[-1]] = net_fiat - allocated
    return result


def approve_settlement(
    db: Session,
    settlement_id: int,
    remark: Optional[str] = None,
) -> ReviewedSettlement:
    """
    Post every line item and the platform fee, then mark the settlement PAID.

    All balance effects are committed together. Items whose user no longer
    exists are left PENDING and reported as SETTLEMENT_APPLY_FAILED alerts.
    """
    settlement = _load_open(db, settlement_id)
    if not settlement.items:
        raise SettlementStateError(f"Reviewed settlement {settlement_id} has no items to approve")

    account, coin = settlement.account, settlement.coin
    now = datetime.now()
    occurred_at = datetime.combine(settlement.payout_date, time.min) + timedelta(days=1)
    credit_to_reference = to_decimal(settings.CREDIT_TO_REFERENCE_RATIO)
    missing_users = []
    fee_credit_paid_in_credit = ZERO
    fee_credit_paid_in_fiat = ZERO
    fee_fiat = ZERO
    try:
        for item in settlement.items:
            user = db.query(User).filter(User.id == item.user_id).with_for_update().first()
            if not user:
                missing_users.append(item.user_id)
                continue
            net_credit = to_decimal(item.net_credit)
            net_fiat = to_decimal(item.net_fiat)
            credit_by_category = split_share(db, user.id, net_credit, coin, scale=settings.CREDIT_SCALE)
            paid_in = book_earnings(
                db, user, credit_by_category, credit_to_reference, None,
                settlement.window_token, REVIEWED, occurred_at,
                fiat_by_category=_fiat_by_category(credit_by_category, net_credit, net_fiat),
            )
            if paid_in == SettlementCurrency.FIAT:
                fee_credit_paid_in_fiat += to_decimal(item.fee_credit)
                fee_fiat += quantize_down(to_decimal(item.fee_credit) * net_fiat / net_credit,
                                          settings.FIAT_SCALE)
            else:
                fee_credit_paid_in_credit += to_decimal(item.fee_credit)
            item.status = ItemStatus.POSTED.value

        # Allocation remainder not carried by any item also belongs to the platform
        items_gross = sum((to_decimal(i.gross_amount_credit) for i in settlement.items), ZERO)
        fee_credit_paid_in_credit += to_decimal(settlement.gross_amount_credit) - items_gross

        # A fee too small to show in fiat is still owed, in credit
        if fee_fiat <= 0:
            fee_credit_paid_in_credit += fee_credit_paid_in_fiat
            fee_credit_paid_in_fiat = ZERO

        platform = db.query(User).filter(User.id == settings.PLATFORM_USER_ID).with_for_update().first()
        if not platform:
            missing_users.append(settings.PLATFORM_USER_ID)
        else:
            if fee_credit_paid_in_credit > 0:
                book_earnings(
                    db, platform, {COMMISSION: fee_credit_paid_in_credit}, credit_to_reference, None,
                    settlement.window_token, REVIEWED, occurred_at,
                    paid_in=SettlementCurrency.CREDIT,
                )
            if fee_fiat > 0:
                book_earnings(
                    db, platform, {COMMISSION: fee_credit_paid_in_fiat}, credit_to_reference, None,
                    settlement.window_token, REVIEWED, occurred_at,
                    fiat_by_category={COMMISSION: fee_fiat},
                    paid_in=SettlementCurrency.FIAT,
                )

        settlement.status = ReviewStatus.PAID.value
        settlement.reviewed_at = now
        settlement.remark = remark
        _mark_payout(db, settlement, ReviewStatus.PAID.value)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(f"Approving reviewed settlement {settlement_id} failed, nothing applied")
        raise
    db.refresh(settlement)

    for user_id in missing_users:
        alert_service.raise_alert(
            db, account, coin, "SETTLEMENT_APPLY_FAILED",
            message=f"User {user_id} not found while approving settlement {settlement_id}",
            ref_key=f"reviewed:{settlement_id}:{user_id}",
            user_id=user_id,
            severity="ERROR",
        )
    logger.info(f"Approved reviewed settlement {settlement_id} (account={account}, coin={coin})")
    return settlement


def reject_settlement(
    db: Session,
    settlement_id: int,
    remark: Optional[str] = None,
) -> ReviewedSettlement:
    """Discard every line item without any balance effect and mark the settlement REJECTED."""
    settlement = _load_open(db, settlement_id)
    for item in settlement.items:
        item.status = ItemStatus.REJECTED.value
    settlement.status = ReviewStatus.REJECTED.value
    settlement.reviewed_at = datetime.now()
    settlement.remark = remark
    _mark_payout(db, settlement, ReviewStatus.REJECTED.value)
    db.commit()
    db.refresh(settlement)
    logger.info(f"Rejected reviewed settlement {settlement_id}: {remark}")
    return settlement


def audit_settlement(
    db: Session,
    settlement_id: int,
    action: str,
    remark: Optional[str] = None,
) -> ReviewedSettlement:
    """Apply an operator action, APPROVE or REJECT."""
    normalized = (action or "").strip().upper()
    if normalized == APPROVE:
        return approve_settlement(db, settlement_id, remark)
    if normalized == REJECT:
        return reject_settlement(db, settlement_id, remark)
    raise ValueError(f"Unsupported action: {action}")
