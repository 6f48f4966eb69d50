"""
Settlement ledger writer: balance deltas plus append-only earnings history rows.

Every row carries the window token of the settlement that produced it, so a
user already holding rows for a token is never credited twice.
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from poolpay.core.config import settings
from poolpay.core.utils import ZERO, quantize_down, to_decimal
from poolpay.models.earnings import EarningsHistory
from poolpay.models.user import User, SettlementCurrency

logger = logging.getLogger(__name__)


def reference_scale() -> int:
    """
    Reference-coin decimals whose smallest step is a whole credit unit.

    With a 0.001 credit ratio one credit unit (1e-8) is 1e-11 reference coin,
    so amounts allocated at this scale convert to credit without rounding.
    Ratios that are not a power of ten fall back to REFERENCE_SCALE.
    """
    exponent = to_decimal(settings.CREDIT_TO_REFERENCE_RATIO).normalize().as_tuple().exponent
    return min(settings.REFERENCE_SCALE, settings.CREDIT_SCALE - exponent)


def already_posted(db: Session, token: str, user_id: int) -> bool:
    """True when the ledger already holds a row for this (window token, user)."""
    return db.query(EarningsHistory.id).filter(
        EarningsHistory.window_token == token,
        EarningsHistory.user_id == user_id
    ).first() is not None


def posted_reference(db: Session, token: str) -> Dict[int, Decimal]:
    """Reference amount already in the ledger under a token, per user."""
    rows = db.query(
        EarningsHistory.user_id, func.sum(EarningsHistory.amount_reference)
    ).filter(
        EarningsHistory.window_token == token
    ).group_by(EarningsHistory.user_id).all()
    return {user_id: quantize_down(total, settings.REFERENCE_SCALE) for user_id, total in rows}


def posted_category_totals(db: Session, token: str) -> Dict[str, str]:
    """Reference amount in the ledger under a token, per category, as strings."""
    rows = db.query(
        EarningsHistory.category, func.sum(EarningsHistory.amount_reference)
    ).filter(
        EarningsHistory.window_token == token
    ).group_by(EarningsHistory.category).all()
    totals = {}
    for category, total in rows:
        amount = quantize_down(total, settings.REFERENCE_SCALE)
        if amount > 0:
            totals[category] = str(amount)
    return totals


def paid_in_for(user: User, credit_to_fiat: Optional[Decimal]) -> SettlementCurrency:
    """Fiat-preference users are paid in fiat only when a positive fiat rate exists."""
    preference = SettlementCurrency.from_code(user.settlement_currency)
    if preference == SettlementCurrency.FIAT and credit_to_fiat is not None and credit_to_fiat > 0:
        return SettlementCurrency.FIAT
    return SettlementCurrency.CREDIT


def apply_balance_delta(user: User, credit_delta: Decimal, fiat_delta: Decimal,
                        paid_in: SettlementCurrency) -> None:
    """Move the paid balance and bump lifetime counters. Caller commits."""
    credit_delta = to_decimal(credit_delta)
    fiat_delta = to_decimal(fiat_delta)
    if paid_in == SettlementCurrency.FIAT:
        user.fiat_balance = to_decimal(user.fiat_balance) + fiat_delta
        user.total_earned_fiat = to_decimal(user.total_earned_fiat) + fiat_delta
    else:
        user.credit_balance = to_decimal(user.credit_balance) + credit_delta
    user.total_earned_credit = to_decimal(user.total_earned_credit) + credit_delta


def record_ledger_entry(
    db: Session,
    user_id: int,
    category: str,
    amount_credit: Decimal,
    amount_fiat: Decimal,
    amount_reference: Decimal,
    paid_in: SettlementCurrency,
    token: str,
    source: str,
    occurred_at: datetime,
) -> EarningsHistory:
    entry = EarningsHistory(
        user_id=user_id,
        category=category,
        amount_credit=amount_credit,
        amount_fiat=amount_fiat,
        amount_reference=amount_reference,
        paid_in=paid_in.value,
        window_token=token,
        source=source,
        occurred_at=occurred_at,
    )
    db.add(entry)
    return entry


def book_earnings(
    db: Session,
    user: User,
    credit_by_category: Dict[str, Decimal],
    credit_to_reference: Decimal,
    credit_to_fiat: Optional[Decimal],
    token: str,
    source: str,
    occurred_at: datetime,
    reference_by_category: Optional[Dict[str, Decimal]] = None,
    fiat_by_category: Optional[Dict[str, Decimal]] = None,
    paid_in: Optional[SettlementCurrency] = None,
) -> SettlementCurrency:
    """
    Add ledger rows and balance deltas for one user without committing.

    Fiat amounts are derived from `credit_to_fiat` unless precomputed ones are
    given in `fiat_by_category`. `paid_in` forces the balance to move instead
    of the user's preference. Categories with neither credit nor reference
    amount produce no row. Returns the currency the user was paid in.
    """
    if paid_in is None:
        if fiat_by_category is not None:
            has_fiat = sum((to_decimal(v) for v in fiat_by_category.values()), ZERO) > 0
            paid_in = paid_in_for(user, Decimal(1) if has_fiat else None)
        else:
            paid_in = paid_in_for(user, credit_to_fiat)
    credit_total = ZERO
    fiat_total = ZERO
    for category, credit in credit_by_category.items():
        credit = to_decimal(credit)
        if reference_by_category is not None:
            reference = to_decimal(reference_by_category.get(category))
        else:
            reference = quantize_down(credit * to_decimal(credit_to_reference), settings.REFERENCE_SCALE)
        if credit <= 0 and reference <= 0:
            continue
        fiat = ZERO
        if paid_in == SettlementCurrency.FIAT and credit > 0:
            if fiat_by_category is not None:
                fiat = to_decimal(fiat_by_category.get(category))
            else:
                fiat = quantize_down(credit * credit_to_fiat, settings.FIAT_SCALE)
        record_ledger_entry(db, user.id, category, credit, fiat, reference, paid_in,
                            token, source, occurred_at)
        credit_total += credit
        fiat_total += fiat
    apply_balance_delta(user, credit_total, fiat_total, paid_in)
    return paid_in


def reference_to_credit(amount_reference: Decimal, credit_to_reference: Decimal) -> Decimal:
    return quantize_down(to_decimal(amount_reference) / to_decimal(credit_to_reference), settings.CREDIT_SCALE)


def commit_user_share(
    db: Session,
    user_id: int,
    reference_by_category: Dict[str, Decimal],
    credit_to_reference: Decimal,
    credit_to_fiat: Optional[Decimal],
    token: str,
    source: str,
    occurred_at: datetime,
) -> bool:
    """
    Apply one user's share as its own transaction.

    Amounts are given in reference-coin units per category. Returns False
    without touching anything when the token is already in the user's ledger.
    Raises LookupError for an unknown user; any failure rolls this user back.
    """
    if already_posted(db, token, user_id):
        logger.info(f"Ledger already holds token {token[:12]} for user {user_id}, skipping")
        return False
    try:
        user = db.query(User).filter(User.id == user_id).with_for_update().first()
        if not user:
            raise LookupError(f"User {user_id} not found")
        credit_by_category = {
            category: reference_to_credit(amount, credit_to_reference)
            for category, amount in reference_by_category.items()
        }
        paid_in = book_earnings(db, user, credit_by_category, credit_to_reference,
                                credit_to_fiat, token, source, occurred_at,
                                reference_by_category=reference_by_category)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.debug(f"Posted share for user {user_id} (token={token[:12]}, paid_in={paid_in.value})")
    return True
