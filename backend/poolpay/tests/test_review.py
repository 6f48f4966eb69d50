"""
Tests for the reviewed (daily) settlement flow.
"""
from datetime import date, datetime
from decimal import Decimal

import pytest

from poolpay.models import DailyPayout, EarningsHistory, PoolAlert, ReviewedSettlement, User
from poolpay.services.fx_service import RateSnapshot
from poolpay.services.review_service import (
    approve_settlement, audit_settlement, build_daily_settlement, reject_settlement,
)
from poolpay.services.settlement_service import SettlementStateError
from poolpay.tests.helpers import ACCOUNT, COIN, FixedRateResolver

PAYOUT_DATE = date(2024, 5, 1)
DAY_START = datetime(2024, 5, 1, 0, 0)


@pytest.fixture
def daily_rates():
    """1 coin = 100 credit, 1 credit = 0.001 reference, 1 reference = 1000 fiat."""
    return FixedRateResolver(RateSnapshot(
        coin_to_credit=Decimal("100"),
        credit_to_reference=Decimal("0.001"),
        reference_to_fiat=Decimal("1000"),
        provenance="TEST",
    ))


@pytest.fixture
def payout_day(db, users, seed):
    """Three miners with scores 50/30/20 and a 1 coin payout; user 4 prefers fiat."""
    db.add(User(id=4, username="u3", settlement_currency="FIAT"))
    db.add(DailyPayout(account=ACCOUNT, coin=COIN, payout_date=PAYOUT_DATE, gross_amount=Decimal("1")))
    db.commit()
    for worker_id, user_id, score in (("w1", 2, "5"), ("w2", 3, "3"), ("w3", 4, "2")):
        seed.binding(worker_id, user_id)
        seed.samples(worker_id, score, start=DAY_START, buckets=10)


def _balances(db, user_id):
    db.expire_all()
    user = db.query(User).filter(User.id == user_id).first()
    return user.credit_balance, user.fiat_balance


def test_build_stages_items_without_balance_effects(db, payout_day, daily_rates):
    settlement = build_daily_settlement(db, ACCOUNT, COIN, rate_resolver=daily_rates)

    assert settlement.status == "AUDIT"
    assert settlement.gross_amount_credit == Decimal("100")
    assert settlement.fee_credit == Decimal("1")
    assert settlement.net_credit == Decimal("99")
    items = {item.user_id: item for item in settlement.items}
    assert len(items) == 3
    assert all(item.status == "PENDING" for item in items.values())
    assert items[2].gross_amount_credit == Decimal("50")
    assert items[2].fee_credit == Decimal("0.5")
    assert items[2].net_credit == Decimal("49.5")
    assert items[4].net_fiat == Decimal("19.8")
    assert sum(item.gross_amount_credit for item in items.values()) == settlement.gross_amount_credit

    assert db.query(EarningsHistory).count() == 0
    for user_id in (1, 2, 3, 4):
        assert _balances(db, user_id) == (0, 0)
    assert db.query(DailyPayout).first().status == "SETTLED"


def test_build_is_idempotent_per_day(db, payout_day, daily_rates):
    first = build_daily_settlement(db, ACCOUNT, COIN, rate_resolver=daily_rates)
    again = build_daily_settlement(db, ACCOUNT, COIN, payout_date=PAYOUT_DATE, rate_resolver=daily_rates)
    assert again.id == first.id
    assert db.query(ReviewedSettlement).count() == 1


def test_reject_discards_items_and_refuses_later_approve(db, payout_day, daily_rates):
    settlement = build_daily_settlement(db, ACCOUNT, COIN, rate_resolver=daily_rates)

    rejected = reject_settlement(db, settlement.id, remark="pool data disputed")

    assert rejected.status == "REJECTED"
    assert rejected.remark == "pool data disputed"
    assert [item.status for item in rejected.items] == ["REJECTED"] * 3
    for user_id in (1, 2, 3, 4):
        assert _balances(db, user_id) == (0, 0)
    assert db.query(EarningsHistory).count() == 0
    assert db.query(DailyPayout).first().status == "REJECTED"

    with pytest.raises(SettlementStateError):
        approve_settlement(db, settlement.id)
    with pytest.raises(SettlementStateError):
        reject_settlement(db, settlement.id)


def test_approve_posts_items_by_currency_preference(db, payout_day, daily_rates):
    settlement = build_daily_settlement(db, ACCOUNT, COIN, rate_resolver=daily_rates)

    paid = approve_settlement(db, settlement.id, remark="ok")

    assert paid.status == "PAID"
    assert paid.reviewed_at is not None
    assert [item.status for item in paid.items] == ["POSTED"] * 3
    assert _balances(db, 2) == (Decimal("49.5"), 0)
    assert _balances(db, 3) == (Decimal("29.7"), 0)
    assert _balances(db, 4) == (0, Decimal("19.8"))
    # Platform fee in the unit each user was paid in
    assert _balances(db, 1) == (Decimal("0.8"), Decimal("0.2"))
    assert db.query(DailyPayout).first().status == "PAID"
    tokens = {row.window_token for row in db.query(EarningsHistory).all()}
    assert tokens == {settlement.window_token}

    with pytest.raises(SettlementStateError):
        approve_settlement(db, settlement.id)


def test_approve_skips_missing_users_and_alerts(db, payout_day, daily_rates):
    settlement = build_daily_settlement(db, ACCOUNT, COIN, rate_resolver=daily_rates)
    db.query(User).filter(User.id == 3).delete()
    db.commit()

    paid = approve_settlement(db, settlement.id)

    statuses = {item.user_id: item.status for item in paid.items}
    assert statuses == {2: "POSTED", 3: "PENDING", 4: "POSTED"}
    alerts = db.query(PoolAlert).filter(PoolAlert.alert_type == "SETTLEMENT_APPLY_FAILED").all()
    assert [a.user_id for a in alerts] == [3]


def test_audit_action_dispatch(db, payout_day, daily_rates):
    settlement = build_daily_settlement(db, ACCOUNT, COIN, rate_resolver=daily_rates)
    with pytest.raises(ValueError) as excinfo:
        audit_settlement(db, settlement.id, "HOLD")
    assert not isinstance(excinfo.value, SettlementStateError)
    with pytest.raises(LookupError):
        audit_settlement(db, 999, "APPROVE")
    assert audit_settlement(db, settlement.id, "reject").status == "REJECTED"


def test_missing_scores_defer_with_alert(db, users, daily_rates):
    db.add(DailyPayout(account=ACCOUNT, coin=COIN, payout_date=PAYOUT_DATE, gross_amount=Decimal("1")))
    db.commit()

    assert build_daily_settlement(db, ACCOUNT, COIN, rate_resolver=daily_rates) is None

    assert db.query(ReviewedSettlement).count() == 0
    assert db.query(PoolAlert).filter(PoolAlert.alert_type == "MISSING_SCORE").count() == 1
    assert db.query(DailyPayout).first().status == "PENDING"


def test_missing_rate_defers_with_alert(db, payout_day):
    assert build_daily_settlement(db, ACCOUNT, COIN, rate_resolver=FixedRateResolver(None)) is None
    assert db.query(PoolAlert).filter(PoolAlert.alert_type == "RATE_MISSING").count() == 1


def test_fee_too_small_for_fiat_is_booked_in_credit(db, users, seed):
    """1 credit gross, 0.01 fee, and a fiat rate low enough that the fee shows as 0.0000 fiat."""
    db.add(User(id=4, username="u3", settlement_currency="FIAT"))
    db.add(DailyPayout(account=ACCOUNT, coin=COIN, payout_date=PAYOUT_DATE, gross_amount=Decimal("0.01")))
    db.commit()
    seed.binding("w3", 4)
    seed.samples("w3", "2", start=DAY_START)
    cheap_fiat = FixedRateResolver(RateSnapshot(
        coin_to_credit=Decimal("100"),
        credit_to_reference=Decimal("0.001"),
        reference_to_fiat=Decimal("1"),
        provenance="TEST",
    ))
    settlement = build_daily_settlement(db, ACCOUNT, COIN, rate_resolver=cheap_fiat)
    assert settlement.fee_credit == Decimal("0.01")
    assert settlement.items[0].net_fiat == Decimal("0.0009")

    approve_settlement(db, settlement.id)

    assert _balances(db, 4) == (0, Decimal("0.0009"))
    assert _balances(db, 1) == (Decimal("0.01"), 0)
    commission = db.query(EarningsHistory).filter(
        EarningsHistory.user_id == 1, EarningsHistory.category == "COMMISSION"
    ).all()
    assert [(row.paid_in, row.amount_credit) for row in commission] == [("CREDIT", Decimal("0.01"))]
