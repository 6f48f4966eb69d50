"""
Tests for score aggregation, worker ownership and reward resolution.
"""
from datetime import timedelta
from decimal import Decimal

from poolpay.models import ScoreSample
from poolpay.services.ownership_service import (
    candidate_ids, collapse_to_users, parse_synthetic_user, resolve_owners,
)
from poolpay.services.reward_service import resolve_reward
from poolpay.services.score_service import aggregate_scores, expected_sample_count, is_degraded
from poolpay.services.settlement_service import settle_window
from poolpay.tests.helpers import ACCOUNT, COIN, WINDOW_START, WINDOW_END


def test_aggregate_scores_sums_half_open_window(db, seed):
    seed.samples("w1", "2")
    seed.samples("w2", "1", buckets=6)
    # Outside the window on both edges
    db.add(ScoreSample(account=ACCOUNT, coin=COIN, worker_id="w1",
                       bucket_time=WINDOW_END, score=Decimal("100")))
    db.add(ScoreSample(account=ACCOUNT, coin=COIN, worker_id="w1",
                       bucket_time=WINDOW_START - timedelta(minutes=5), score=Decimal("100")))
    db.add(ScoreSample(account=ACCOUNT, coin=COIN, worker_id="idle",
                       bucket_time=WINDOW_START, score=Decimal("0")))
    db.commit()

    scores, sample_count = aggregate_scores(db, ACCOUNT, COIN, WINDOW_START, WINDOW_END)
    assert dict(scores) == {"w1": Decimal("24"), "w2": Decimal("6")}
    assert sample_count == 12


def test_empty_window_is_not_an_error(db):
    scores, sample_count = aggregate_scores(db, ACCOUNT, COIN, WINDOW_START, WINDOW_END)
    assert scores == []
    assert sample_count == 0


def test_degraded_detection():
    assert expected_sample_count(WINDOW_START, WINDOW_END) == 12
    assert is_degraded(11, WINDOW_START, WINDOW_END)
    assert not is_degraded(12, WINDOW_START, WINDOW_END)


def test_candidate_ids():
    assert candidate_ids(" rig01.gpu0 ") == ["rig01.gpu0", "rig01"]
    assert candidate_ids("rig01") == ["rig01"]
    assert candidate_ids("suanlibao.rig01.gpu0") == ["rig01.gpu0"]
    assert candidate_ids("  ") == []


def test_parse_synthetic_user():
    assert parse_synthetic_user("USR-42") == 42
    assert parse_synthetic_user("usr-7") == 7
    assert parse_synthetic_user("USR-0") is None
    assert parse_synthetic_user("rig01") is None


def test_resolve_owners(db, users, seed):
    seed.binding("rig01", 2)
    seed.binding("rig01.gpu0", 3)
    owners = resolve_owners(db, ["rig01.gpu0", "rig01.gpu1", "suanlibao.rig01", "USR-3", "ghost"])
    assert owners == {
        "rig01.gpu0": 3,
        "rig01.gpu1": 2,
        "suanlibao.rig01": 2,
        "USR-3": 3,
    }


def test_collapse_routes_unowned_workers_to_unclaimed(db, users, seed):
    seed.binding("w1", 2)
    user_scores, mapped = collapse_to_users(
        db, [("w1", Decimal("5")), ("w1.b", Decimal("1")), ("ghost", Decimal("4"))], unclaimed_user_id=1
    )
    assert dict(user_scores) == {2: Decimal("6"), 1: Decimal("4")}
    assert mapped == 2


def test_reward_is_snapshot_delta(db, seed):
    seed.snapshots((WINDOW_START, "100"), (WINDOW_END, "105"))
    reward = resolve_reward(db, ACCOUNT, COIN, WINDOW_START, WINDOW_END)
    assert reward.amount == Decimal("5")
    assert reward.has_reward
    assert not reward.reused_start


def test_missing_or_shrinking_snapshots_mean_no_reward(db, seed):
    assert resolve_reward(db, ACCOUNT, COIN, WINDOW_START, WINDOW_END).reason == "MISSING_END_SNAPSHOT"

    seed.snapshots((WINDOW_END, "105"))
    assert resolve_reward(db, ACCOUNT, COIN, WINDOW_START, WINDOW_END).reason == "MISSING_START_SNAPSHOT"

    seed.snapshots((WINDOW_START, "106"))
    reward = resolve_reward(db, ACCOUNT, COIN, WINDOW_START, WINDOW_END)
    assert reward.amount == 0
    assert reward.reason == "NON_POSITIVE_DELTA"


def test_lagging_end_snapshot_means_no_reward(db, seed):
    seed.snapshots((WINDOW_START, "100"), (WINDOW_END - timedelta(minutes=30), "105"))
    reward = resolve_reward(db, ACCOUNT, COIN, WINDOW_START, WINDOW_END)
    assert reward.amount == 0
    assert reward.reason == "END_SNAPSHOT_LAG"


def test_previous_end_snapshot_is_reused_as_start(db, users, seed, rates):
    seed.snapshots((WINDOW_START, "100"), (WINDOW_END, "105"))
    settle_window(db, ACCOUNT, COIN, WINDOW_START, WINDOW_END, rate_resolver=rates)

    # A corrected row at the same instant must not change the next window's start
    next_end = WINDOW_END + timedelta(hours=1)
    seed.snapshots((WINDOW_END, "104"), (next_end, "110"))
    reward = resolve_reward(db, ACCOUNT, COIN, WINDOW_END, next_end)
    assert reward.reused_start
    assert reward.amount == Decimal("5")
