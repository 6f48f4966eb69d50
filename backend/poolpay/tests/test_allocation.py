"""
Tests for the allocation engine and the category splitter.
"""
from decimal import Decimal

from poolpay.models import Device
from poolpay.services.allocation_service import allocate_by_score, fallback_share
from poolpay.services.category_service import cpu_ratio, split_amount, split_share, category_override


def _total(shares):
    return sum((s.amount for s in shares), Decimal(0))


def test_shares_follow_score_ratio():
    shares = allocate_by_score(Decimal("0.01"), {2: Decimal("70"), 3: Decimal("30")},
                               scale=12, unclaimed_user_id=1)
    by_user = {s.user_id: s.amount for s in shares}
    assert by_user == {2: Decimal("0.007"), 3: Decimal("0.003")}
    assert _total(shares) == Decimal("0.01")


def test_remainder_goes_to_unclaimed_user():
    shares = allocate_by_score(Decimal("1"), {2: 1, 3: 1, 4: 1}, scale=2, unclaimed_user_id=1)
    by_user = {s.user_id: s.amount for s in shares}
    assert by_user[2] == by_user[3] == by_user[4] == Decimal("0.33")
    assert by_user[1] == Decimal("0.01")
    assert _total(shares) == Decimal("1")


def test_conserves_total_for_many_tiny_scores():
    total = Decimal("0.010000000007")
    scores = {user_id: Decimal("0.000001") for user_id in range(2, 1002)}
    shares = allocate_by_score(total, scores, scale=12, unclaimed_user_id=1)
    assert _total(shares) == total
    assert all(s.amount >= 0 for s in shares)
    unclaimed = [s for s in shares if s.user_id == 1]
    assert unclaimed[0].amount == Decimal("0.000000000007")


def test_conserves_total_with_dominant_user():
    total = Decimal("0.123456789012")
    scores = {2: Decimal("999999"), 3: Decimal("0.5"), 4: Decimal("0.5")}
    shares = allocate_by_score(total, scores, scale=12, unclaimed_user_id=1)
    assert _total(shares) == total
    assert shares[0].user_id == 2
    assert shares[0].amount > total * Decimal("0.99")


def test_ties_are_ordered_by_user_id():
    shares = allocate_by_score(Decimal("1"), {5: 1, 3: 1, 4: 2}, scale=4, unclaimed_user_id=1)
    assert [s.user_id for s in shares][:3] == [4, 3, 5]


def test_unclaimed_score_absorbs_remainder_without_duplicate_entry():
    shares = allocate_by_score(Decimal("1"), {1: 1, 2: 1, 3: 1}, scale=2, unclaimed_user_id=1)
    assert [s.user_id for s in shares].count(1) == 1
    assert _total(shares) == Decimal("1")


def test_nothing_to_allocate_returns_empty():
    assert allocate_by_score(Decimal("0"), {2: 1}) == []
    assert allocate_by_score(Decimal("1"), {}) == []
    assert allocate_by_score(Decimal("1"), {2: 0, 3: -1}) == []


def test_fallback_share_gives_everything_to_unclaimed():
    shares = fallback_share(Decimal("0.01"), unclaimed_user_id=1)
    assert len(shares) == 1
    assert shares[0].user_id == 1
    assert shares[0].amount == Decimal("0.01")


def test_split_amount_sums_exactly():
    parts = split_amount(Decimal("10"), Decimal("0.333333333333"), 8)
    assert parts["CPU"] == Decimal("3.33333333")
    assert parts["GPU"] == Decimal("6.66666667")
    assert sum(parts.values()) == Decimal("10")


def test_split_amount_clamps_ratio():
    parts = split_amount(Decimal("5"), Decimal("1.5"), 8)
    assert parts["CPU"] == Decimal("5")
    assert parts["GPU"] == Decimal("0")


def test_override_coin_takes_whole_share(db):
    assert category_override("conflux") == "GPU_OCTOPUS"
    parts = split_share(db, 2, Decimal("0.5"), coin="RVN")
    assert parts["GPU_KAWPOW"] == Decimal("0.5")
    assert parts["CPU"] == Decimal("0")


def test_device_mix_converts_cpu_hashrate(db, users):
    db.add_all([
        Device(user_id=2, category="CPU", hashrate=Decimal("2000000")),  # 2 MH/s
        Device(user_id=2, category="GPU", hashrate=Decimal("6")),
        Device(user_id=2, category="GPU", hashrate=Decimal("100"), is_online=False),
    ])
    db.commit()
    assert cpu_ratio(db, 2) == Decimal("0.25")
    parts = split_share(db, 2, Decimal("0.008"), coin="XMR")
    assert parts == {"CPU": Decimal("0.002"), "GPU": Decimal("0.006")}


def test_idle_users_default_to_cpu_and_unclaimed_to_gpu(db, users):
    assert cpu_ratio(db, 2) == Decimal("1")
    assert split_share(db, 1, Decimal("0.01"), coin="XMR")["GPU"] == Decimal("0.01")
